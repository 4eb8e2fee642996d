"""Adapter between the control point representation and `scipy.optimize.minimize` (L-BFGS-B)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Sequence

import numpy as np
from scipy.optimize import minimize

if TYPE_CHECKING:
    from numpy.typing import NDArray

    Objective = Callable[[NDArray[np.floating]], tuple[float, NDArray[np.floating]]]


logger = logging.getLogger(__name__)


class _DeadlineReached(Exception):
    """Raised inside the objective to end a solve at its deadline."""


@dataclass
class SolveResult:
    x: NDArray[np.floating]
    cost: float
    status: str  # "converged", "stopped", "timeout" or "empty"
    evaluations: int
    elapsed: float
    message: str = ""

    @property
    def timed_out(self) -> bool:
        return self.status == "timeout"


class SolverAdapter:
    """Runs L-BFGS-B on a flat vector and keeps the best evaluation seen.

    The solver may stop on an iteration or time limit instead of a local minimum, so the returned
    vector is always the lowest-cost point the objective was evaluated at.
    """

    # Cost reported for invalid evaluations before any finite cost was seen
    INVALID_COST = 1e10

    def __init__(
        self,
        max_iteration_num: Sequence[int] = (2, 300, 200, 200),
        max_iteration_time: Sequence[float] = (0.0001, 0.005, 0.05, 0.003),
        mem_size: int = 16,
    ):
        self.max_iteration_num = list(max_iteration_num)
        self.max_iteration_time = list(max_iteration_time)
        self.mem_size = mem_size
        self.max_num_id: int | None = None
        self.max_time_id: int | None = None

        self.best_variable_: NDArray[np.floating] | None = None
        self.min_cost_ = np.inf
        self.iter_num_ = 0

    def set_terminate_cond(self, max_num_id: int | None, max_time_id: int | None):
        """Select the iteration and time limits; ``None`` or a negative id disables a limit."""
        self.max_num_id = _table_id(max_num_id, self.max_iteration_num, "max_iteration_num")
        self.max_time_id = _table_id(max_time_id, self.max_iteration_time, "max_iteration_time")

    @property
    def max_iterations(self) -> int | None:
        return None if self.max_num_id is None else int(self.max_iteration_num[self.max_num_id])

    @property
    def max_time(self) -> float | None:
        return None if self.max_time_id is None else float(self.max_iteration_time[self.max_time_id])

    @staticmethod
    def pack(points: NDArray[np.floating], start: int, end: int) -> NDArray[np.floating]:
        """Flatten the free control points ``start .. end-1`` row by row."""
        return np.asarray(points[start:end], dtype=float).ravel().copy()

    @staticmethod
    def unpack(
        x: NDArray[np.floating], points: NDArray[np.floating], start: int, end: int
    ) -> NDArray[np.floating]:
        """Full control point array with the free rows replaced by ``x``."""
        q = np.array(points, dtype=float)
        q[start:end] = np.reshape(x, (end - start, q.shape[1]))
        return q

    def solve(
        self,
        x0: NDArray[np.floating],
        objective: Objective,
        deadline: float | None = None,
        gtol: float = 1e-5,
    ) -> SolveResult:
        """Minimize ``objective`` from ``x0``.

        Args:
            x0: Initial flat vector.
            objective: Closure returning cost and gradient for a flat vector.
            deadline: Absolute `time.perf_counter` time after which the solve stops.
            gtol: Projected gradient tolerance of L-BFGS-B.

        Returns:
            The best vector seen with its cost and the solver status.
        """
        t0 = time.perf_counter()
        x0 = np.asarray(x0, dtype=float)
        self.best_variable_ = x0.copy()
        self.min_cost_ = np.inf
        self.iter_num_ = 0
        worst_cost = -np.inf

        stop_at = deadline
        if self.max_time is not None:
            stop_at = t0 + self.max_time if stop_at is None else min(stop_at, t0 + self.max_time)

        def cost_function(x: NDArray[np.floating]) -> tuple[float, NDArray[np.floating]]:
            nonlocal worst_cost
            # Always evaluate at least once so there is a best variable to return
            if self.iter_num_ > 0 and stop_at is not None and time.perf_counter() > stop_at:
                raise _DeadlineReached
            self.iter_num_ += 1
            cost, grad = objective(x)
            grad = np.asarray(grad, dtype=float)
            if not np.isfinite(cost) or not np.all(np.isfinite(grad)):
                logger.debug("Rejected invalid evaluation %d (cost=%s)", self.iter_num_, cost)
                fallback = worst_cost if np.isfinite(worst_cost) else self.INVALID_COST
                return fallback, np.zeros_like(x)
            worst_cost = max(worst_cost, cost)
            if cost < self.min_cost_:
                self.min_cost_ = float(cost)
                self.best_variable_ = np.array(x, dtype=float)
            return float(cost), grad

        if x0.size == 0:
            cost, _ = objective(x0)
            self.min_cost_ = float(cost)
            return SolveResult(x0.copy(), self.min_cost_, "empty", 0, time.perf_counter() - t0)

        options = {"maxcor": self.mem_size, "gtol": gtol}
        if self.max_iterations is not None:
            options["maxiter"] = self.max_iterations

        try:
            res = minimize(cost_function, x0, jac=True, method="L-BFGS-B", options=options)
            status = "converged" if res.success else "stopped"
            message = str(res.message)
        except _DeadlineReached:
            status = "timeout"
            message = "deadline reached"

        elapsed = time.perf_counter() - t0
        logger.debug(
            "Solve %s after %d evaluations, %.2f ms, cost=%.4f (%s)",
            status,
            self.iter_num_,
            elapsed * 1000.0,
            self.min_cost_,
            message,
        )
        return SolveResult(
            self.best_variable_.copy(), self.min_cost_, status, self.iter_num_, elapsed, message
        )


def _table_id(idx: int | None, table: Sequence, name: str) -> int | None:
    if idx is None or idx < 0:
        return None
    if idx >= len(table):
        raise ValueError(f"{name} has no entry {idx}")
    return int(idx)
