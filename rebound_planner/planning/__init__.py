"""B-spline trajectory optimization: cost terms, solver adapter, initialization and rebound."""

from rebound_planner.planning.astar import GridAStar, GuideSearch
from rebound_planner.planning.bspline import UniformBspline, knot_points, knot_weights
from rebound_planner.planning.bspline_optimizer import BsplineOptimizer, Phase, PhasePolicy
from rebound_planner.planning.control_points import ControlPoint, ControlPointStore
from rebound_planner.planning.cost import CostEngine, CostFunction, CostWeights
from rebound_planner.planning.initialization import InitializationStage
from rebound_planner.planning.rebound import CollisionReboundController, ReboundState
from rebound_planner.planning.solver import SolverAdapter, SolveResult

__all__ = [
    "BsplineOptimizer",
    "CollisionReboundController",
    "ControlPoint",
    "ControlPointStore",
    "CostEngine",
    "CostFunction",
    "CostWeights",
    "GridAStar",
    "GuideSearch",
    "InitializationStage",
    "Phase",
    "PhasePolicy",
    "ReboundState",
    "SolveResult",
    "SolverAdapter",
    "UniformBspline",
    "knot_points",
    "knot_weights",
]
