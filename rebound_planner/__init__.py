"""B-spline trajectory optimization with collision rebound for quadrotor planning."""
