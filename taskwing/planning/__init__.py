"""Plans, tasks and the context handed to executors."""

from taskwing.planning.engine import PlanEngine, PlanProgress, TaskSpec, topological_order
from taskwing.planning.presentation import TaskContextBuilder

__all__ = ["PlanEngine", "PlanProgress", "TaskContextBuilder", "TaskSpec", "topological_order"]
