"""Model dependency resolution and execution."""

from lens.dag.resolver import DAGResolver
from lens.dag.runner import DAGRunner

__all__ = ["DAGResolver", "DAGRunner"]
