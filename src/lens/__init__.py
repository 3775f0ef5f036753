"""Lens — MovieLens dimensional warehouse with incremental facts and SCD2 snapshots."""

__version__ = "0.1.0"

from lens.pipeline.decorators import model
from lens.pipeline.context import RunContext
from lens.sources import RowStream

__all__ = ["model", "RunContext", "RowStream", "__version__"]
