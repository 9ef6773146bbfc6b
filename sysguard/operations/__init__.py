"""sysguard operations — operation keywords, plans, and batch runs."""

from sysguard.operations.batch import BatchRunner, BatchSummary
from sysguard.operations.catalog import (
    BATCHES,
    OPERATIONS,
    OperationCatalog,
    OperationOptions,
    Plan,
    Step,
)

__all__ = [
    "OperationCatalog",
    "OperationOptions",
    "Plan",
    "Step",
    "BatchRunner",
    "BatchSummary",
    "OPERATIONS",
    "BATCHES",
]
