"""
billing_batch.domain -- value objects of a billing run.

ZERO I/O.  Results and reports are frozen dataclasses.
"""

from billing_batch.domain.types import (
    BatchAnalysis,
    BatchPreview,
    BatchResult,
    BatchResultAccumulator,
    HousekeepingResult,
    MonthGroup,
)

__all__ = [
    "BatchAnalysis",
    "BatchPreview",
    "BatchResult",
    "BatchResultAccumulator",
    "HousekeepingResult",
    "MonthGroup",
]
