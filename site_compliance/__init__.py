# -*- coding: utf-8 -*-
"""
Site Compliance Engine

Required collection-site counts per municipality, compliance status, and
the three adjustment ledgers (offsets, events, adjacent reallocation).
"""

from .context import ComplianceContext
from .engine import ComplianceEngine
from .errors import (
    AdjacencyError,
    ComplianceError,
    ConflictError,
    EligibilityError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from .requirements import compute_requirement

__all__ = [
    "ComplianceContext",
    "ComplianceEngine",
    "compute_requirement",
    "ComplianceError",
    "ValidationError",
    "ConflictError",
    "AdjacencyError",
    "EligibilityError",
    "StaleStateError",
    "NotFoundError",
]
