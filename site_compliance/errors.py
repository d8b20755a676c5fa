# -*- coding: utf-8 -*-
"""
Error taxonomy for the Site Compliance Engine.

Every error carries a context dict (municipality ids, attempted and
available quantities) so the caller can explain the rejection. Nothing
in the engine retries on these errors.
"""

import re
from datetime import datetime
from typing import Any, Dict, Optional


class ComplianceError(Exception):
    """Base exception for all compliance engine errors."""

    ERROR_PREFIX = "SC"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.error_code = self._generate_error_code()
        self.timestamp = datetime.now()

    def _generate_error_code(self) -> str:
        # StaleStateError -> SC_STALE_STATE_ERROR
        error_type = re.sub(r"(?<!^)(?=[A-Z])", "_", self.__class__.__name__).upper()
        return f"{self.ERROR_PREFIX}_{error_type}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


class ValidationError(ComplianceError):
    """Malformed input: out-of-range percentage, inverted window, bad quantity."""


class ConflictError(ComplianceError):
    """Duplicate active offset for a municipality/program/year."""


class AdjacencyError(ComplianceError):
    """Reallocation target is not adjacent to the donor."""


class EligibilityError(ComplianceError):
    """Reallocation would rest on ineligible operator or site types."""


class StaleStateError(ComplianceError):
    """Commit-time re-validation failed; the caller must re-propose."""


class NotFoundError(ComplianceError):
    """Unknown municipality, site or ledger record id."""
