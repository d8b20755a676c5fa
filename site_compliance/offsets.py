# -*- coding: utf-8 -*-
"""
Offset Ledger (direct-service offsets).

An offset is a once-per-year percentage reduction of a municipality's
requirement for one program. Records are never edited in place; a
correction supersedes the old record with a new one.
"""

import logging
from datetime import date
from typing import List, Optional

from .config import DEFAULT_PROGRAM, OFFSET_CONFIG
from .context import ComplianceContext
from .errors import ConflictError, ValidationError
from .models import Offset
from .requirements import validate_program

logger = logging.getLogger(__name__)


def validate_percentage(percentage: float, municipality_id: int) -> None:
    low, high = OFFSET_CONFIG["min_percentage"], OFFSET_CONFIG["max_percentage"]
    if isinstance(percentage, bool) or not isinstance(percentage, (int, float)) or not low <= percentage <= high:
        raise ValidationError(
            f"Offset percentage must be between {low} and {high}",
            context={"municipality_id": municipality_id, "percentage": percentage},
        )


class OffsetLedger:
    """Append-only ledger of direct-service offsets."""

    def __init__(self, ctx: ComplianceContext):
        self.ctx = ctx

    def apply_offset(
        self,
        municipality_id: int,
        percentage: float,
        effective_date: Optional[date] = None,
        program: str = DEFAULT_PROGRAM,
        annual_pickup_volume: Optional[float] = None,
        actor: str = "offset_ledger",
    ) -> Offset:
        """
        Record an offset for (municipality, program, effective year).

        Raises:
            ValidationError: percentage outside [0, 100] or unknown program
            NotFoundError: unknown municipality
            ConflictError: an offset already exists for that year
        """
        validate_percentage(percentage, municipality_id)
        validate_program(program)
        effective_date = effective_date or self.ctx.today()

        with self.ctx.locks.hold(municipality_id), self.ctx.transaction() as conn:
            self.ctx.get_municipality(municipality_id, conn)
            self._ensure_no_conflict(municipality_id, program, effective_date.year, conn)

            offset = Offset(
                municipality_id=municipality_id,
                program=program,
                percentage=percentage,
                annual_pickup_volume=annual_pickup_volume,
                effective_date=effective_date,
                created_by=actor,
            )
            offset.offset_id = self.ctx.insert_offset(offset, conn)

            self.ctx.log_audit(
                event_type="OFFSET_APPLIED",
                actor=actor,
                payload={
                    "offset_id": offset.offset_id,
                    "municipality_id": municipality_id,
                    "program": program,
                    "percentage": percentage,
                    "effective_date": effective_date.isoformat(),
                },
                conn=conn,
            )

        logger.info(
            "Offset #%s applied: municipality %s, %s%% (%s %s)",
            offset.offset_id, municipality_id, percentage, program, effective_date.year,
        )
        offset.status = offset.status_on(self.ctx.today())
        return offset

    def supersede_offset(
        self,
        offset_id: int,
        percentage: float,
        actor: str = "offset_ledger",
    ) -> Offset:
        """Replace an offset with a new record for the same key; the old one stays for audit."""
        existing = self.ctx.get_offset(offset_id)
        validate_percentage(percentage, existing.municipality_id)

        with self.ctx.locks.hold(existing.municipality_id), self.ctx.transaction() as conn:
            current = self.ctx.get_offset(offset_id, conn)
            if current.superseded_by is not None:
                raise ConflictError(
                    f"Offset #{offset_id} was already superseded by #{current.superseded_by}",
                    context={
                        "offset_id": offset_id,
                        "municipality_id": current.municipality_id,
                        "superseded_by": current.superseded_by,
                    },
                )

            replacement = Offset(
                municipality_id=current.municipality_id,
                program=current.program,
                percentage=percentage,
                annual_pickup_volume=current.annual_pickup_volume,
                effective_date=current.effective_date,
                created_by=actor,
            )
            replacement.offset_id = self.ctx.insert_offset(replacement, conn)
            self.ctx.mark_offset_superseded(offset_id, replacement.offset_id, conn)

            self.ctx.log_audit(
                event_type="OFFSET_SUPERSEDED",
                actor=actor,
                payload={
                    "offset_id": offset_id,
                    "replacement_id": replacement.offset_id,
                    "municipality_id": current.municipality_id,
                    "old_percentage": current.percentage,
                    "new_percentage": percentage,
                },
                conn=conn,
            )

        replacement.status = replacement.status_on(self.ctx.today())
        return replacement

    def list_offsets(
        self,
        municipality_id: Optional[int] = None,
        program: Optional[str] = None,
        as_of: Optional[date] = None,
    ) -> List[Offset]:
        """Offsets with status derived at `as_of` (default today)."""
        as_of = as_of or self.ctx.today()
        offsets = self.ctx.list_offset_records(municipality_id, program)
        for o in offsets:
            o.status = o.status_on(as_of)
        return offsets

    def get_offset(self, offset_id: int, as_of: Optional[date] = None) -> Offset:
        offset = self.ctx.get_offset(offset_id)
        offset.status = offset.status_on(as_of or self.ctx.today())
        return offset

    def _ensure_no_conflict(self, municipality_id, program, year, conn) -> None:
        existing = [
            o for o in self.ctx.list_offset_records(municipality_id, program, year, conn)
            if o.superseded_by is None
        ]
        if existing:
            raise ConflictError(
                f"Municipality #{municipality_id} already has a {program} offset for {year}",
                context={
                    "municipality_id": municipality_id,
                    "program": program,
                    "effective_year": year,
                    "existing_offset_id": existing[0].offset_id,
                    "existing_percentage": existing[0].percentage,
                },
            )


