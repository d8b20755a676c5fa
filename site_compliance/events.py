# -*- coding: utf-8 -*-
"""
Event Ledger (event application).

Events are time-bounded collection days credited as temporary
site-equivalents against a municipality's shortfall. Their status is a
function of the evaluation date; the cap against the shortfall is applied
by the evaluator at read time.
"""

import logging
from datetime import date
from typing import List, Optional

from .config import DEFAULT_PROGRAM
from .context import ComplianceContext
from .errors import ValidationError
from .models import EventRecord
from .requirements import validate_program

logger = logging.getLogger(__name__)


class EventLedger:
    """Append-only ledger of event credits."""

    def __init__(self, ctx: ComplianceContext):
        self.ctx = ctx

    def apply_event(
        self,
        municipality_id: int,
        credit: int,
        valid_from: date,
        valid_to: date,
        program: str = DEFAULT_PROGRAM,
        event_site_id: Optional[int] = None,
        description: Optional[str] = None,
        actor: str = "event_ledger",
    ) -> EventRecord:
        """
        Record an event credit for a validity window (inclusive).

        Raises:
            ValidationError: non-positive credit, inverted window, unknown program
            NotFoundError: unknown municipality or event site
        """
        if isinstance(credit, bool) or not isinstance(credit, int) or credit <= 0:
            raise ValidationError(
                "Event credit must be a positive integer",
                context={"municipality_id": municipality_id, "credit": credit},
            )
        if valid_to < valid_from:
            raise ValidationError(
                "Event window is inverted: valid_to is before valid_from",
                context={
                    "municipality_id": municipality_id,
                    "valid_from": valid_from.isoformat(),
                    "valid_to": valid_to.isoformat(),
                },
            )
        validate_program(program)

        with self.ctx.locks.hold(municipality_id), self.ctx.transaction() as conn:
            self.ctx.get_municipality(municipality_id, conn)
            if event_site_id is not None:
                site = self.ctx.get_site(event_site_id, conn)
                if site.municipality_id != municipality_id:
                    raise ValidationError(
                        f"Event site #{event_site_id} belongs to another municipality",
                        context={
                            "municipality_id": municipality_id,
                            "event_site_id": event_site_id,
                            "site_municipality_id": site.municipality_id,
                        },
                    )

            event = EventRecord(
                municipality_id=municipality_id,
                program=program,
                credit=credit,
                valid_from=valid_from,
                valid_to=valid_to,
                event_site_id=event_site_id,
                description=description,
                created_by=actor,
            )
            event.event_id = self.ctx.insert_event(event, conn)

            self.ctx.log_audit(
                event_type="EVENT_APPLIED",
                actor=actor,
                payload={
                    "event_id": event.event_id,
                    "municipality_id": municipality_id,
                    "program": program,
                    "credit": credit,
                    "valid_from": valid_from.isoformat(),
                    "valid_to": valid_to.isoformat(),
                },
                conn=conn,
            )

        logger.info(
            "Event #%s applied: municipality %s, credit %s (%s to %s)",
            event.event_id, municipality_id, credit, valid_from, valid_to,
        )
        event.status = event.status_on(self.ctx.today())
        return event

    def list_events(
        self,
        municipality_id: Optional[int] = None,
        program: Optional[str] = None,
        as_of: Optional[date] = None,
    ) -> List[EventRecord]:
        """Events with status derived at `as_of` (default today)."""
        as_of = as_of or self.ctx.today()
        events = self.ctx.list_event_records(municipality_id, program)
        for e in events:
            e.status = e.status_on(as_of)
        return events

    def active_credit(
        self,
        municipality_id: int,
        as_of: Optional[date] = None,
        program: str = DEFAULT_PROGRAM,
    ) -> int:
        """Uncapped credit sum of events active at `as_of`."""
        as_of = as_of or self.ctx.today()
        return sum(e.credit for e in self.list_events(municipality_id, program, as_of) if e.status == "active")
