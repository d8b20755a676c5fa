# -*- coding: utf-8 -*-
"""
Shared context for the Site Compliance Engine.

Provides database access, configuration, and utility methods shared by
the evaluator, the three ledgers and the reallocation engine:
- Read interface over municipalities, sites and adjacency
- Ledger reads and appends
- Transactions and per-municipality locks
- Audit logging
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from .config import AUDIT_EVENTS, DB_PATH, DEFAULT_PROGRAM, JURISDICTION_PROFILE
from .database import get_connection
from .errors import NotFoundError, ValidationError
from .models import (
    ComplianceResult,
    EventRecord,
    Justification,
    Municipality,
    Offset,
    ReallocationRecord,
    Site,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Per-municipality mutual exclusion
# =============================================================================

class MunicipalityLocks:
    """Registry of one lock per municipality id, acquired in sorted order."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}

    def _lock_for(self, municipality_id: int) -> threading.Lock:
        with self._guard:
            if municipality_id not in self._locks:
                self._locks[municipality_id] = threading.Lock()
            return self._locks[municipality_id]

    @contextmanager
    def hold(self, *municipality_ids: int) -> Iterator[None]:
        # Sorted acquisition order prevents donor/recipient deadlocks
        locks = [self._lock_for(mid) for mid in sorted(set(municipality_ids))]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()


_LOCK_REGISTRIES: Dict[str, MunicipalityLocks] = {}
_REGISTRY_GUARD = threading.Lock()


def locks_for_database(db_path: str) -> MunicipalityLocks:
    """All contexts on the same database share one lock registry."""
    with _REGISTRY_GUARD:
        if db_path not in _LOCK_REGISTRIES:
            _LOCK_REGISTRIES[db_path] = MunicipalityLocks()
        return _LOCK_REGISTRIES[db_path]


# =============================================================================
# Row conversion
# =============================================================================

def _site_from_row(row: sqlite3.Row) -> Site:
    data = dict(row)
    data["programs"] = json.loads(data["programs"] or "[]")
    return Site(**data)


def _offset_from_row(row: sqlite3.Row) -> Offset:
    data = dict(row)
    data.pop("effective_year", None)
    return Offset(**data)


def _reallocation_from_row(row: sqlite3.Row) -> ReallocationRecord:
    data = dict(row)
    data["justification"] = Justification(**json.loads(data["justification"] or "{}"))
    return ReallocationRecord(**data)


@dataclass
class ComplianceContext:
    """
    Shared context for all engine components.

    Provides:
    - Database access methods
    - Jurisdiction configuration
    - Evaluation clock
    - Locking and audit logging
    """

    db_path: str = DB_PATH
    jurisdiction_name: str = field(default_factory=lambda: JURISDICTION_PROFILE["jurisdiction_name"])
    program: str = DEFAULT_PROGRAM
    clock: Callable[[], date] = date.today

    _locks: Optional[MunicipalityLocks] = field(default=None, repr=False)

    # =========================================================================
    # Clock, Connections and Locks
    # =========================================================================

    def today(self) -> date:
        return self.clock()

    @property
    def locks(self) -> MunicipalityLocks:
        if self._locks is None:
            self._locks = locks_for_database(self.db_path)
        return self._locks

    @contextmanager
    def connection(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Yield the given connection, or open (and later close) a new one."""
        if conn is not None:
            yield conn
            return
        own = get_connection(self.db_path)
        try:
            yield own
        finally:
            own.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serializable write transaction; rolls back everything on error."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # =========================================================================
    # Municipalities
    # =========================================================================

    def list_municipalities(self, conn: Optional[sqlite3.Connection] = None) -> List[Municipality]:
        """Get all municipalities ordered by name."""
        with self.connection(conn) as c:
            rows = c.execute("SELECT * FROM municipalities ORDER BY name").fetchall()
        return [Municipality(**dict(row)) for row in rows]

    def get_municipality(
        self,
        municipality_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Municipality:
        """Get a single municipality; raises NotFoundError if unknown."""
        with self.connection(conn) as c:
            row = c.execute(
                "SELECT * FROM municipalities WHERE municipality_id = ?", (municipality_id,)
            ).fetchone()
        if not row:
            raise NotFoundError(
                f"Municipality #{municipality_id} not found",
                context={"municipality_id": municipality_id},
            )
        return Municipality(**dict(row))

    def update_population(
        self,
        municipality_id: int,
        population: int,
        census_year: Optional[int],
        conn: sqlite3.Connection,
    ) -> None:
        """Census refresh. Saved compliance snapshots are left untouched."""
        if isinstance(population, bool) or not isinstance(population, int) or population < 0:
            raise ValidationError(
                "Population must be a non-negative integer",
                context={"municipality_id": municipality_id, "population": population},
            )
        cursor = conn.execute(
            """UPDATE municipalities
               SET population = ?, census_year = COALESCE(?, census_year)
               WHERE municipality_id = ?""",
            (population, census_year, municipality_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(
                f"Municipality #{municipality_id} not found",
                context={"municipality_id": municipality_id},
            )

    # =========================================================================
    # Sites
    # =========================================================================

    def list_sites(
        self,
        municipality_id: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Site]:
        """Get all sites (active or not), optionally for one municipality."""
        with self.connection(conn) as c:
            if municipality_id is not None:
                rows = c.execute(
                    "SELECT * FROM sites WHERE municipality_id = ? ORDER BY site_id",
                    (municipality_id,),
                ).fetchall()
            else:
                rows = c.execute("SELECT * FROM sites ORDER BY site_id").fetchall()
        return [_site_from_row(row) for row in rows]

    def list_active_sites(
        self,
        as_of: date,
        municipality_id: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Site]:
        """Sites active at `as_of` (start reached, not yet deactivated)."""
        return [s for s in self.list_sites(municipality_id, conn) if s.is_active(as_of)]

    def get_site(self, site_id: int, conn: Optional[sqlite3.Connection] = None) -> Site:
        with self.connection(conn) as c:
            row = c.execute("SELECT * FROM sites WHERE site_id = ?", (site_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Site #{site_id} not found", context={"site_id": site_id})
        return _site_from_row(row)

    # =========================================================================
    # Adjacency
    # =========================================================================

    def adjacency(self, municipality_id: int, conn: Optional[sqlite3.Connection] = None) -> List[int]:
        """Neighbour ids of a municipality."""
        with self.connection(conn) as c:
            rows = c.execute(
                """SELECT neighbor_id AS other FROM adjacency WHERE municipality_id = ?
                   UNION
                   SELECT municipality_id AS other FROM adjacency WHERE neighbor_id = ?
                   ORDER BY other""",
                (municipality_id, municipality_id),
            ).fetchall()
        return [row["other"] for row in rows]

    def adjacency_map(self, conn: Optional[sqlite3.Connection] = None) -> Dict[int, List[int]]:
        """Whole neighbour graph as municipality_id -> sorted neighbour ids."""
        graph: Dict[int, List[int]] = {}
        with self.connection(conn) as c:
            rows = c.execute("SELECT municipality_id, neighbor_id FROM adjacency").fetchall()
        for row in rows:
            graph.setdefault(row["municipality_id"], []).append(row["neighbor_id"])
            graph.setdefault(row["neighbor_id"], []).append(row["municipality_id"])
        return {k: sorted(v) for k, v in graph.items()}

    # =========================================================================
    # Offsets
    # =========================================================================

    def insert_offset(self, offset: Offset, conn: sqlite3.Connection) -> int:
        """Append an offset record and return its ID."""
        cursor = conn.execute("""
            INSERT INTO offsets (
                municipality_id, program, percentage, annual_pickup_volume,
                effective_date, effective_year, created_by, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            offset.municipality_id, offset.program, offset.percentage,
            offset.annual_pickup_volume, offset.effective_date.isoformat(),
            offset.effective_year, offset.created_by, datetime.now().isoformat(),
        ))
        return cursor.lastrowid

    def list_offset_records(
        self,
        municipality_id: Optional[int] = None,
        program: Optional[str] = None,
        effective_year: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Offset]:
        """Get offset records (status not yet derived)."""
        query = "SELECT * FROM offsets WHERE 1 = 1"
        params: List[Any] = []
        if municipality_id is not None:
            query += " AND municipality_id = ?"
            params.append(municipality_id)
        if program is not None:
            query += " AND program = ?"
            params.append(program)
        if effective_year is not None:
            query += " AND effective_year = ?"
            params.append(effective_year)
        query += " ORDER BY offset_id"

        with self.connection(conn) as c:
            rows = c.execute(query, params).fetchall()
        return [_offset_from_row(row) for row in rows]

    def get_offset(self, offset_id: int, conn: Optional[sqlite3.Connection] = None) -> Offset:
        with self.connection(conn) as c:
            row = c.execute("SELECT * FROM offsets WHERE offset_id = ?", (offset_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Offset #{offset_id} not found", context={"offset_id": offset_id})
        return _offset_from_row(row)

    def mark_offset_superseded(self, offset_id: int, superseded_by: int, conn: sqlite3.Connection) -> bool:
        cursor = conn.execute(
            "UPDATE offsets SET superseded_by = ? WHERE offset_id = ? AND superseded_by IS NULL",
            (superseded_by, offset_id),
        )
        return cursor.rowcount > 0

    # =========================================================================
    # Events
    # =========================================================================

    def insert_event(self, event: EventRecord, conn: sqlite3.Connection) -> int:
        """Append an event record and return its ID."""
        cursor = conn.execute("""
            INSERT INTO events (
                municipality_id, program, credit, valid_from, valid_to,
                event_site_id, description, created_by, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.municipality_id, event.program, event.credit,
            event.valid_from.isoformat(), event.valid_to.isoformat(),
            event.event_site_id, event.description, event.created_by,
            datetime.now().isoformat(),
        ))
        return cursor.lastrowid

    def list_event_records(
        self,
        municipality_id: Optional[int] = None,
        program: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[EventRecord]:
        query = "SELECT * FROM events WHERE 1 = 1"
        params: List[Any] = []
        if municipality_id is not None:
            query += " AND municipality_id = ?"
            params.append(municipality_id)
        if program is not None:
            query += " AND program = ?"
            params.append(program)
        query += " ORDER BY valid_from, event_id"

        with self.connection(conn) as c:
            rows = c.execute(query, params).fetchall()
        return [EventRecord(**dict(row)) for row in rows]

    def get_event(self, event_id: int, conn: Optional[sqlite3.Connection] = None) -> EventRecord:
        with self.connection(conn) as c:
            row = c.execute("SELECT * FROM events WHERE event_id = ?", (event_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Event #{event_id} not found", context={"event_id": event_id})
        return EventRecord(**dict(row))

    # =========================================================================
    # Reallocations
    # =========================================================================

    def insert_reallocation(self, record: ReallocationRecord, conn: sqlite3.Connection) -> int:
        """Append a proposed reallocation and return its ID."""
        cursor = conn.execute("""
            INSERT INTO reallocations (
                donor_id, recipient_id, program, quantity, effective_date,
                justification, status, proposed_by, proposed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.donor_id, record.recipient_id, record.program, record.quantity,
            record.effective_date.isoformat(), record.justification.model_dump_json(),
            record.status, record.proposed_by, datetime.now().isoformat(),
        ))
        return cursor.lastrowid

    def list_reallocation_records(
        self,
        status: Optional[str] = None,
        municipality_id: Optional[int] = None,
        program: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[ReallocationRecord]:
        """Get reallocations; municipality filter matches donor or recipient."""
        query = "SELECT * FROM reallocations WHERE 1 = 1"
        params: List[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        if municipality_id is not None:
            query += " AND (donor_id = ? OR recipient_id = ?)"
            params.extend([municipality_id, municipality_id])
        if program is not None:
            query += " AND program = ?"
            params.append(program)
        query += " ORDER BY reallocation_id"

        with self.connection(conn) as c:
            rows = c.execute(query, params).fetchall()
        return [_reallocation_from_row(row) for row in rows]

    def get_reallocation(
        self,
        reallocation_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> ReallocationRecord:
        with self.connection(conn) as c:
            row = c.execute(
                "SELECT * FROM reallocations WHERE reallocation_id = ?", (reallocation_id,)
            ).fetchone()
        if not row:
            raise NotFoundError(
                f"Reallocation #{reallocation_id} not found",
                context={"reallocation_id": reallocation_id},
            )
        return _reallocation_from_row(row)

    def mark_reallocation_committed(
        self,
        reallocation_id: int,
        actor: str,
        justification: Justification,
        conn: sqlite3.Connection,
    ) -> bool:
        """Optimistic transition proposed -> committed, freezing the justification."""
        cursor = conn.execute("""
            UPDATE reallocations
            SET status = 'committed', committed_by = ?, committed_at = ?, justification = ?
            WHERE reallocation_id = ? AND status = 'proposed'
        """, (actor, datetime.now().isoformat(), justification.model_dump_json(), reallocation_id))
        return cursor.rowcount > 0

    def mark_reallocation_reversed(
        self,
        reallocation_id: int,
        from_status: str,
        actor: str,
        reason: Optional[str],
        conn: sqlite3.Connection,
    ) -> bool:
        """Optimistic transition {proposed, committed} -> reversed."""
        cursor = conn.execute("""
            UPDATE reallocations
            SET status = 'reversed', reversed_by = ?, reversed_at = ?, reversal_reason = ?
            WHERE reallocation_id = ? AND status = ?
        """, (actor, datetime.now().isoformat(), reason, reallocation_id, from_status))
        return cursor.rowcount > 0

    # =========================================================================
    # Compliance Snapshots
    # =========================================================================

    def insert_snapshots(
        self,
        results: List[ComplianceResult],
        populations: Dict[int, int],
        conn: sqlite3.Connection,
    ) -> int:
        saved_at = datetime.now().isoformat()
        conn.executemany("""
            INSERT INTO compliance_snapshots (
                municipality_id, program, as_of, population, base_requirement,
                adjusted_requirement, active_site_count, status, shortfall, excess, saved_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            (
                r.municipality_id, r.program, r.evaluated_as_of.isoformat(),
                populations[r.municipality_id], r.base_requirement,
                r.adjusted_requirement, r.active_site_count, r.status,
                r.shortfall, r.excess, saved_at,
            )
            for r in results
        ])
        return len(results)

    def get_snapshots(
        self,
        municipality_id: Optional[int] = None,
        program: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Get saved compliance snapshots, newest first."""
        query = "SELECT * FROM compliance_snapshots WHERE 1 = 1"
        params: List[Any] = []
        if municipality_id is not None:
            query += " AND municipality_id = ?"
            params.append(municipality_id)
        if program is not None:
            query += " AND program = ?"
            params.append(program)
        query += " ORDER BY as_of DESC, snapshot_id DESC"

        with self.connection() as c:
            rows = c.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    # =========================================================================
    # Audit Logging
    # =========================================================================

    def log_audit(
        self,
        event_type: str,
        actor: str,
        payload: Dict[str, Any],
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Log an audit event (inside the caller's transaction when given)."""
        if event_type not in AUDIT_EVENTS:
            raise ValueError(f"Unknown audit event type: {event_type}")
        with self.connection(conn) as c:
            c.execute(
                "INSERT INTO audit_log (event_type, actor, payload, timestamp) VALUES (?, ?, ?, ?)",
                (event_type, actor, json.dumps(payload, default=str), datetime.now().isoformat()),
            )

    def get_audit_log(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.connection() as c:
            if event_type:
                rows = c.execute(
                    "SELECT * FROM audit_log WHERE event_type = ? ORDER BY log_id", (event_type,)
                ).fetchall()
            else:
                rows = c.execute("SELECT * FROM audit_log ORDER BY log_id").fetchall()
        entries = []
        for row in rows:
            entry = dict(row)
            entry["payload"] = json.loads(entry["payload"] or "{}")
            entries.append(entry)
        return entries
