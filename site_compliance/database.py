# -*- coding: utf-8 -*-
"""
Database schema and initialization for the Site Compliance Engine.

Implements the registry and ledger schema:
- Municipality and site registry (sites are deactivated, never deleted)
- Undirected adjacency graph between municipalities
- Append-mostly ledgers for offsets, events and reallocations
- Compliance snapshots for reporting history
- General audit trail
"""

import json
import logging
import os
import random
import sqlite3
from datetime import date, timedelta
from typing import Iterable, List, Tuple

from .config import DB_PATH, DEFAULT_PROGRAM, PROGRAMS

logger = logging.getLogger(__name__)


def get_connection(db_path: str = DB_PATH) -> sqlite3.Connection:
    """Get a database connection with row factory enabled."""
    conn = sqlite3.connect(db_path, timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_database(db_path: str = DB_PATH) -> None:
    """
    Initialize the database with all required tables.

    Tables:
    - municipalities: Jurisdiction registry with census population
    - sites: Collection sites with activity window
    - adjacency: Neighbour pairs (stored once, low id first)
    - offsets: Direct-service offset ledger
    - events: Event ledger with validity windows
    - reallocations: Two-phase reallocation ledger
    - compliance_snapshots: Saved evaluation results
    - audit_log: General audit trail
    """
    os.makedirs(os.path.dirname(db_path) if os.path.dirname(db_path) else ".", exist_ok=True)

    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()

    # =========================================================================
    # 1. Municipalities
    # =========================================================================
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS municipalities (
        municipality_id INTEGER PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        population INTEGER NOT NULL CHECK(population >= 0),
        tier TEXT CHECK(tier IS NULL OR tier IN ('Single', 'Lower', 'Upper')),
        region TEXT,
        province TEXT,
        census_year INTEGER
    )
    """)

    # =========================================================================
    # 2. Sites
    # =========================================================================
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS sites (
        site_id INTEGER PRIMARY KEY,
        municipality_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        operator_type TEXT NOT NULL DEFAULT 'Other',
        site_type TEXT NOT NULL DEFAULT 'Depot',
        programs TEXT NOT NULL,  -- JSON list of program names
        active_start DATE NOT NULL,
        deactivated_on DATE,
        CHECK(deactivated_on IS NULL OR deactivated_on >= active_start),
        FOREIGN KEY(municipality_id) REFERENCES municipalities(municipality_id)
    )
    """)

    # =========================================================================
    # 3. Adjacency (undirected)
    # =========================================================================
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS adjacency (
        municipality_id INTEGER NOT NULL,
        neighbor_id INTEGER NOT NULL,
        PRIMARY KEY(municipality_id, neighbor_id),
        CHECK(municipality_id < neighbor_id),
        FOREIGN KEY(municipality_id) REFERENCES municipalities(municipality_id),
        FOREIGN KEY(neighbor_id) REFERENCES municipalities(municipality_id)
    )
    """)

    # =========================================================================
    # 4. Offsets
    # =========================================================================
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS offsets (
        offset_id INTEGER PRIMARY KEY AUTOINCREMENT,
        municipality_id INTEGER NOT NULL,
        program TEXT NOT NULL,
        percentage REAL NOT NULL CHECK(percentage >= 0 AND percentage <= 100),
        annual_pickup_volume REAL,
        effective_date DATE NOT NULL,
        effective_year INTEGER NOT NULL,
        superseded_by INTEGER,
        created_by TEXT DEFAULT 'offset_ledger',
        created_at TIMESTAMP,
        FOREIGN KEY(municipality_id) REFERENCES municipalities(municipality_id),
        FOREIGN KEY(superseded_by) REFERENCES offsets(offset_id)
    )
    """)

    # =========================================================================
    # 5. Events
    # =========================================================================
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS events (
        event_id INTEGER PRIMARY KEY AUTOINCREMENT,
        municipality_id INTEGER NOT NULL,
        program TEXT NOT NULL,
        credit INTEGER NOT NULL CHECK(credit > 0),
        valid_from DATE NOT NULL,
        valid_to DATE NOT NULL,
        event_site_id INTEGER,
        description TEXT,
        created_by TEXT DEFAULT 'event_ledger',
        created_at TIMESTAMP,
        CHECK(valid_to >= valid_from),
        FOREIGN KEY(municipality_id) REFERENCES municipalities(municipality_id),
        FOREIGN KEY(event_site_id) REFERENCES sites(site_id)
    )
    """)

    # =========================================================================
    # 6. Reallocations (two-phase)
    # =========================================================================
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS reallocations (
        reallocation_id INTEGER PRIMARY KEY AUTOINCREMENT,
        donor_id INTEGER NOT NULL,
        recipient_id INTEGER NOT NULL,
        program TEXT NOT NULL,
        quantity INTEGER NOT NULL CHECK(quantity > 0),
        effective_date DATE NOT NULL,
        justification TEXT,  -- JSON serialized
        status TEXT NOT NULL DEFAULT 'proposed'
            CHECK(status IN ('proposed', 'committed', 'reversed')),

        proposed_by TEXT,
        proposed_at TIMESTAMP,
        committed_by TEXT,
        committed_at TIMESTAMP,
        reversed_by TEXT,
        reversed_at TIMESTAMP,
        reversal_reason TEXT,

        CHECK(donor_id <> recipient_id),
        FOREIGN KEY(donor_id) REFERENCES municipalities(municipality_id),
        FOREIGN KEY(recipient_id) REFERENCES municipalities(municipality_id)
    )
    """)

    # =========================================================================
    # 7. Compliance Snapshots (history; never rewritten)
    # =========================================================================
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS compliance_snapshots (
        snapshot_id INTEGER PRIMARY KEY AUTOINCREMENT,
        municipality_id INTEGER NOT NULL,
        program TEXT NOT NULL,
        as_of DATE NOT NULL,
        population INTEGER NOT NULL,
        base_requirement INTEGER NOT NULL,
        adjusted_requirement INTEGER NOT NULL,
        active_site_count INTEGER NOT NULL,
        status TEXT NOT NULL,
        shortfall INTEGER NOT NULL,
        excess INTEGER NOT NULL,
        saved_at TIMESTAMP,
        FOREIGN KEY(municipality_id) REFERENCES municipalities(municipality_id)
    )
    """)

    # =========================================================================
    # 8. Audit Log
    # =========================================================================
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS audit_log (
        log_id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        actor TEXT NOT NULL,
        payload TEXT,  -- JSON serialized
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_sites_municipality ON sites(municipality_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_offsets_key ON offsets(municipality_id, program, effective_year)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_events_municipality ON events(municipality_id, program)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_reallocations_donor ON reallocations(donor_id, program)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_reallocations_recipient ON reallocations(recipient_id, program)")

    conn.commit()
    conn.close()
    logger.info("Database schema initialized at %s", db_path)


# =============================================================================
# Registry loaders (rows arrive already validated from import collaborators)
# =============================================================================

def load_municipalities(rows: Iterable[Tuple], db_path: str = DB_PATH) -> None:
    """Insert or replace (id, name, population, tier, region, province, census_year) rows."""
    conn = sqlite3.connect(db_path)
    conn.executemany(
        """INSERT OR REPLACE INTO municipalities
           (municipality_id, name, population, tier, region, province, census_year)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        list(rows),
    )
    conn.commit()
    conn.close()


def load_sites(rows: Iterable[Tuple], db_path: str = DB_PATH) -> None:
    """
    Insert or replace site rows.

    Row layout: (site_id, municipality_id, name, operator_type, site_type,
    programs list, active_start, deactivated_on)
    """
    prepared = []
    for site_id, municipality_id, name, operator_type, site_type, programs, start, end in rows:
        prepared.append((
            site_id, municipality_id, name, operator_type, site_type,
            json.dumps(list(programs)),
            start.isoformat() if isinstance(start, date) else start,
            end.isoformat() if isinstance(end, date) else end,
        ))

    conn = sqlite3.connect(db_path)
    conn.executemany(
        """INSERT OR REPLACE INTO sites
           (site_id, municipality_id, name, operator_type, site_type, programs,
            active_start, deactivated_on)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        prepared,
    )
    conn.commit()
    conn.close()


def load_adjacency(pairs: Iterable[Tuple[int, int]], db_path: str = DB_PATH) -> None:
    """Insert undirected neighbour pairs; each pair is stored once."""
    normalized = {(min(a, b), max(a, b)) for a, b in pairs if a != b}
    conn = sqlite3.connect(db_path)
    conn.executemany(
        "INSERT OR IGNORE INTO adjacency (municipality_id, neighbor_id) VALUES (?, ?)",
        sorted(normalized),
    )
    conn.commit()
    conn.close()


# =============================================================================
# Sample Data
# =============================================================================

SAMPLE_MUNICIPALITIES = [
    (1, "Toronto", 2_794_356, "Single", "Toronto", "ON", 2021),
    (2, "Mississauga", 717_961, "Lower", "Peel", "ON", 2021),
    (3, "Brampton", 656_480, "Lower", "Peel", "ON", 2021),
    (4, "Vaughan", 323_103, "Lower", "York", "ON", 2021),
    (5, "Markham", 338_503, "Lower", "York", "ON", 2021),
    (6, "Hamilton", 569_353, "Single", "Hamilton", "ON", 2021),
    (7, "Kitchener", 256_885, "Lower", "Waterloo", "ON", 2021),
    (8, "London", 422_324, "Single", "Middlesex", "ON", 2021),
    (9, "Windsor", 229_660, "Single", "Essex", "ON", 2021),
    (10, "Ottawa", 1_017_449, "Single", "Ottawa", "ON", 2021),
]

SAMPLE_ADJACENCY = [
    (1, 2), (1, 4), (1, 5), (1, 6),
    (2, 3),
    (3, 4),
    (4, 5),
    (7, 8), (7, 4),
    (8, 9),
]

SAMPLE_OPERATORS = [
    "Municipal", "Municipal", "Private", "Return-to-Retail", "Return-to-Retail",
    "Regional District", "First Nation/Indigenous", "Private",
]


def seed_sample_registry(db_path: str = DB_PATH, seed: int = 42) -> None:
    """Seed sample municipalities, adjacency and sites."""
    rng = random.Random(seed)  # Reproducible

    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()
    cursor.execute("DELETE FROM compliance_snapshots")
    cursor.execute("DELETE FROM reallocations")
    cursor.execute("DELETE FROM events")
    cursor.execute("DELETE FROM offsets")
    cursor.execute("DELETE FROM sites")
    cursor.execute("DELETE FROM adjacency")
    cursor.execute("DELETE FROM municipalities")
    cursor.execute("DELETE FROM audit_log")
    conn.commit()
    conn.close()

    load_municipalities(SAMPLE_MUNICIPALITIES, db_path)
    load_adjacency(SAMPLE_ADJACENCY, db_path)

    from .requirements import compute_requirement

    sites: List[Tuple] = []
    site_id = 1
    start = date(2023, 1, 1)
    for municipality_id, name, population, *_ in SAMPLE_MUNICIPALITIES:
        # Land somewhere between 70% and 130% of the Lighting requirement
        required = compute_requirement(population, DEFAULT_PROGRAM)
        count = max(1, int(required * rng.uniform(0.7, 1.3)))
        for i in range(count):
            operator = rng.choice(SAMPLE_OPERATORS)
            programs = [DEFAULT_PROGRAM] + rng.sample(PROGRAMS[1:], k=rng.randint(0, 2))
            deactivated = None
            if rng.random() < 0.05:
                deactivated = start + timedelta(days=rng.randint(90, 600))
            sites.append((
                site_id, municipality_id, f"{name} Depot {i + 1}", operator,
                "Depot", programs, start + timedelta(days=rng.randint(0, 180)), deactivated,
            ))
            site_id += 1

    load_sites(sites, db_path)
    logger.info("Sample registry seeded (%d municipalities, %d sites)", len(SAMPLE_MUNICIPALITIES), len(sites))


def init_with_sample_data(db_path: str = DB_PATH) -> None:
    """Initialize database with full sample data."""
    init_database(db_path)
    seed_sample_registry(db_path)


if __name__ == "__main__":
    init_with_sample_data()
    print(f"✓ Sample database initialized at {DB_PATH}")
