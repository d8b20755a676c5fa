"""
Shared fixtures for the Site Compliance Engine tests.

Registry used by most tests (Lighting, evaluated on TODAY):

    id  name      population  required  active sites           state
    1   Alpha         45,000         3  6 Private              excess 3
    2   Beta          30,000         2  none                   shortfall 2
    3   Gamma         60,000         4  1 Municipal            shortfall 3
    4   Delta         15,000         1  3 Municipal            excess 2 (ineligible)
    5   Epsilon          500         0  none                   compliant

Adjacency: Alpha-Beta, Alpha-Gamma, Beta-Delta, Beta-Epsilon.
"""

from datetime import date

import pytest

from site_compliance.context import ComplianceContext
from site_compliance.database import (
    init_database,
    load_adjacency,
    load_municipalities,
    load_sites,
)
from site_compliance.engine import ComplianceEngine

TODAY = date(2025, 6, 15)
SITE_START = date(2024, 1, 1)

ALPHA, BETA, GAMMA, DELTA, EPSILON = 1, 2, 3, 4, 5

MUNICIPALITIES = [
    (ALPHA, "Alpha", 45_000, "Lower", "North", "ON", 2021),
    (BETA, "Beta", 30_000, "Lower", "North", "ON", 2021),
    (GAMMA, "Gamma", 60_000, "Single", "East", "ON", 2021),
    (DELTA, "Delta", 15_000, "Lower", "West", "ON", 2021),
    (EPSILON, "Epsilon", 500, "Lower", "West", "ON", 2021),
]

ADJACENCY = [(ALPHA, BETA), (ALPHA, GAMMA), (BETA, DELTA), (BETA, EPSILON)]


def site_row(site_id, municipality_id, operator_type="Private", site_type="Depot",
             programs=("Lighting",), start=SITE_START, deactivated=None):
    """Row in the layout expected by database.load_sites."""
    return (
        site_id, municipality_id, f"Site {site_id}", operator_type, site_type,
        list(programs), start, deactivated,
    )


SITES = (
    [site_row(101 + i, ALPHA) for i in range(6)]
    + [site_row(301, GAMMA, "Municipal")]
    + [site_row(401 + i, DELTA, "Municipal") for i in range(3)]
)


# ==================== FIXTURES ====================

@pytest.fixture
def db_path(tmp_path):
    """Temporary database seeded with the registry above."""
    path = str(tmp_path / "site_compliance_test.db")
    init_database(path)
    load_municipalities(MUNICIPALITIES, path)
    load_adjacency(ADJACENCY, path)
    load_sites(SITES, path)
    return path


@pytest.fixture
def ctx(db_path):
    """Context with a fixed clock."""
    return ComplianceContext(db_path=db_path, jurisdiction_name="Testshire", clock=lambda: TODAY)


@pytest.fixture
def engine(ctx):
    return ComplianceEngine(ctx)


@pytest.fixture
def add_sites(db_path):
    """Append site rows to the registry."""
    def _add(*rows):
        load_sites(rows, db_path)
    return _add


@pytest.fixture
def add_municipality(db_path):
    """Append a municipality and its neighbours."""
    def _add(municipality_id, name, population, neighbours=()):
        load_municipalities([(municipality_id, name, population, "Lower", "North", "ON", 2021)], db_path)
        load_adjacency([(municipality_id, n) for n in neighbours], db_path)
    return _add
