# -*- coding: utf-8 -*-
"""
Configuration constants for the Site Compliance Engine.

All tunable parameters are centralized here for easy adjustment.
DB_PATH can be overridden with the SITE_COMPLIANCE_DB environment variable.
"""

import os
from typing import Dict, List

# =============================================================================
# Jurisdiction Profile
# =============================================================================

JURISDICTION_PROFILE = {
    "jurisdiction_name": "Ontario",
    "province": "ON",
    "census_year": 2021,
}


# =============================================================================
# Requirement Tiers (per stewardship program)
# =============================================================================
#
# population < min_population                    -> 0
# min_population <= p < band_start               -> small_population_sites
# band_start <= p <= large_threshold             -> ceil(p / band_divisor)
# p > large_threshold                            -> large_baseline + ceil((p - large_threshold) / large_divisor)

DEFAULT_PROGRAM = "Lighting"

REQUIREMENT_TIERS: Dict[str, Dict[str, int]] = {
    "Lighting": {
        "min_population": 1_000,
        "band_start": 1_000,
        "small_population_sites": 0,
        "band_divisor": 15_000,
        "large_threshold": 500_000,
        "large_baseline": 34,
        "large_divisor": 50_000,
    },
    "Paint": {
        "min_population": 1_000,
        "band_start": 5_000,
        "small_population_sites": 1,
        "band_divisor": 40_000,
        "large_threshold": 500_000,
        "large_baseline": 13,
        "large_divisor": 150_000,
    },
    "Solvents": {
        "min_population": 1_000,
        "band_start": 10_000,
        "small_population_sites": 1,
        "band_divisor": 250_000,
        "large_threshold": 500_000,
        "large_baseline": 2,
        "large_divisor": 300_000,
    },
    "Pesticides": {
        "min_population": 1_000,
        "band_start": 10_000,
        "small_population_sites": 1,
        "band_divisor": 250_000,
        "large_threshold": 500_000,
        "large_baseline": 2,
        "large_divisor": 300_000,
    },
}

PROGRAMS: List[str] = list(REQUIREMENT_TIERS.keys())


# =============================================================================
# Offset Ledger Configuration
# =============================================================================

OFFSET_CONFIG = {
    "min_percentage": 0,
    "max_percentage": 100,
}


# =============================================================================
# Event Ledger Configuration
# =============================================================================

EVENT_CONFIG = {
    # Optional share of the post-offset requirement that events may cover,
    # e.g. 0.35. None leaves the baseline shortfall as the only cap.
    "max_credit_share": None,
    "event_site_types": ["Event"],
}


# =============================================================================
# Reallocation Configuration
# =============================================================================

REALLOCATION_CONFIG = {
    # Operator-run sites are fixed commitments, never reallocatable surplus
    "excluded_operator_types": [
        "Municipal",
        "First Nation/Indigenous",
        "Regional District",
    ],
    "excluded_site_types": ["Event"],
    "default_actor": "compliance_engine",
}


# =============================================================================
# Planner Configuration
# =============================================================================

PLANNER_CONFIG = {
    # Solver selection: greedy below these sizes, CP-SAT above
    "greedy_threshold_pairs": 12,
    "greedy_threshold_recipients": 4,

    # Objective weight per transfer used (prefer fewer, larger transfers)
    "transfer_penalty": 1,

    # CP-SAT solver settings
    "cpsat_timeout_seconds": 30,
}


# =============================================================================
# Audit Event Types
# =============================================================================

AUDIT_EVENTS = {
    "OFFSET_APPLIED": "offset_ledger",
    "OFFSET_SUPERSEDED": "offset_ledger",
    "EVENT_APPLIED": "event_ledger",
    "REALLOCATION_PROPOSED": "reallocation_engine",
    "REALLOCATION_COMMITTED": "reallocation_engine",
    "REALLOCATION_REVERSED": "reallocation_engine",
    "POPULATION_REFRESHED": "census",
    "SNAPSHOT_SAVED": "reporting",
}


# =============================================================================
# Database Configuration
# =============================================================================

DB_PATH = os.getenv("SITE_COMPLIANCE_DB", "database/site_compliance.db")
