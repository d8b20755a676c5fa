# -*- coding: utf-8 -*-
"""
Requirement Calculator for the Site Compliance Engine.

Tiered population-to-requirement formula per program:
- Below the minimum population nothing is required
- Small populations below the linear band get a flat minimum
- Linear band: one site per `band_divisor` residents (rounded up)
- Large populations: fixed baseline plus one site per `large_divisor`
  residents above the threshold

The calculator is pure; it never reads ledgers or site counts.
"""

from datetime import datetime
from typing import Tuple

from .config import DEFAULT_PROGRAM, REQUIREMENT_TIERS
from .errors import ValidationError
from .models import Municipality, RequirementSnapshot


def _ceil_div(numerator: int, denominator: int) -> int:
    """Integer ceiling division (no float rounding on large populations)."""
    return -(-numerator // denominator)


def validate_program(program: str) -> None:
    if program not in REQUIREMENT_TIERS:
        raise ValidationError(
            f"Unknown program: {program}",
            context={"program": program, "known_programs": list(REQUIREMENT_TIERS)},
        )


def requirement_tier(population: int, program: str = DEFAULT_PROGRAM) -> Tuple[str, int]:
    """
    Return (tier name, base requirement) for a population.

    Tier names: "below_minimum", "small_population", "linear", "large_urban".
    """
    validate_program(program)
    if isinstance(population, bool) or not isinstance(population, int) or population < 0:
        raise ValidationError(
            "Population must be a non-negative integer",
            context={"population": population},
        )

    tiers = REQUIREMENT_TIERS[program]

    if population < tiers["min_population"]:
        return "below_minimum", 0
    if population < tiers["band_start"]:
        return "small_population", tiers["small_population_sites"]
    if population <= tiers["large_threshold"]:
        return "linear", _ceil_div(population, tiers["band_divisor"])

    above = population - tiers["large_threshold"]
    return "large_urban", tiers["large_baseline"] + _ceil_div(above, tiers["large_divisor"])


def compute_requirement(population: int, program: str = DEFAULT_PROGRAM) -> int:
    """Base required site count for a population."""
    return requirement_tier(population, program)[1]


def requirement_snapshot(
    municipality: Municipality,
    program: str = DEFAULT_PROGRAM,
) -> RequirementSnapshot:
    """Derive a RequirementSnapshot from the municipality's current population."""
    tier, required = requirement_tier(municipality.population, program)
    return RequirementSnapshot(
        municipality_id=municipality.municipality_id,
        program=program,
        population=municipality.population,
        base_requirement=required,
        formula_tier=tier,
        computed_at=datetime.now(),
    )
