# -*- coding: utf-8 -*-
"""
Pydantic models for the Site Compliance Engine.

Data models for municipalities, collection sites, the three adjustment
ledgers (offsets, events, reallocations) and compliance results.
"""

from datetime import datetime, date
from typing import Optional, List, Literal, Dict
from pydantic import BaseModel, Field, field_validator

from .config import DEFAULT_PROGRAM


# =============================================================================
# Status Types
# =============================================================================

MunicipalTier = Literal["Single", "Lower", "Upper"]
LedgerStatus = Literal["active", "pending", "expired"]
ReallocationStatus = Literal["proposed", "committed", "reversed"]
ComplianceStatus = Literal["compliant", "shortfall", "excess"]


# =============================================================================
# Registry Models
# =============================================================================

class Municipality(BaseModel):
    """A municipality in the jurisdiction."""
    municipality_id: int
    name: str
    population: int = Field(ge=0)
    tier: Optional[MunicipalTier] = None
    region: Optional[str] = None
    province: Optional[str] = None
    census_year: Optional[int] = None


class Site(BaseModel):
    """
    A collection site.

    Sites are never deleted; a deactivation date removes the site from
    active counts while keeping it for audit.
    """
    site_id: int
    municipality_id: int
    name: str
    operator_type: str = "Other"
    site_type: str = "Depot"
    programs: List[str] = Field(default_factory=lambda: [DEFAULT_PROGRAM])
    active_start: date
    deactivated_on: Optional[date] = None

    def is_active(self, as_of: date) -> bool:
        """Active iff active_start <= as_of and not yet deactivated."""
        if self.active_start > as_of:
            return False
        return self.deactivated_on is None or self.deactivated_on > as_of

    @field_validator("deactivated_on")
    @classmethod
    def deactivation_after_start(cls, v, info):
        if v is not None and "active_start" in info.data and v < info.data["active_start"]:
            raise ValueError("deactivated_on must be >= active_start")
        return v


# =============================================================================
# Requirement Models
# =============================================================================

class RequirementSnapshot(BaseModel):
    """Base requirement derived from population. Not persisted."""
    municipality_id: int
    program: str
    population: int
    base_requirement: int = Field(ge=0)
    formula_tier: str
    computed_at: datetime


# =============================================================================
# Ledger Models
# =============================================================================

class Offset(BaseModel):
    """Direct-service offset: a percentage reduction for one program year."""
    offset_id: Optional[int] = None  # Assigned by DB
    municipality_id: int
    program: str = DEFAULT_PROGRAM
    percentage: float = Field(ge=0, le=100)
    annual_pickup_volume: Optional[float] = None
    effective_date: date
    superseded_by: Optional[int] = None
    created_by: str = "offset_ledger"
    created_at: Optional[datetime] = None

    # Derived at read time from the evaluation date, never stored
    status: Optional[LedgerStatus] = None

    @property
    def effective_year(self) -> int:
        return self.effective_date.year

    def status_on(self, as_of: date) -> LedgerStatus:
        if as_of < self.effective_date:
            return "pending"
        if as_of >= date(self.effective_date.year + 1, 1, 1):
            return "expired"
        return "active"


class EventRecord(BaseModel):
    """A time-bounded event counted as temporary site-equivalents."""
    event_id: Optional[int] = None
    municipality_id: int
    program: str = DEFAULT_PROGRAM
    credit: int = Field(gt=0)
    valid_from: date
    valid_to: date
    event_site_id: Optional[int] = None
    description: Optional[str] = None
    created_by: str = "event_ledger"
    created_at: Optional[datetime] = None

    status: Optional[LedgerStatus] = None

    @field_validator("valid_to")
    @classmethod
    def window_not_inverted(cls, v, info):
        if "valid_from" in info.data and v < info.data["valid_from"]:
            raise ValueError("valid_to must be >= valid_from")
        return v

    def status_on(self, as_of: date) -> LedgerStatus:
        if as_of < self.valid_from:
            return "pending"
        if as_of > self.valid_to:
            return "expired"
        return "active"


class Justification(BaseModel):
    """Which sites back a reallocation and which were excluded."""
    included_site_ids: List[int] = Field(default_factory=list)
    excluded_sites: Dict[int, str] = Field(default_factory=dict)  # site_id -> reason
    rationale: Optional[str] = None
    auto_selected: bool = False  # sites picked by the engine; re-picked at commit


class ReallocationRecord(BaseModel):
    """A transfer of required-site capacity from donor to recipient."""
    reallocation_id: Optional[int] = None
    donor_id: int
    recipient_id: int
    program: str = DEFAULT_PROGRAM
    quantity: int = Field(gt=0)
    effective_date: date
    justification: Justification = Field(default_factory=Justification)
    status: ReallocationStatus = "proposed"

    proposed_by: str = "reallocation_engine"
    proposed_at: Optional[datetime] = None
    committed_by: Optional[str] = None
    committed_at: Optional[datetime] = None
    reversed_by: Optional[str] = None
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None


# =============================================================================
# Compliance Models
# =============================================================================

class ComplianceResult(BaseModel):
    """Compliance status of one municipality for one program."""
    municipality_id: int
    municipality_name: str
    program: str
    evaluated_as_of: date

    base_requirement: int = Field(ge=0)
    offset_percentage: float = 0
    offset_reduction: int = Field(default=0, ge=0)
    event_credit: int = Field(default=0, ge=0)
    incoming: int = Field(default=0, ge=0)
    outgoing: int = Field(default=0, ge=0)
    adjusted_requirement: int = Field(ge=0)

    active_site_count: int = Field(ge=0)
    status: ComplianceStatus
    shortfall: int = Field(ge=0)
    excess: int = Field(ge=0)

    @property
    def compliance_rate(self) -> float:
        """Active sites as a percentage of the adjusted requirement."""
        if self.adjusted_requirement <= 0:
            return 100.0
        return self.active_site_count / self.adjusted_requirement * 100


class IntegrityIssue(BaseModel):
    """A municipality whose ledger state could not be evaluated."""
    municipality_id: int
    municipality_name: str
    error_code: str
    message: str
    context: Dict = Field(default_factory=dict)


class ComplianceBatch(BaseModel):
    """Batch evaluation: results for evaluable municipalities plus integrity issues."""
    program: str
    evaluated_as_of: date
    results: List[ComplianceResult] = Field(default_factory=list)
    conflicts: List[IntegrityIssue] = Field(default_factory=list)


class ComplianceSummary(BaseModel):
    """Jurisdiction-wide roll-up of compliance results."""
    total: int
    compliant: int
    shortfalls: int
    excesses: int
    total_shortfall_sites: int
    total_excess_sites: int
    total_required: int
    total_actual: int
    overall_compliance_rate: float


# =============================================================================
# Reallocation Planning Models
# =============================================================================

class EligibleExcess(BaseModel):
    """A donor's reallocatable capacity and its neighbours in shortfall."""
    municipality_id: int
    name: str
    excess: int
    available_excess: int
    eligible_site_ids: List[int]
    adjacent_shortfalls: Dict[int, int]  # municipality_id -> shortfall


class PlannedTransfer(BaseModel):
    """A suggested reallocation produced by the planner."""
    donor_id: int
    recipient_id: int
    quantity: int = Field(gt=0)


class ReallocationPlan(BaseModel):
    """Planner output."""
    program: str
    solver: Literal["greedy", "cpsat"]
    transfers: List[PlannedTransfer]
    total_transferred: int
    uncovered_shortfall: int
