"""System-wide shared types — the single source of truth for all data structures."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


# ── Enums ────────────────────────────────────────────────────────

class ResourceKind(str, Enum):
    WORKFLOW = "workflow"
    PLUGIN = "plugin"
    API_CALL = "api_call"
    STORAGE = "storage"              # MB
    WORKFLOW_STEP = "workflow_step"  # steps per workflow
    GATEWAY = "gateway"
    DEPARTMENT = "department"
    MEMBER = "member"


class AllocationMode(str, Enum):
    UNLIMITED = "UNLIMITED"
    SOFT_CAP = "SOFT_CAP"
    HARD_CAP = "HARD_CAP"
    RESERVED = "RESERVED"


class LimitSource(str, Enum):
    MEMBER = "member"
    DEPARTMENT = "department"
    ORGANIZATION = "organization"
    PLAN = "plan"


class PeriodType(str, Enum):
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class OwnerKind(str, Enum):
    ORG = "org"
    USER = "user"


class WarningLevel(str, Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"
    BLOCKED = "blocked"


class ExecutionMode(str, Enum):
    SERVERLESS = "SERVERLESS"  # metered monthly executions
    WORKSPACE = "WORKSPACE"    # unmetered, tracked for analytics only


class UsageMetric(str, Enum):
    API_CALLS = "api_calls"
    WORKFLOW_RUNS = "workflow_runs"
    PLUGIN_EXECUTIONS = "plugin_executions"
    STORAGE = "storage"
    ERRORS = "errors"


class AllocationScope(str, Enum):
    MEMBER = "member"
    DEPARTMENT = "department"


# ── Limits ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class ResourceLimitSet:
    """Per-resource ceilings. ``-1`` means unlimited, ``None`` means not set.

    ``None`` only appears in override sets; a fully resolved set carries a
    value for every field.
    """

    max_workflows: int | None = None
    max_plugins: int | None = None
    max_api_calls: int | None = None
    max_storage: int | None = None
    max_steps: int | None = None
    max_gateways: int | None = None
    max_departments: int | None = None
    max_members: int | None = None

    def to_dict(self) -> dict[str, int | None]:
        return asdict(self)


@dataclass(frozen=True)
class OwnerContext:
    """Who is consuming a resource.

    Counters and ledger rows belong to the organization when one is present,
    otherwise to the user.
    """

    user_id: str
    organization_id: str | None = None
    department_id: str | None = None

    @property
    def owner_kind(self) -> OwnerKind:
        return OwnerKind.ORG if self.organization_id else OwnerKind.USER

    @property
    def owner_id(self) -> str:
        return self.organization_id or self.user_id


@dataclass(frozen=True)
class OrganizationPlan:
    organization_id: str
    plan: str
    limits: ResourceLimitSet


@dataclass(frozen=True)
class AccountPlan:
    """Personal plan of a user plus how their executions are metered."""

    user_id: str
    plan: str
    limits: ResourceLimitSet
    execution_mode: ExecutionMode = ExecutionMode.SERVERLESS
    executions_per_month: int | None = None


@dataclass
class Allocation:
    """Override record for one member or one department."""

    scope: AllocationScope
    organization_id: str
    department_id: str
    limits: ResourceLimitSet
    mode: AllocationMode = AllocationMode.SOFT_CAP
    user_id: str | None = None
    set_by: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.scope == AllocationScope.MEMBER and not self.user_id:
            msg = "member allocation requires a user_id"
            raise ValueError(msg)
        if self.scope == AllocationScope.DEPARTMENT and self.user_id is not None:
            msg = "department allocation cannot carry a user_id"
            raise ValueError(msg)


@dataclass(frozen=True)
class EffectiveLimit:
    """Limit actually applied after precedence resolution."""

    limit: int
    mode: AllocationMode
    source: LimitSource

    @property
    def unlimited(self) -> bool:
        return self.limit < 0 or self.mode == AllocationMode.UNLIMITED


# ── Decisions & Results ──────────────────────────────────────────

@dataclass(frozen=True)
class Decision:
    """Outcome of a quota check for one resource."""

    resource: ResourceKind
    allowed: bool
    current: int
    limit: int
    mode: AllocationMode
    source: LimitSource
    is_warning: bool = False
    message: str | None = None


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    new_count: int
    warning_level: WarningLevel = WarningLevel.NONE
    message: str | None = None


@dataclass(frozen=True)
class CanExecuteResult:
    allowed: bool
    warning_level: WarningLevel
    current: int
    limit: int | None
    reason: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class ExecutionCount:
    """Monthly execution usage for one owner."""

    current: int
    limit: int | None
    percentage: int
    period_start: datetime
    period_end: datetime
    metered: bool


@dataclass(frozen=True)
class TrackingError:
    """Why the tracking subsystem could not produce an authoritative answer."""

    component: str  # "counter_store" | "ledger" | "limits"
    reason: str


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """A value plus the degradation, if any, that produced it.

    ``error`` is set when the value is a fail-open default rather than the
    result of a full evaluation.
    """

    value: T
    error: TrackingError | None = None

    @property
    def degraded(self) -> bool:
        return self.error is not None


# ── Usage ────────────────────────────────────────────────────────

@dataclass
class UsageMetrics:
    """Metered counters for one owner over one window."""

    api_calls: int = 0
    workflow_runs: int = 0
    plugin_executions: int = 0
    storage_used: int = 0  # gauge, MB
    errors: int = 0

    def merge(self, other: UsageMetrics) -> UsageMetrics:
        """Sum additive fields, keep the larger storage value."""
        return UsageMetrics(
            api_calls=self.api_calls + other.api_calls,
            workflow_runs=self.workflow_runs + other.workflow_runs,
            plugin_executions=self.plugin_executions + other.plugin_executions,
            storage_used=max(self.storage_used, other.storage_used),
            errors=self.errors + other.errors,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class UsageLedgerRow:
    """Durable per-period usage row."""

    owner_kind: OwnerKind
    owner_id: str
    period_start: datetime
    period_type: PeriodType
    metrics: UsageMetrics = field(default_factory=UsageMetrics)
    updated_at: datetime | None = None


@dataclass(frozen=True)
class UsageSnapshot:
    """Current consumption of one resource against its effective limit."""

    resource: ResourceKind
    current: int
    limit: int
    mode: AllocationMode
    source: LimitSource
    percentage: int
    warning_level: WarningLevel = WarningLevel.NONE


@dataclass
class UsageSummary:
    """Dashboard view for one owner."""

    owner_kind: OwnerKind
    owner_id: str
    per_resource: dict[ResourceKind, UsageSnapshot] = field(default_factory=dict)
    executions: ExecutionCount | None = None
    today: UsageMetrics = field(default_factory=UsageMetrics)
    degraded: bool = False


# ── Allocation Administration ────────────────────────────────────

@dataclass(frozen=True)
class AllocationViolation:
    """One field of an allocation request that does not fit its parent."""

    field: str
    requested: int
    available: int
    parent_limit: int


@dataclass
class AllocationSummary:
    """Pool / allocated / unallocated view of one organization or department."""

    owner_id: str
    pool: ResourceLimitSet
    allocated: ResourceLimitSet
    unallocated: ResourceLimitSet
    allocations: list[Allocation] = field(default_factory=list)
