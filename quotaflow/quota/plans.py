"""Plan catalogs — limit sets for personal and organization subscriptions.

Personal plans are metered per account; organization plans describe a shared
pool that departments and members are carved out of.
"""

from __future__ import annotations

from enum import Enum

from quotaflow.core.constants import UNLIMITED
from quotaflow.core.interfaces import PlanDirectory
from quotaflow.core.logging import get_logger
from quotaflow.core.types import (
    AccountPlan,
    ExecutionMode,
    OrganizationPlan,
    ResourceLimitSet,
)

log = get_logger(__name__)


class PersonalPlan(str, Enum):
    FREE = "FREE"
    STARTER = "STARTER"
    PRO = "PRO"
    BUSINESS = "BUSINESS"
    ENTERPRISE = "ENTERPRISE"


class OrgPlan(str, Enum):
    ORG_FREE = "ORG_FREE"
    ORG_STARTER = "ORG_STARTER"
    ORG_GROWTH = "ORG_GROWTH"
    ORG_PRO = "ORG_PRO"
    ORG_BUSINESS = "ORG_BUSINESS"
    ORG_ENTERPRISE = "ORG_ENTERPRISE"


# api_calls are per day, storage is MB, steps are per workflow.
PERSONAL_PLAN_LIMITS: dict[PersonalPlan, ResourceLimitSet] = {
    PersonalPlan.FREE: ResourceLimitSet(
        max_workflows=5, max_plugins=3, max_api_calls=1_000, max_storage=100,
        max_steps=5, max_gateways=1, max_departments=1, max_members=3,
    ),
    PersonalPlan.STARTER: ResourceLimitSet(
        max_workflows=15, max_plugins=10, max_api_calls=5_000, max_storage=500,
        max_steps=10, max_gateways=3, max_departments=3, max_members=5,
    ),
    PersonalPlan.PRO: ResourceLimitSet(
        max_workflows=50, max_plugins=25, max_api_calls=50_000, max_storage=1_000,
        max_steps=15, max_gateways=10, max_departments=5, max_members=10,
    ),
    PersonalPlan.BUSINESS: ResourceLimitSet(
        max_workflows=200, max_plugins=100, max_api_calls=200_000, max_storage=5_000,
        max_steps=25, max_gateways=25, max_departments=20, max_members=50,
    ),
    PersonalPlan.ENTERPRISE: ResourceLimitSet(
        max_workflows=UNLIMITED, max_plugins=UNLIMITED, max_api_calls=500_000,
        max_storage=10_000, max_steps=30, max_gateways=UNLIMITED,
        max_departments=UNLIMITED, max_members=UNLIMITED,
    ),
}

ORG_PLAN_LIMITS: dict[OrgPlan, ResourceLimitSet] = {
    OrgPlan.ORG_FREE: ResourceLimitSet(
        max_workflows=5, max_plugins=5, max_api_calls=2_000, max_storage=1_024,
        max_steps=10, max_gateways=2, max_departments=1, max_members=3,
    ),
    OrgPlan.ORG_STARTER: ResourceLimitSet(
        max_workflows=25, max_plugins=20, max_api_calls=10_000, max_storage=20_480,
        max_steps=15, max_gateways=5, max_departments=3, max_members=5,
    ),
    OrgPlan.ORG_GROWTH: ResourceLimitSet(
        max_workflows=75, max_plugins=50, max_api_calls=50_000, max_storage=51_200,
        max_steps=20, max_gateways=15, max_departments=10, max_members=15,
    ),
    OrgPlan.ORG_PRO: ResourceLimitSet(
        max_workflows=250, max_plugins=150, max_api_calls=200_000, max_storage=102_400,
        max_steps=25, max_gateways=50, max_departments=25, max_members=40,
    ),
    OrgPlan.ORG_BUSINESS: ResourceLimitSet(
        max_workflows=1_000, max_plugins=500, max_api_calls=500_000, max_storage=256_000,
        max_steps=30, max_gateways=150, max_departments=UNLIMITED, max_members=100,
    ),
    OrgPlan.ORG_ENTERPRISE: ResourceLimitSet(
        max_workflows=UNLIMITED, max_plugins=UNLIMITED, max_api_calls=UNLIMITED,
        max_storage=UNLIMITED, max_steps=30, max_gateways=UNLIMITED,
        max_departments=UNLIMITED, max_members=UNLIMITED,
    ),
}

# None = unlimited monthly executions.
EXECUTIONS_PER_MONTH: dict[PersonalPlan, int | None] = {
    PersonalPlan.FREE: 500,
    PersonalPlan.STARTER: 5_000,
    PersonalPlan.PRO: None,
    PersonalPlan.BUSINESS: None,
    PersonalPlan.ENTERPRISE: None,
}

SERVERLESS_PLANS = frozenset({PersonalPlan.FREE, PersonalPlan.STARTER})


def personal_limits(plan: str) -> ResourceLimitSet | None:
    """Limit set of a personal plan id; None for unknown ids."""
    try:
        return PERSONAL_PLAN_LIMITS[PersonalPlan(plan.upper())]
    except ValueError:
        return None


def organization_limits(plan: str) -> ResourceLimitSet | None:
    """Limit set of an organization plan id; None for unknown ids."""
    try:
        return ORG_PLAN_LIMITS[OrgPlan(plan.upper())]
    except ValueError:
        return None


def execution_mode_for(plan: str, has_workspace_addon: bool = False) -> ExecutionMode:
    """Serverless plans are metered unless a workspace add-on is attached."""
    if has_workspace_addon:
        return ExecutionMode.WORKSPACE
    try:
        personal = PersonalPlan(plan.upper())
    except ValueError:
        return ExecutionMode.SERVERLESS
    return ExecutionMode.SERVERLESS if personal in SERVERLESS_PLANS else ExecutionMode.WORKSPACE


def executions_per_month(plan: str) -> int | None:
    try:
        return EXECUTIONS_PER_MONTH[PersonalPlan(plan.upper())]
    except ValueError:
        return None


def build_account_plan(
    user_id: str,
    plan: str,
    execution_mode: ExecutionMode | None = None,
    has_workspace_addon: bool = False,
) -> AccountPlan | None:
    """Assemble an AccountPlan from a plan id; None for unknown ids."""
    limits = personal_limits(plan)
    if limits is None:
        log.warning("unknown_personal_plan", user_id=user_id, plan=plan)
        return None
    return AccountPlan(
        user_id=user_id,
        plan=plan.upper(),
        limits=limits,
        execution_mode=execution_mode or execution_mode_for(plan, has_workspace_addon),
        executions_per_month=executions_per_month(plan),
    )


def build_organization_plan(organization_id: str, plan: str) -> OrganizationPlan | None:
    limits = organization_limits(plan)
    if limits is None:
        log.warning("unknown_organization_plan", organization_id=organization_id, plan=plan)
        return None
    return OrganizationPlan(organization_id=organization_id, plan=plan.upper(), limits=limits)


class StaticPlanDirectory(PlanDirectory):
    """In-memory plan assignments.

    Used in dev mode and tests. Replace with ``SqlPlanDirectory`` for production.
    """

    def __init__(self) -> None:
        self._organizations: dict[str, OrganizationPlan] = {}
        self._accounts: dict[str, AccountPlan] = {}

    def assign_organization(self, organization_id: str, plan: str | OrgPlan) -> OrganizationPlan:
        value = plan.value if isinstance(plan, OrgPlan) else plan
        org_plan = build_organization_plan(organization_id, value)
        if org_plan is None:
            msg = f"Unknown organization plan: {value}"
            raise ValueError(msg)
        self._organizations[organization_id] = org_plan
        return org_plan

    def assign_account(
        self,
        user_id: str,
        plan: str | PersonalPlan,
        execution_mode: ExecutionMode | None = None,
        has_workspace_addon: bool = False,
    ) -> AccountPlan:
        value = plan.value if isinstance(plan, PersonalPlan) else plan
        account = build_account_plan(user_id, value, execution_mode, has_workspace_addon)
        if account is None:
            msg = f"Unknown personal plan: {value}"
            raise ValueError(msg)
        self._accounts[user_id] = account
        return account

    def put_account(self, account: AccountPlan) -> None:
        """Register an account with custom limits."""
        self._accounts[account.user_id] = account

    def put_organization(self, organization: OrganizationPlan) -> None:
        self._organizations[organization.organization_id] = organization

    async def organization_plan(self, organization_id: str) -> OrganizationPlan | None:
        return self._organizations.get(organization_id)

    async def account_plan(self, user_id: str) -> AccountPlan | None:
        return self._accounts.get(user_id)
