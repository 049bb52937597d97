"""Quota engine — limit resolution, enforcement, execution tracking and usage rollups."""

from quotaflow.quota.aggregation import AggregationPipeline
from quotaflow.quota.allocations import AllocationService, InMemoryAllocationRepository
from quotaflow.quota.cache import LimitLookupCache
from quotaflow.quota.counters import InMemoryCounterStore
from quotaflow.quota.engine import QuotaEngine, build_engine
from quotaflow.quota.execution import ExecutionTracker
from quotaflow.quota.gate import QuotaEnforcementGate
from quotaflow.quota.plans import OrgPlan, PersonalPlan, StaticPlanDirectory
from quotaflow.quota.resolver import LimitResolver
from quotaflow.quota.usage import UsageTracker

__all__ = [
    "AggregationPipeline",
    "AllocationService",
    "ExecutionTracker",
    "InMemoryAllocationRepository",
    "InMemoryCounterStore",
    "LimitLookupCache",
    "LimitResolver",
    "OrgPlan",
    "PersonalPlan",
    "QuotaEnforcementGate",
    "QuotaEngine",
    "StaticPlanDirectory",
    "UsageTracker",
    "build_engine",
]
