"""Session orchestration across capability tiers."""

from .cost import CostTracker, estimate_cost
from .orchestrator import Orchestrator, RunResult, TaskRequest
from .pool import TierPool
from .triage import classify_tier

__all__ = [
    "CostTracker",
    "Orchestrator",
    "RunResult",
    "TaskRequest",
    "TierPool",
    "classify_tier",
    "estimate_cost",
]
