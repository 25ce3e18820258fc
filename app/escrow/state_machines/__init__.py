"""
State enums for escrow models.
"""

from escrow.state_machines.states import (
    ACTIVE_DISPUTE_STATUSES,
    DealState,
    DisputeCategory,
    DisputePriority,
    DisputeResolution,
    DisputeStatus,
    MilestoneState,
    OnboardingStatus,
    PayoutStatus,
)

__all__ = [
    "ACTIVE_DISPUTE_STATUSES",
    "DealState",
    "DisputeCategory",
    "DisputePriority",
    "DisputeResolution",
    "DisputeStatus",
    "MilestoneState",
    "OnboardingStatus",
    "PayoutStatus",
]
