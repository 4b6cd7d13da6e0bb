"""
Broadcasts domain package.

Public API:
- Domain models: BroadcastRecord, OfferNotification, RequesterNotification and their enums
- Policy: BroadcastPolicy and one factory per broadcast flavour
- Persistence: BroadcastStore, InMemoryBroadcastStore
"""
from .models import (
    BroadcastKind,
    BroadcastPhase,
    BroadcastRecord,
    BroadcastStatus,
    Decision,
    OfferNotification,
    OfferStatus,
    RequesterNotification,
    TERMINAL_STATUSES,
)
from .policy import (
    BroadcastPolicy,
    ExtendedMode,
    cart_order_policy,
    delivery_policy,
    policy_for_kind,
    policy_from_env,
    prescription_policy,
)
from .store import BroadcastStore, DuplicatePendingBroadcast, InMemoryBroadcastStore

__all__ = [
    "BroadcastKind",
    "BroadcastPhase",
    "BroadcastRecord",
    "BroadcastStatus",
    "Decision",
    "OfferNotification",
    "OfferStatus",
    "RequesterNotification",
    "TERMINAL_STATUSES",
    "BroadcastPolicy",
    "ExtendedMode",
    "cart_order_policy",
    "delivery_policy",
    "policy_for_kind",
    "policy_from_env",
    "prescription_policy",
    "BroadcastStore",
    "DuplicatePendingBroadcast",
    "InMemoryBroadcastStore",
]
