#Expose the high-level protocol pieces:
#Phase scheduler (create / escalate / expire / sweep)
#Acceptance arbiter (the race resolver behind accept/reject)
#Notifier + push transport
#Requester-side observer

from .errors import BroadcastError
from .notifier import Notifier
from .push_client import PushClient
from .scheduler import PhaseScheduler, SweepResult
from .arbiter import AcceptanceArbiter, InMemoryResourceCreator, ResourceCreator, RespondResult #the entry point for candidate responses
from .observer import BroadcastOutcome, BroadcastWatcher, apply_broadcast_update
from .rebroadcast import RebroadcastResult, RebroadcastSweep

__all__ = [
    "BroadcastError",
    "Notifier",
    "PushClient",
    "PhaseScheduler",
    "SweepResult",
    "AcceptanceArbiter",
    "InMemoryResourceCreator",
    "ResourceCreator",
    "RespondResult",
    "BroadcastOutcome",
    "BroadcastWatcher",
    "apply_broadcast_update",
    "RebroadcastResult",
    "RebroadcastSweep",
]
