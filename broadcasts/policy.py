"""
Purpose: Central configuration for broadcast timing and escalation (single source of truth).
What it does:

Stores all tunable windows/caps of the broadcast state machine:

PRIORITY_CANDIDATES = 3
PRIORITY_WINDOW_SECONDS = 15
SEQUENTIAL_WINDOW_SECONDS = 15
OVERALL_TIMEOUT_SECONDS = 180
MAX_ROUNDS = 3
REBROADCAST_COOLDOWN_SECONDS = 180

Defines one factory per broadcast flavour, plus env overrides (python-dotenv).

Rule: No logic here, just parameters so you can tune without rewriting code.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from enum import Enum

from dotenv import load_dotenv

from .models import BroadcastKind

load_dotenv()


class ExtendedMode(str, Enum):
    # offer the remaining candidates one at a time
    SEQUENTIAL = "sequential"
    # offer every remaining candidate at once until the overall deadline
    PARALLEL = "parallel"


@dataclass(frozen=True)
class BroadcastPolicy:
    """
    Central configuration for one broadcast flavour.

    Notes:
    - A round is: priority phase (top candidates in parallel) followed by the
      extended phase (the rest of the round's ranked pool).
    - When a round runs out of candidates the next round searches again with
      radius = base * round.
    - `phased=False` collapses a round to a single window equal to the
      overall timeout (the flat prescription broadcast).
    """

    phased: bool = True

    # --- Priority phase ---
    priority_candidates: int = 3
    priority_window_seconds: int = 15

    # --- Extended phase ---
    extended_mode: ExtendedMode = ExtendedMode.SEQUENTIAL
    # How many more ranked candidates a round keeps for the extended phase.
    extended_pool_size: int = 10
    sequential_window_seconds: int = 15

    # --- Overall budget ---
    overall_timeout_seconds: int = 180

    # --- Rounds ---
    max_rounds: int = 3

    # Late responses to an individual offer are honoured for this long after it expires.
    offer_grace_seconds: int = 30

    # Reject-by-everyone escalates before the phase deadline.
    early_exhaustion: bool = True

    # --- Delivery re-broadcast sweep ---
    rebroadcast_cooldown_seconds: int = 180
    # Offers issued within this many seconds of each other belong to the same round.
    round_cluster_window_seconds: int = 10

    # --- Client observer ---
    poll_interval_seconds: float = 2.0

    def validate(self) -> None:
        """
        Basic sanity checks. Call once at startup if you want.
        """
        if self.priority_candidates <= 0:
            raise ValueError("priority_candidates must be > 0")

        if self.priority_window_seconds <= 0:
            raise ValueError("priority_window_seconds must be > 0")

        if self.sequential_window_seconds <= 0:
            raise ValueError("sequential_window_seconds must be > 0")

        if self.extended_pool_size < 0:
            raise ValueError("extended_pool_size must be >= 0")

        if self.overall_timeout_seconds <= 0:
            raise ValueError("overall_timeout_seconds must be > 0")

        if self.phased and self.priority_window_seconds > self.overall_timeout_seconds:
            raise ValueError("priority window must fit inside the overall timeout")

        if self.max_rounds < 1:
            raise ValueError("max_rounds must be >= 1")

        if self.offer_grace_seconds < 0 or self.rebroadcast_cooldown_seconds < 0:
            raise ValueError("grace and cooldown seconds must be >= 0")

        if self.round_cluster_window_seconds <= 0:
            raise ValueError("round_cluster_window_seconds must be > 0")

        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")


def cart_order_policy() -> BroadcastPolicy:
    """
    Cart orders: top 3 pharmacies for 15 seconds, then one pharmacy at a time.
    """
    p = BroadcastPolicy()
    p.validate()
    return p


def delivery_policy() -> BroadcastPolicy:
    """
    Delivery jobs: top 3 partners for 20 seconds, then one partner every 20 seconds.
    """
    p = BroadcastPolicy(
        priority_window_seconds=20,
        sequential_window_seconds=20,
    )
    p.validate()
    return p


def prescription_policy() -> BroadcastPolicy:
    """
    Prescription orders: a flat 3 minute window over the nearest pharmacies,
    no phases and a single round.
    """
    p = BroadcastPolicy(
        phased=False,
        priority_candidates=5,
        priority_window_seconds=180,
        extended_pool_size=0,
        max_rounds=1,
    )
    p.validate()
    return p


def policy_for_kind(kind: BroadcastKind) -> BroadcastPolicy:
    if kind == BroadcastKind.DELIVERY:
        return delivery_policy()
    if kind == BroadcastKind.PRESCRIPTION_ORDER:
        return prescription_policy()
    return cart_order_policy()


def _parse_env_value(raw: str, current):
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, Enum):
        return type(current)(raw.strip())
    return type(current)(raw)


def policy_from_env(base: BroadcastPolicy, prefix: str = "BROADCAST_") -> BroadcastPolicy:
    """
    Apply environment overrides on top of `base`.
    Example in .env:
    BROADCAST_OVERALL_TIMEOUT_SECONDS=240
    BROADCAST_PRIORITY_WINDOW_SECONDS=20
    """
    overrides = {}
    for policy_field in fields(base):
        raw = os.getenv(f"{prefix}{policy_field.name.upper()}")
        if raw is None or raw == "":
            continue
        overrides[policy_field.name] = _parse_env_value(raw, getattr(base, policy_field.name))

    if not overrides:
        return base

    p = replace(base, **overrides)
    p.validate()
    return p
