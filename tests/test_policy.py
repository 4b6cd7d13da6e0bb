import pytest
from dataclasses import replace

from broadcasts.models import BroadcastKind
from broadcasts.policy import (
    BroadcastPolicy,
    ExtendedMode,
    cart_order_policy,
    delivery_policy,
    policy_for_kind,
    policy_from_env,
    prescription_policy,
)
from providers.policy import SelectionPolicy, default_selection_policy, delivery_selection_policy


def test_policy_per_kind():
    cart = policy_for_kind(BroadcastKind.CART_ORDER)
    assert (cart.priority_candidates, cart.priority_window_seconds, cart.sequential_window_seconds) == (3, 15, 15)
    assert cart.overall_timeout_seconds == 180
    assert cart.max_rounds == 3
    assert cart.offer_grace_seconds == 30

    delivery = policy_for_kind(BroadcastKind.DELIVERY)
    assert delivery == delivery_policy()
    assert delivery.priority_window_seconds == 20
    assert delivery.rebroadcast_cooldown_seconds == 180

    prescription = policy_for_kind(BroadcastKind.PRESCRIPTION_ORDER)
    assert prescription == prescription_policy()
    assert not prescription.phased
    assert prescription.max_rounds == 1


@pytest.mark.parametrize("changes", [
    {"priority_candidates": 0},
    {"priority_window_seconds": 0},
    {"priority_window_seconds": 200},
    {"overall_timeout_seconds": -1},
    {"max_rounds": 0},
    {"extended_pool_size": -1},
    {"poll_interval_seconds": 0},
])
def test_invalid_policies_rejected(changes):
    with pytest.raises(ValueError):
        replace(cart_order_policy(), **changes).validate()


def test_policy_from_env(monkeypatch):
    monkeypatch.setenv("BROADCAST_OVERALL_TIMEOUT_SECONDS", "240")
    monkeypatch.setenv("BROADCAST_EXTENDED_MODE", "parallel")
    monkeypatch.setenv("BROADCAST_EARLY_EXHAUSTION", "false")
    monkeypatch.setenv("BROADCAST_POLL_INTERVAL_SECONDS", "0.5")

    policy = policy_from_env(cart_order_policy())

    assert policy.overall_timeout_seconds == 240
    assert policy.extended_mode == ExtendedMode.PARALLEL
    assert policy.early_exhaustion is False
    assert policy.poll_interval_seconds == 0.5
    # untouched values keep their defaults
    assert policy.priority_window_seconds == 15


def test_policy_from_env_without_overrides_returns_base():
    base = BroadcastPolicy()
    assert policy_from_env(base, prefix="MEDRELAY_TEST_UNSET_") is base


def test_selection_policies():
    assert default_selection_policy().base_radius_km == 10
    assert not default_selection_policy().enforce_location_freshness
    assert delivery_selection_policy().enforce_location_freshness

    with pytest.raises(ValueError):
        SelectionPolicy(base_radius_km=0).validate()
