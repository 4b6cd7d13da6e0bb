import pytest
from datetime import timedelta

from conftest import ORIGIN, provider_at
from providers.models import Provider, ProviderKind
from providers.policy import SelectionPolicy, delivery_selection_policy
from providers.selection import escalation_radius, filter_eligible_providers, select_candidates
from routing.geofence import haversine_km, is_location_stale


def test_haversine_known_distance():
    """
    Harare -> Bulawayo is roughly 365km on the great circle.
    """
    bulawayo = (-20.1325, 28.6265)
    distance = haversine_km(ORIGIN, bulawayo)
    assert 355 < distance < 375

    # Symmetric and zero on the same point
    assert haversine_km(bulawayo, ORIGIN) == pytest.approx(distance)
    assert haversine_km(ORIGIN, ORIGIN) == 0


def test_radius_boundary():
    providers = [provider_at("inside", 9.99), provider_at("outside", 10.01)]
    ranked = select_candidates(ORIGIN, providers, radius_km=10, max_candidates=5)
    assert [candidate.provider_id for candidate in ranked] == ["inside"]


def test_scenario_a_five_nearest_sorted_ascending():
    """
    8 verified/available providers within 10km, radius=10, max=5
    -> exactly the 5 nearest, closest first.
    """
    distances = [7.5, 0.8, 9.1, 3.2, 5.0, 1.4, 6.6, 2.2]
    providers = [provider_at(f"p{index}", km) for index, km in enumerate(distances)]

    ranked = select_candidates(ORIGIN, providers, radius_km=10, max_candidates=5)

    assert len(ranked) == 5
    assert [c.distance_km for c in ranked] == sorted(c.distance_km for c in ranked)
    assert [c.provider_id for c in ranked] == ["p1", "p5", "p7", "p3", "p4"]
    for candidate, expected_km in zip(ranked, [0.8, 1.4, 2.2, 3.2, 5.0]):
        assert candidate.distance_km == pytest.approx(expected_km, abs=1e-6)


def test_radius_and_flags_exclude_providers():
    providers = [
        provider_at("near", 2.0),
        provider_at("far", 12.0),
        provider_at("busy", 1.0, is_available=False),
        provider_at("unverified", 1.5, is_verified=False),
        Provider.new("no_location", None, None),
    ]

    ranked = select_candidates(ORIGIN, providers, radius_km=10, max_candidates=5)
    assert [c.provider_id for c in ranked] == ["near"]

    # Relaxing the flags lets them through
    relaxed = SelectionPolicy(require_available=False, require_verified=False)
    ranked = select_candidates(ORIGIN, providers, radius_km=10, max_candidates=5, policy=relaxed)
    assert [c.provider_id for c in ranked] == ["busy", "unverified", "near"]


def test_origin_without_coordinates_returns_empty_list():
    providers = [provider_at("near", 1.0)]
    assert select_candidates(None, providers, radius_km=10) == []
    assert select_candidates((None, None), providers, radius_km=10) == []


def test_ties_broken_by_provider_id():
    providers = [provider_at("b", 3.0), provider_at("a", 3.0), provider_at("c", 3.0)]
    ranked = select_candidates(ORIGIN, providers, radius_km=10, max_candidates=3)
    assert [c.provider_id for c in ranked] == ["a", "b", "c"]


def test_exclude_ids_skips_already_notified():
    providers = [provider_at(f"p{index}", float(index)) for index in range(1, 6)]
    ranked = select_candidates(ORIGIN, providers, radius_km=10, max_candidates=5, exclude_ids=["p1", "p3"])
    assert [c.provider_id for c in ranked] == ["p2", "p4", "p5"]


def test_stale_locations_are_unknown(t0):
    """
    Delivery partners whose last ping is older than 2 minutes are not offered anything.
    """
    fresh = provider_at("fresh", 1.0, kind=ProviderKind.DELIVERY_PARTNER, location_updated_at=t0 - timedelta(seconds=30))
    stale = provider_at("stale", 0.5, kind=ProviderKind.DELIVERY_PARTNER, location_updated_at=t0 - timedelta(minutes=5))
    never = provider_at("never", 0.2, kind=ProviderKind.DELIVERY_PARTNER)

    eligible = filter_eligible_providers([fresh, stale, never], delivery_selection_policy(), now=t0)
    assert [p.id for p in eligible] == ["fresh"]

    # Pharmacies are static: freshness is not enforced by default
    ranked = select_candidates(ORIGIN, [stale, never], radius_km=10, now=t0)
    assert [c.provider_id for c in ranked] == ["never", "stale"]


def test_is_location_stale_threshold(t0):
    assert is_location_stale(None, t0)
    assert not is_location_stale(t0 - timedelta(seconds=120), t0)
    assert is_location_stale(t0 - timedelta(seconds=121), t0)
    # naive timestamps count as UTC
    assert not is_location_stale((t0 - timedelta(seconds=10)).replace(tzinfo=None), t0)


def test_escalation_radius_is_monotonic():
    radii = [escalation_radius(10, round_number) for round_number in range(1, 4)]
    assert radii == [10, 20, 30]
    assert all(a <= b for a, b in zip(radii, radii[1:]))

    with pytest.raises(ValueError):
        escalation_radius(10, 0)
