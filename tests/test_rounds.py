from datetime import timedelta

from broadcasts.models import BroadcastPhase, OfferNotification, OfferStatus
from broadcasts.rounds import all_offers_closed, cluster_offer_rounds, count_notification_rounds, latest_issue_time


def make_offer(t0, issued_after_s, status=OfferStatus.EXPIRED, window_s=20, candidate_id="dp_1"):
    issued_at = t0 + timedelta(seconds=issued_after_s)
    return OfferNotification(
        id=f"offer_{candidate_id}_{issued_after_s}",
        broadcast_id="b1",
        target_id="order_1",
        candidate_id=candidate_id,
        round_number=1,
        phase=BroadcastPhase.PRIORITY,
        issued_at=issued_at,
        expires_at=issued_at + timedelta(seconds=window_s),
        status=status,
    )


def test_offers_of_one_batch_form_one_round(t0):
    offers = [make_offer(t0, 0), make_offer(t0, 3, candidate_id="dp_2"), make_offer(t0, 8, candidate_id="dp_3")]
    assert count_notification_rounds(offers) == 1


def test_rounds_are_anchored_at_newest_offer(t0):
    """
    0s, 9s, 18s: 9s joins the 18s round, 0s is 18s away from the anchor and opens a new one.
    """
    offers = [make_offer(t0, 0), make_offer(t0, 9), make_offer(t0, 18)]
    rounds = cluster_offer_rounds(offers)

    assert [[offer.issued_at for offer in batch] for batch in rounds] == [
        [t0 + timedelta(seconds=18), t0 + timedelta(seconds=9)],
        [t0],
    ]


def test_separate_broadcasts_count_as_separate_rounds(t0):
    offers = [make_offer(t0, 0), make_offer(t0, 1, candidate_id="dp_2"), make_offer(t0, 200), make_offer(t0, 420)]
    assert count_notification_rounds(offers) == 3
    assert count_notification_rounds([]) == 0
    assert latest_issue_time(offers) == t0 + timedelta(seconds=420)
    assert latest_issue_time([]) is None


def test_all_offers_closed(t0):
    closed = [make_offer(t0, 0, OfferStatus.REJECTED), make_offer(t0, 1, OfferStatus.EXPIRED, candidate_id="dp_2")]
    assert all_offers_closed(closed, t0 + timedelta(seconds=30))

    # a pending offer counts as closed only once its own expiry has passed
    waiting = closed + [make_offer(t0, 5, OfferStatus.PENDING, candidate_id="dp_3")]
    assert not all_offers_closed(waiting, t0 + timedelta(seconds=25))
    assert all_offers_closed(waiting, t0 + timedelta(seconds=26))

    accepted = closed + [make_offer(t0, 2, OfferStatus.ACCEPTED, candidate_id="dp_4")]
    assert not all_offers_closed(accepted, t0 + timedelta(hours=1))
