"""
Purpose: Derive how many broadcast rounds a target already had from its offers.
What it does:
Offers of one round are created in one batch, so their issue timestamps cluster.
Walking the offers newest first, an offer issued within `window_seconds` of
the newest offer of the current cluster joins it; otherwise it opens a new one.
"""

from datetime import datetime
from typing import List, Optional, Sequence

from .models import OfferNotification, OfferStatus

DEFAULT_ROUND_WINDOW_S = 10


def cluster_offer_rounds(
    offers: Sequence[OfferNotification],
    window_seconds: float = DEFAULT_ROUND_WINDOW_S,
) -> List[List[OfferNotification]]:
    """
    Group offers into rounds, newest round first.
    """
    ordered = sorted(offers, key=lambda offer: offer.issued_at, reverse=True)

    rounds: List[List[OfferNotification]] = []
    current: List[OfferNotification] = []

    for offer in ordered:
        if not current:
            current.append(offer)
            continue

        gap = abs((current[0].issued_at - offer.issued_at).total_seconds())
        if gap < window_seconds:
            current.append(offer)
        else:
            rounds.append(current)
            current = [offer]

    if current:
        rounds.append(current)

    return rounds


def count_notification_rounds(
    offers: Sequence[OfferNotification],
    window_seconds: float = DEFAULT_ROUND_WINDOW_S,
) -> int:
    return len(cluster_offer_rounds(offers, window_seconds))


def latest_issue_time(offers: Sequence[OfferNotification]) -> Optional[datetime]:
    if not offers:
        return None
    return max(offer.issued_at for offer in offers)


def all_offers_closed(offers: Sequence[OfferNotification], now: datetime) -> bool:
    """
    True when every offer was rejected, expired or withdrawn, or is past its own expiry.
    """
    for offer in offers:
        if offer.status == OfferStatus.ACCEPTED:
            return False
        if offer.status == OfferStatus.PENDING and offer.expires_at >= now:
            return False
    return True
