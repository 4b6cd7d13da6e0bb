"""
Purpose: Wiring of the broadcast protocol over the Django store.
What it does:
- ProviderDirectory: Provider rows -> domain providers for the selector
- BroadcastService: one store, notifier, scheduler, arbiter and re-broadcast sweep
"""

import logging
from typing import List, Optional

from django.conf import settings

from broadcasts.store import BroadcastStore
from dispatch.arbiter import AcceptanceArbiter
from dispatch.notifier import Notifier
from dispatch.push_client import PushClient
from dispatch.rebroadcast import RebroadcastSweep
from dispatch.scheduler import PhaseScheduler
from providers.models import Provider as ProviderEntity, ProviderKind

from .models import Provider
from .resources import DjangoResourceCreator
from .store import DjangoBroadcastStore

logger = logging.getLogger(__name__)


class ProviderDirectory:
    def providers(self, kind: ProviderKind) -> List[ProviderEntity]:
        rows = Provider.objects.filter(kind=ProviderKind(kind).value)
        return [
            ProviderEntity.new(
                provider_id=row.id,
                lat=row.lat,
                lon=row.lng,
                kind=row.kind,
                is_available=row.is_available,
                is_verified=row.is_verified,
                name=row.name,
                location_updated_at=row.location_updated_at,
                reliability_score=row.reliability_score,
            )
            for row in rows
        ]


def build_push_client() -> Optional[PushClient]:
    url = getattr(settings, "PUSH_NOTIFICATION_URL", None)
    if not url:
        logger.info("[Services] PUSH_NOTIFICATION_URL not set, offers are delivered by polling only")
        return None
    return PushClient(base_url=url, api_key=getattr(settings, "PUSH_NOTIFICATION_KEY", None))


class BroadcastService:
    def __init__(self, store: Optional[BroadcastStore] = None, push_client=None, directory: Optional[ProviderDirectory] = None):
        self.store = store or DjangoBroadcastStore()
        self.directory = directory or ProviderDirectory()
        self.notifier = Notifier(self.store, push_client if push_client is not None else build_push_client())
        self.scheduler = PhaseScheduler(self.store, self.notifier, self.directory.providers)
        self.arbiter = AcceptanceArbiter(
            self.store,
            DjangoResourceCreator(),
            notifier=self.notifier,
            scheduler=self.scheduler,
        )
        self.rebroadcast = RebroadcastSweep(self.store, self.scheduler)


_service: Optional[BroadcastService] = None


def get_broadcast_service() -> BroadcastService:
    global _service
    if _service is None:
        _service = BroadcastService()
    return _service
