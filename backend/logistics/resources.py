"""
Purpose: Downstream resources created when a broadcast is won.
What it does:
- cart / prescription broadcast -> MedicineOrder (status "placed") for the winning pharmacy
- delivery broadcast -> DeliveryAssignment for the winning partner

Both tables hold a one-to-one on the broadcast, so a second create for the same
broadcast fails with IntegrityError, reported as DuplicateResource.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from django.db import IntegrityError, transaction

from broadcasts.models import BroadcastKind, BroadcastRecord
from dispatch.arbiter import ResourceCreator
from dispatch.errors import DuplicateResource

from .models import DeliveryAssignment, MedicineOrder

logger = logging.getLogger(__name__)


def _amount(payload: dict) -> Decimal:
    raw = payload.get("final_amount", payload.get("total_amount", 0))
    try:
        return Decimal(str(raw or 0))
    except InvalidOperation:
        return Decimal("0")


class DjangoResourceCreator(ResourceCreator):
    def existing_resource(self, record: BroadcastRecord) -> Optional[str]:
        model = DeliveryAssignment if record.kind == BroadcastKind.DELIVERY else MedicineOrder
        return model.objects.filter(broadcast_id=record.id).values_list("id", flat=True).first()

    def create(self, record: BroadcastRecord, candidate_id: str) -> str:
        try:
            with transaction.atomic():
                if record.kind == BroadcastKind.DELIVERY:
                    resource = DeliveryAssignment.objects.create(
                        broadcast_id=record.id,
                        order_id=record.target_id,
                        delivery_partner_id=candidate_id,
                    )
                else:
                    resource = MedicineOrder.objects.create(
                        broadcast_id=record.id,
                        pharmacy_id=candidate_id,
                        customer_id=record.requester_id,
                        items=record.payload.get("items") or [],
                        total_amount=_amount(record.payload),
                        delivery_address=record.payload.get("delivery_address", ""),
                    )
        except IntegrityError as exc:
            raise DuplicateResource(f"Broadcast {record.id} already has a resource") from exc

        logger.info(f"[Resources] Created {type(resource).__name__} {resource.id} for broadcast {record.id}")
        return resource.id

    def discard(self, resource_id: str) -> None:
        deleted, _ = MedicineOrder.objects.filter(pk=resource_id).delete()
        if not deleted:
            DeliveryAssignment.objects.filter(pk=resource_id).delete()
