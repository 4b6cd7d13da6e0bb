import uuid

from django.db import models


def new_uuid():
    return str(uuid.uuid4())


class Provider(models.Model):
    """
    A pharmacy or a delivery partner that can be offered a broadcast.
    Delivery partners keep lat/lng fresh through GPS pings (location_updated_at).
    """
    class Kind(models.TextChoices):
        PHARMACY = "pharmacy", "Pharmacy"
        DELIVERY_PARTNER = "delivery_partner", "Delivery Partner"

    id = models.CharField(primary_key=True, max_length=64, default=new_uuid)
    kind = models.CharField(max_length=32, choices=Kind.choices, default=Kind.PHARMACY)
    name = models.CharField(max_length=255, blank=True)

    # A provider without coordinates is never offered anything
    lat = models.FloatField(blank=True, null=True)
    lng = models.FloatField(blank=True, null=True)
    location_updated_at = models.DateTimeField(blank=True, null=True)

    is_available = models.BooleanField(default=True)
    is_verified = models.BooleanField(default=True)
    reliability_score = models.FloatField(blank=True, null=True)

    def __str__(self):
        return f"{self.name or self.id} ({self.get_kind_display()})"


class Broadcast(models.Model):
    """
    One outstanding assignment attempt for an order or a delivery job.
    Rows are only ever changed through a conditional UPDATE on status (and version),
    see logistics.store.DjangoBroadcastStore.compare_and_set.
    """
    class Kind(models.TextChoices):
        CART_ORDER = "cart_order", "Cart Order"
        PRESCRIPTION_ORDER = "prescription_order", "Prescription Order"
        DELIVERY = "delivery", "Delivery"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        ACCEPTED = "accepted", "Accepted"
        FAILED = "failed", "Failed"
        CANCELLED = "cancelled", "Cancelled"

    class Phase(models.TextChoices):
        PRIORITY = "priority", "Priority"
        EXTENDED = "extended", "Extended"

    id = models.CharField(primary_key=True, max_length=64, default=new_uuid)
    kind = models.CharField(max_length=32, choices=Kind.choices)
    # cart / prescription / delivery id in the wider app
    target_id = models.CharField(max_length=64, db_index=True)
    requester_id = models.CharField(max_length=64)

    origin_lat = models.FloatField()
    origin_lng = models.FloatField()

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    phase = models.CharField(max_length=20, choices=Phase.choices, default=Phase.PRIORITY)
    round_number = models.PositiveIntegerField(default=1)
    radius_km = models.FloatField(default=0)
    base_radius_km = models.FloatField(default=0)
    priority_candidates = models.PositiveIntegerField(default=0)

    # Cumulative across rounds, only ever grows
    notified_candidate_ids = models.JSONField(default=list)
    remaining_candidate_ids = models.JSONField(default=list)
    candidate_distances_km = models.JSONField(default=dict)

    accepted_by = models.CharField(max_length=64, blank=True, null=True)
    result_resource_id = models.CharField(max_length=64, blank=True, null=True)
    failure_reason = models.CharField(max_length=64, blank=True, null=True)

    payload = models.JSONField(default=dict)

    phase_deadline = models.DateTimeField()
    overall_deadline = models.DateTimeField()
    created_at = models.DateTimeField()
    updated_at = models.DateTimeField()
    resolved_at = models.DateTimeField(blank=True, null=True)

    version = models.PositiveIntegerField(default=0)

    class Meta:
        indexes = [models.Index(fields=["kind", "target_id", "status"])]
        constraints = [
            # one running broadcast per cart / delivery job
            models.UniqueConstraint(
                fields=["kind", "target_id"],
                condition=models.Q(status="pending"),
                name="one_pending_broadcast_per_target",
            ),
        ]

    def __str__(self):
        return f"Broadcast {self.id} - {self.kind} {self.target_id} ({self.status})"


class OfferNotification(models.Model):
    """
    The offer of one broadcast to one candidate. Candidates read these rows;
    a push is only a hint that a new row exists.
    """
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        ACCEPTED = "accepted", "Accepted"
        REJECTED = "rejected", "Rejected"
        EXPIRED = "expired", "Expired"
        WITHDRAWN = "withdrawn", "Withdrawn"

    id = models.CharField(primary_key=True, max_length=64, default=new_uuid)
    broadcast = models.ForeignKey(Broadcast, on_delete=models.CASCADE, related_name="offers")
    target_id = models.CharField(max_length=64, db_index=True)
    candidate_id = models.CharField(max_length=64, db_index=True)
    round_number = models.PositiveIntegerField(default=1)
    phase = models.CharField(max_length=20, choices=Broadcast.Phase.choices, default=Broadcast.Phase.PRIORITY)

    issued_at = models.DateTimeField()
    expires_at = models.DateTimeField()

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    responded_at = models.DateTimeField(blank=True, null=True)
    rejection_reason = models.CharField(max_length=255, blank=True, null=True)
    payload = models.JSONField(default=dict)

    def __str__(self):
        return f"Offer {self.id} -> {self.candidate_id} ({self.status})"


class RequesterNotification(models.Model):
    id = models.CharField(primary_key=True, max_length=64, default=new_uuid)
    requester_id = models.CharField(max_length=64, db_index=True)
    broadcast = models.ForeignKey(Broadcast, on_delete=models.CASCADE, related_name="requester_notifications")
    target_id = models.CharField(max_length=64)
    notification_type = models.CharField(max_length=64)
    title = models.CharField(max_length=255)
    body = models.TextField(blank=True)
    resource_id = models.CharField(max_length=64, blank=True, null=True)
    created_at = models.DateTimeField()

    def __str__(self):
        return f"{self.notification_type} for {self.requester_id}"


class MedicineOrder(models.Model):
    """
    Created when a pharmacy wins a cart or prescription broadcast.
    The one-to-one on broadcast is the storage-level guarantee of one order per broadcast.
    """
    class Status(models.TextChoices):
        PLACED = "placed", "Placed"
        READY_FOR_PICKUP = "ready_for_pickup", "Ready for Pickup"
        OUT_FOR_DELIVERY = "out_for_delivery", "Out for Delivery"
        DELIVERED = "delivered", "Delivered"
        CANCELLED = "cancelled", "Cancelled"

    id = models.CharField(primary_key=True, max_length=64, default=new_uuid)
    broadcast = models.OneToOneField(Broadcast, on_delete=models.PROTECT, related_name="medicine_order")
    pharmacy_id = models.CharField(max_length=64)
    customer_id = models.CharField(max_length=64)

    # Structure: [{"medicine_id": "...", "quantity": 2, "price": 10.00}]
    items = models.JSONField(default=list)
    total_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    delivery_address = models.TextField(blank=True)

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PLACED)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"Order #{self.id} - {self.status}"


class DeliveryAssignment(models.Model):
    """
    Created when a delivery partner wins a delivery broadcast.
    """
    class Status(models.TextChoices):
        ASSIGNED = "assigned", "Assigned"
        PICKED_UP = "picked_up", "Picked Up"
        DELIVERED = "delivered", "Delivered"

    id = models.CharField(primary_key=True, max_length=64, default=new_uuid)
    broadcast = models.OneToOneField(Broadcast, on_delete=models.PROTECT, related_name="delivery_assignment")
    order_id = models.CharField(max_length=64, db_index=True)
    delivery_partner_id = models.CharField(max_length=64)

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ASSIGNED)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"Delivery of {self.order_id} by {self.delivery_partner_id}"
