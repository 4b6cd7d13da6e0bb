from rest_framework import serializers

from broadcasts.models import BroadcastKind
from .models import Provider


class ProviderSerializer(serializers.ModelSerializer):
    class Meta:
        model = Provider
        fields = '__all__'


class BroadcastCreateSerializer(serializers.Serializer):
    kind = serializers.ChoiceField(choices=[kind.value for kind in BroadcastKind])
    target_id = serializers.CharField(max_length=64)
    requester_id = serializers.CharField(max_length=64)
    origin_lat = serializers.FloatField(min_value=-90, max_value=90)
    origin_lng = serializers.FloatField(min_value=-180, max_value=180)
    radius_km = serializers.FloatField(required=False, min_value=0.1)
    max_candidates = serializers.IntegerField(required=False, min_value=1)
    # Opaque order data (items, amounts, address) carried into offers and the created order
    payload = serializers.DictField(required=False, default=dict)


class RespondSerializer(serializers.Serializer):
    candidate_id = serializers.CharField(max_length=64)
    # Left as a plain string so an unknown value reaches the arbiter and comes back as invalid_decision
    decision = serializers.CharField(max_length=16)
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255)


class CancelSerializer(serializers.Serializer):
    requester_id = serializers.CharField(required=False, max_length=64)


class BroadcastSerializer(serializers.Serializer):
    """
    Read-only view of a BroadcastRecord (what the requester polls).
    """
    id = serializers.CharField()
    kind = serializers.CharField(source="kind.value")
    target_id = serializers.CharField()
    requester_id = serializers.CharField()
    status = serializers.CharField(source="status.value")
    phase = serializers.CharField(source="phase.value")
    round_number = serializers.IntegerField()
    radius_km = serializers.FloatField()
    notified_candidate_ids = serializers.ListField(child=serializers.CharField())
    accepted_by = serializers.CharField(allow_null=True)
    result_resource_id = serializers.CharField(allow_null=True)
    failure_reason = serializers.CharField(allow_null=True)
    phase_deadline = serializers.DateTimeField()
    overall_deadline = serializers.DateTimeField()
    created_at = serializers.DateTimeField()
    updated_at = serializers.DateTimeField()
    resolved_at = serializers.DateTimeField(allow_null=True)
    version = serializers.IntegerField()
    remaining_seconds = serializers.SerializerMethodField()

    def get_remaining_seconds(self, record):
        return round(record.remaining_seconds(), 1)


class OfferSerializer(serializers.Serializer):
    id = serializers.CharField()
    broadcast_id = serializers.CharField()
    target_id = serializers.CharField()
    candidate_id = serializers.CharField()
    round_number = serializers.IntegerField()
    phase = serializers.CharField(source="phase.value")
    status = serializers.CharField(source="status.value")
    issued_at = serializers.DateTimeField()
    expires_at = serializers.DateTimeField()
    responded_at = serializers.DateTimeField(allow_null=True)
    rejection_reason = serializers.CharField(allow_null=True)
    is_read = serializers.BooleanField()
    payload = serializers.DictField()

