from django.utils import timezone
from rest_framework import viewsets, permissions, status
from rest_framework.decorators import action
from rest_framework.response import Response

from broadcasts.models import BroadcastKind, OfferStatus
from .models import Provider
from .serializers import (
    BroadcastCreateSerializer,
    BroadcastSerializer,
    CancelSerializer,
    OfferSerializer,
    ProviderSerializer,
    RespondSerializer,
)
from .services import get_broadcast_service

# error code -> HTTP status for failed responses
ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "already_resolved": status.HTTP_409_CONFLICT,
    "expired": status.HTTP_410_GONE,
    "not_offered": status.HTTP_403_FORBIDDEN,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "invalid_decision": status.HTTP_400_BAD_REQUEST,
    "resource_creation_failed": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "internal_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def result_response(result):
    if result.success:
        return Response(result.to_dict())
    return Response(result.to_dict(), status=ERROR_STATUS.get(result.error, status.HTTP_400_BAD_REQUEST))


class ProviderViewSet(viewsets.ModelViewSet):
    """
    Pharmacies and delivery partners.
    Delivery partners report their position through `ping`.
    """
    queryset = Provider.objects.all()
    serializer_class = ProviderSerializer
    permission_classes = [permissions.AllowAny]

    @action(detail=True, methods=['post'])
    def ping(self, request, pk=None):
        """
        Location update from the partner app: {"lat": ..., "lng": ...}
        """
        provider = self.get_object()
        try:
            provider.lat = float(request.data["lat"])
            provider.lng = float(request.data["lng"])
        except (KeyError, TypeError, ValueError):
            return Response({"error": "lat and lng are required"}, status=status.HTTP_400_BAD_REQUEST)
        provider.location_updated_at = timezone.now()
        provider.save(update_fields=["lat", "lng", "location_updated_at"])
        return Response(ProviderSerializer(provider).data)


class BroadcastViewSet(viewsets.ViewSet):
    """
    The broadcast protocol over HTTP.
    - POST   /broadcasts/                 create (idempotent per target)
    - GET    /broadcasts/{id}/            poll
    - POST   /broadcasts/{id}/respond/    candidate accept / reject
    - POST   /broadcasts/{id}/cancel/     requester cancel
    - GET    /broadcasts/{id}/offers/     offers of one broadcast
    - GET    /broadcasts/inbox/?candidate_id=...   a candidate's open offers
    - POST   /broadcasts/sweep/           escalate / expire / re-broadcast (cron)
    """
    permission_classes = [permissions.AllowAny]

    def create(self, request):
        serializer = BroadcastCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        record = get_broadcast_service().scheduler.start(
            BroadcastKind(data["kind"]),
            data["target_id"],
            data["requester_id"],
            (data["origin_lat"], data["origin_lng"]),
            radius_km=data.get("radius_km"),
            max_candidates=data.get("max_candidates"),
            payload=data.get("payload") or {},
        )
        return Response(BroadcastSerializer(record).data, status=status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        record = get_broadcast_service().store.get_broadcast(pk)
        if record is None:
            return Response({"error": "not_found"}, status=status.HTTP_404_NOT_FOUND)
        return Response(BroadcastSerializer(record).data)

    @action(detail=True, methods=['post'])
    def respond(self, request, pk=None):
        serializer = RespondSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = get_broadcast_service().arbiter.respond(
            pk,
            data["candidate_id"],
            data["decision"],
            reason=data.get("reason") or None,
        )
        return result_response(result)

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        serializer = CancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = get_broadcast_service().arbiter.cancel(pk, requester_id=serializer.validated_data.get("requester_id"))
        return result_response(result)

    @action(detail=True, methods=['get'])
    def offers(self, request, pk=None):
        service = get_broadcast_service()
        if service.store.get_broadcast(pk) is None:
            return Response({"error": "not_found"}, status=status.HTTP_404_NOT_FOUND)
        offers = service.store.list_offers(broadcast_id=pk, candidate_id=request.query_params.get("candidate_id"))
        return Response(OfferSerializer(offers, many=True).data)

    @action(detail=False, methods=['get'])
    def inbox(self, request):
        candidate_id = request.query_params.get("candidate_id")
        if not candidate_id:
            return Response({"error": "candidate_id is required"}, status=status.HTTP_400_BAD_REQUEST)

        now = timezone.now()
        offers = [
            offer
            for offer in get_broadcast_service().store.list_offers(candidate_id=candidate_id, status=OfferStatus.PENDING)
            if offer.expires_at >= now
        ]
        return Response(OfferSerializer(offers, many=True).data)

    @action(detail=False, methods=['post'])
    def sweep(self, request):
        service = get_broadcast_service()
        swept = service.scheduler.sweep()
        rebroadcast = service.rebroadcast.run()
        return Response({
            "escalated": swept.escalated,
            "expired": swept.expired,
            "rebroadcast": rebroadcast.rebroadcast,
            "skipped": rebroadcast.skipped,
        })
