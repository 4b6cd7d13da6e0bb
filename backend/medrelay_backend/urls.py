from django.urls import path, include
from rest_framework.routers import DefaultRouter
from logistics.views import BroadcastViewSet, ProviderViewSet

router = DefaultRouter()
router.register(r'providers', ProviderViewSet)
router.register(r'broadcasts', BroadcastViewSet, basename='broadcast')

urlpatterns = [
    path('api/v1/', include(router.urls)),
]
