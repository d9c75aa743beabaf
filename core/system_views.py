from django.conf import settings
from django.db import connection
from django.utils.crypto import constant_time_compare
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from products.stock import get_stock_update_strategy


class CoordinationStatusAPIView(APIView):
    """Which cache, lease store and checkout stock strategy are live."""

    permission_classes = [AllowAny]

    def _is_authorized(self, request):
        if bool(getattr(settings, "DEBUG", False)):
            return True

        user = getattr(request, "user", None)
        if user and user.is_authenticated and user.is_staff:
            return True

        expected = (getattr(settings, "SYSTEM_STATUS_TOKEN", "") or "").strip()
        provided = (
            request.headers.get("X-System-Token")
            or request.GET.get("token")
            or ""
        ).strip()
        if not expected or not provided:
            return False
        return constant_time_compare(provided, expected)

    def get(self, request):
        if not self._is_authorized(request):
            return Response({"detail": "Forbidden"}, status=403)

        cache_backend = (getattr(settings, "CACHES", {}) or {}).get("default", {}).get("BACKEND", "")
        return Response(
            {
                "cache_backend": cache_backend,
                "redis_configured": "django_redis" in str(cache_backend),
                "lock_backend": settings.LOCK_BACKEND,
                "lock_default_ttl_ms": settings.LOCK_DEFAULT_TTL_MS,
                "stock_update_strategy": get_stock_update_strategy().name,
                "database_vendor": connection.vendor,
                "debug": bool(getattr(settings, "DEBUG", False)),
            }
        )
