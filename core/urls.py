"""
URL configuration for the stockcart project.
"""
from django.contrib import admin
from django.urls import include, path

from core.system_views import CoordinationStatusAPIView

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/carts/", include("cart.urls")),
    path("api/products/", include("products.urls")),
    path("api/system/coordination/", CoordinationStatusAPIView.as_view(), name="system-coordination"),
]
