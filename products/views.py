from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import CartServiceError

from .serializers import ProductListQuerySerializer
from .services import ProductService


class ProductListAPIView(APIView):
    permission_classes = [AllowAny]

    def get(self, request):
        query = ProductListQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        return Response(ProductService.list_products(**query.validated_data))


class ProductDetailAPIView(APIView):
    permission_classes = [AllowAny]

    def get(self, request, product_id):
        try:
            return Response(ProductService.get_product(product_id))
        except CartServiceError as exc:
            return Response(exc.as_payload(), status=exc.status_code)
