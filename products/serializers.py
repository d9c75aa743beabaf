from rest_framework import serializers

from .models import Product


class ProductSerializer(serializers.ModelSerializer):
    message = serializers.SerializerMethodField()

    class Meta:
        model = Product
        fields = [
            "id",
            "name",
            "description",
            "price",
            "stock",
            "is_available",
            "message",
            "created_at",
        ]

    def get_message(self, obj):
        if not obj.is_available:
            return "Currently out of stock."
        return None


class ProductListQuerySerializer(serializers.Serializer):
    page = serializers.IntegerField(min_value=1, default=1)
    limit = serializers.IntegerField(min_value=1, max_value=100, default=10)
    sort_by = serializers.ChoiceField(
        choices=["created_at", "name", "price", "stock"],
        default="created_at",
    )
    order = serializers.ChoiceField(choices=["asc", "desc"], default="desc")
