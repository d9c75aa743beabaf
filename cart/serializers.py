from rest_framework import serializers

from .models import Cart, CartItem


class CartItemSerializer(serializers.ModelSerializer):
    product_id = serializers.IntegerField(read_only=True)
    line_total = serializers.SerializerMethodField()

    class Meta:
        model = CartItem
        fields = ["product_id", "name", "price", "quantity", "line_total"]

    def get_line_total(self, obj):
        return str(obj.line_total)


class CartSerializer(serializers.ModelSerializer):
    user_id = serializers.IntegerField(source="customer_id", read_only=True)
    status = serializers.CharField(read_only=True)
    items = CartItemSerializer(many=True, read_only=True)
    total_items = serializers.SerializerMethodField()

    class Meta:
        model = Cart
        fields = [
            "id",
            "user_id",
            "status",
            "settled",
            "settled_at",
            "items",
            "total_items",
            "total_amount",
            "created_at",
            "updated_at",
        ]

    def get_total_items(self, obj):
        return sum(item.quantity for item in obj.items.all())


def serialize_cart(cart):
    payload = dict(CartSerializer(cart).data)
    payload["items"] = [dict(item) for item in payload["items"]]
    return payload


class AddToCartSerializer(serializers.Serializer):
    product_id = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1)


class UpdateCartItemSerializer(serializers.Serializer):
    quantity = serializers.IntegerField(min_value=1)
