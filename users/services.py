from django.conf import settings

from core.cache import cache_layer
from core.exceptions import NotFound

from .models import Customer


def customer_cache_key(customer_id) -> str:
    return f"users:{customer_id}"


class CustomerService:
    @staticmethod
    def get_customer(customer_id):
        """Existence lookup used before a cart is lazily created."""
        cache_key = customer_cache_key(customer_id)
        cached = cache_layer.get(cache_key)
        if cached is not None:
            return cached

        customer = Customer.objects.filter(pk=customer_id).only("id", "name", "email").first()
        if not customer:
            raise NotFound(f"User with ID {customer_id} not found")

        data = {"id": customer.id, "name": customer.name, "email": customer.email}
        cache_layer.set(cache_key, data, settings.USER_CACHE_TTL)
        return data

    @staticmethod
    def find_by_email(email):
        return Customer.objects.filter(email=(email or "").strip().lower()).first()

    @staticmethod
    def create_customer(name, email):
        customer = Customer.objects.create(name=name, email=email)
        cache_layer.delete(customer_cache_key(customer.pk))
        return customer
