from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from .cache_utils import invalidate_product_cache
from .models import Product


@receiver(post_save, sender=Product)
@receiver(post_delete, sender=Product)
def invalidate_product_on_model_changes(sender, instance, **kwargs):
    # Covers admin edits and creation; the stock ledger writes through
    # queryset updates and invalidates on its own.
    invalidate_product_cache(instance.pk)
