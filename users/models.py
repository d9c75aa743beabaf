from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from django.db import models


class Customer(models.Model):
    name = models.CharField(max_length=200)
    email = models.EmailField(unique=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def clean(self):
        normalized = (self.email or "").strip().lower()
        try:
            validate_email(normalized)
        except ValidationError as exc:
            raise ValidationError({"email": exc.messages}) from exc
        self.email = normalized
        self.name = (self.name or "").strip()

    def save(self, *args, **kwargs):
        self.clean()
        super().save(*args, **kwargs)

    def __str__(self):
        return self.name
