from django.db import models


class LockLease(models.Model):
    """A tokenized lease over a named resource, used by the database backend."""

    key = models.CharField(max_length=255, unique=True)
    token = models.CharField(max_length=64)
    expires_at = models.DateTimeField(db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["key", "token"], name="locks_lease_key_token_idx"),
        ]

    def __str__(self):
        return f"{self.key} until {self.expires_at:%H:%M:%S}"
