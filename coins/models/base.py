from django.db import models


class BaseModel(models.Model):
    """
    Abstract base model providing common timestamp fields.

    Mutable models in the coins app inherit from this. Ledger transactions
    do not: they are never updated, so they carry a single timestamp.
    """

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True
        ordering = ["-created_at"]
