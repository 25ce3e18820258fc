"""
Optimistic version counter shared by the escrow state models.
"""

from __future__ import annotations

from django.db import models
from django.db.models import F


class VersionedModel(models.Model):
    """
    Adds a ``version`` column incremented in the database on every update.

    Combined with ``select_for_update()`` this gives each Deal, Milestone and
    Payout a linear history: readers can compare versions, and two writers
    can never both apply a transition from the same observed state.
    """

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        is_update = not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])
