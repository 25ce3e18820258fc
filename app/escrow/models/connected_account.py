"""
ConnectedAccount model for receivers' provider accounts.

Payouts are sent to ``provider_account_id``. The row is kept in sync by
the account-status-changed webhook; onboarding itself happens in the
provider's hosted flow and is not driven from here.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from escrow.state_machines import OnboardingStatus


class ConnectedAccount(UUIDPrimaryKeyMixin, BaseModel):
    """
    A receiver's account at the payments provider.

    Fields:
        user: Owner of the account (one-to-one)
        provider_account_id: Provider account id (acct_xxx)
        onboarding_status: Derived from the provider's capability flags
        requirements_due: Fields the provider still needs
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="connected_account",
    )

    provider = models.CharField(max_length=32, default="stripe")

    provider_account_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Provider account id (acct_xxx)",
    )

    onboarding_status = models.CharField(
        max_length=20,
        choices=OnboardingStatus.choices,
        default=OnboardingStatus.NOT_STARTED,
        db_index=True,
    )

    charges_enabled = models.BooleanField(default=False)
    payouts_enabled = models.BooleanField(default=False)
    details_submitted = models.BooleanField(default=False)

    requirements_due = models.JSONField(
        default=list,
        blank=True,
        help_text="Requirement keys the provider is waiting for",
    )

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"ConnectedAccount({self.provider_account_id}, {self.onboarding_status})"

    @property
    def is_ready_for_payouts(self) -> bool:
        return self.payouts_enabled and self.details_submitted

    def apply_capabilities(
        self,
        *,
        charges_enabled: bool,
        payouts_enabled: bool,
        details_submitted: bool,
        requirements_due: list[str],
    ) -> None:
        """Copy provider capability flags and derive onboarding_status."""
        self.charges_enabled = charges_enabled
        self.payouts_enabled = payouts_enabled
        self.details_submitted = details_submitted
        self.requirements_due = list(requirements_due)

        if details_submitted and charges_enabled and payouts_enabled:
            self.onboarding_status = OnboardingStatus.APPROVED
        elif details_submitted or requirements_due:
            self.onboarding_status = OnboardingStatus.REQUIRED
        else:
            self.onboarding_status = OnboardingStatus.NOT_STARTED
