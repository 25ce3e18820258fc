"""
Escrow admin configuration.

State fields are read-only everywhere: deals, milestones and payouts only
move through the services so that every change lands in the ledger.
Ledger events cannot be added, edited or deleted from the admin.
"""

from django.contrib import admin

from escrow.models import (
    ConnectedAccount,
    Deal,
    Deliverable,
    Dispute,
    LedgerEvent,
    Milestone,
    Payout,
)

__all__ = [
    "ConnectedAccountAdmin",
    "DealAdmin",
    "DisputeAdmin",
    "LedgerEventAdmin",
    "MilestoneAdmin",
    "PayoutAdmin",
]


class MilestoneInline(admin.TabularInline):
    model = Milestone
    extra = 0
    can_delete = False
    fields = ["position", "title", "amount_cents", "state", "submitted_at", "approved_at"]
    readonly_fields = fields
    show_change_link = True


class PayoutInline(admin.TabularInline):
    model = Payout
    fk_name = "deal"
    extra = 0
    can_delete = False
    fields = ["milestone", "status", "amount_cents", "fee_cents", "attempt", "provider_reference"]
    readonly_fields = fields
    show_change_link = True


@admin.register(Deal)
class DealAdmin(admin.ModelAdmin):
    """
    Admin configuration for Deal.

    Provides visibility into escrow state and provider references.
    """

    list_display = [
        "id",
        "payer",
        "receiver",
        "amount_display",
        "state",
        "funded_at",
        "created_at",
    ]
    list_filter = ["state", "currency", "provider"]
    search_fields = [
        "id",
        "funding_reference",
        "escrow_reference",
        "payer__username",
        "receiver__username",
    ]
    readonly_fields = [
        "id",
        "state",
        "amount_cents",
        "funding_reference",
        "escrow_reference",
        "refund_amount_cents",
        "refund_reference",
        "auto_approval_enabled",
        "auto_approval_grace_hours",
        "accepted_at",
        "funded_at",
        "disputed_at",
        "released_at",
        "refunded_at",
        "created_at",
        "updated_at",
        "version",
    ]
    ordering = ["-created_at"]
    inlines = [MilestoneInline, PayoutInline]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "payer", "receiver", "title", "state"),
            },
        ),
        (
            "Amount",
            {
                "fields": ("amount_cents", "currency", "refund_amount_cents"),
            },
        ),
        (
            "Auto-approval",
            {
                "fields": ("auto_approval_enabled", "auto_approval_grace_hours"),
            },
        ),
        (
            "Provider",
            {
                "fields": ("provider", "funding_reference", "escrow_reference", "refund_reference"),
            },
        ),
        (
            "Timestamps",
            {
                "fields": (
                    "accepted_at",
                    "funded_at",
                    "disputed_at",
                    "released_at",
                    "refunded_at",
                    "created_at",
                    "updated_at",
                ),
                "classes": ("collapse",),
            },
        ),
        (
            "Metadata",
            {
                "fields": ("metadata", "version"),
                "classes": ("collapse",),
            },
        ),
    )

    @admin.display(description="Amount")
    def amount_display(self, obj: Deal) -> str:
        return f"{obj.amount_cents / 100:.2f} {obj.currency.upper()}"


@admin.register(Milestone)
class MilestoneAdmin(admin.ModelAdmin):
    list_display = ["id", "deal", "position", "title", "amount_cents", "state", "auto_approved"]
    list_filter = ["state", "auto_approved"]
    search_fields = ["id", "deal__id", "title"]
    readonly_fields = [
        "id",
        "deal",
        "state",
        "amount_cents",
        "submitted_at",
        "approved_at",
        "released_at",
        "disputed_at",
        "auto_approved",
        "revision_count",
        "created_at",
        "updated_at",
        "version",
    ]


@admin.register(Deliverable)
class DeliverableAdmin(admin.ModelAdmin):
    list_display = ["id", "milestone", "submitted_by", "url", "file_reference", "created_at"]
    search_fields = ["id", "milestone__id"]
    readonly_fields = ["id", "created_at", "updated_at"]


@admin.register(Dispute)
class DisputeAdmin(admin.ModelAdmin):
    """Disputes are resolved through the API so the deal moves with them."""

    list_display = [
        "id",
        "deal",
        "raised_by",
        "category",
        "status",
        "priority",
        "resolution",
        "created_at",
    ]
    list_filter = ["status", "priority", "category", "resolution"]
    search_fields = ["id", "deal__id"]
    readonly_fields = [
        "id",
        "deal",
        "raised_by",
        "status",
        "requested_amount_cents",
        "escalated_by",
        "escalated_at",
        "resolution",
        "resolved_by",
        "resolved_at",
        "created_at",
        "updated_at",
    ]


@admin.register(Payout)
class PayoutAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "deal",
        "milestone",
        "amount_display",
        "status",
        "attempt",
        "provider_reference",
        "created_at",
    ]
    list_filter = ["status", "provider"]
    search_fields = ["id", "provider_reference", "destination", "deal__id"]
    readonly_fields = [
        "id",
        "deal",
        "milestone",
        "status",
        "provider_reference",
        "destination",
        "amount_cents",
        "fee_cents",
        "attempt",
        "requested_at",
        "processed_at",
        "completed_at",
        "failed_at",
        "canceled_at",
        "failure_reason",
        "created_at",
        "updated_at",
        "version",
    ]
    ordering = ["-created_at"]

    @admin.display(description="Amount")
    def amount_display(self, obj: Payout) -> str:
        return f"{obj.amount_cents / 100:.2f} {obj.currency.upper()}"


@admin.register(ConnectedAccount)
class ConnectedAccountAdmin(admin.ModelAdmin):
    """
    Admin configuration for ConnectedAccount.

    Capability flags are synced from the provider's account webhook.
    """

    list_display = [
        "id",
        "user",
        "provider_account_id",
        "onboarding_status",
        "payouts_enabled",
        "charges_enabled",
        "created_at",
    ]
    list_filter = ["onboarding_status", "payouts_enabled", "charges_enabled"]
    search_fields = ["id", "provider_account_id", "user__username", "user__email"]
    readonly_fields = [
        "id",
        "onboarding_status",
        "charges_enabled",
        "payouts_enabled",
        "details_submitted",
        "requirements_due",
        "created_at",
        "updated_at",
    ]


@admin.register(LedgerEvent)
class LedgerEventAdmin(admin.ModelAdmin):
    """
    Read-only view of the ledger.

    Key features:
    - No add/change/delete permissions
    - Filter by event type, search by deal and provider event id
    """

    list_display = ["occurred_at", "event_type", "deal", "subject_type", "subject_id", "actor"]
    list_filter = ["event_type", "subject_type"]
    search_fields = ["deal__id", "subject_id", "provider_event_id"]
    readonly_fields = [
        "id",
        "event_type",
        "actor",
        "deal",
        "subject_type",
        "subject_id",
        "payload",
        "provider_event_id",
        "occurred_at",
    ]
    ordering = ["-occurred_at"]

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False
