"""
DRF serializers for the escrow API.

Serializer Hierarchy:
    Read:
        DealSerializer: Deal with milestones, payouts and open dispute
        MilestoneSerializer: Milestone with its latest deliverable
        PayoutSerializer, DisputeSerializer, DeliverableSerializer
        ApprovalSerializer, FundingSerializer, ResolutionSerializer:
            service results

    Write (request validation only; business rules live in the services):
        DealCreateSerializer
        MilestoneSubmitSerializer
        RevisionRequestSerializer
        AutoApprovalSettingsSerializer
        DisputeCreateSerializer
        DisputeEscalateSerializer
        DisputeResolveSerializer

Design Decisions:
    - Read and write serializers are separate
    - Write serializers never save; views pass validated_data to services
"""

from __future__ import annotations

from django.contrib.auth import get_user_model
from rest_framework import serializers

from escrow.models import Deal, Deliverable, Dispute, Milestone, Payout
from escrow.state_machines import DisputeCategory, DisputePriority, DisputeResolution

User = get_user_model()


# =============================================================================
# Read Serializers
# =============================================================================


class DeliverableSerializer(serializers.ModelSerializer):
    class Meta:
        model = Deliverable
        fields = [
            "id",
            "url",
            "file_reference",
            "note",
            "revision_feedback",
            "revision_requested_at",
            "created_at",
        ]
        read_only_fields = fields


class PayoutSerializer(serializers.ModelSerializer):
    """
    Payout for API responses.

    ``amount_cents`` is what the receiver gets; ``gross_amount_cents``
    includes the withheld fee.
    """

    gross_amount_cents = serializers.IntegerField(read_only=True)

    class Meta:
        model = Payout
        fields = [
            "id",
            "milestone",
            "status",
            "amount_cents",
            "fee_cents",
            "gross_amount_cents",
            "currency",
            "attempt",
            "provider_reference",
            "failure_reason",
            "requested_at",
            "completed_at",
            "failed_at",
            "created_at",
        ]
        read_only_fields = fields


class MilestoneSerializer(serializers.ModelSerializer):
    latest_deliverable = serializers.SerializerMethodField()

    class Meta:
        model = Milestone
        fields = [
            "id",
            "position",
            "title",
            "description",
            "amount_cents",
            "currency",
            "state",
            "due_at",
            "submitted_at",
            "approved_at",
            "released_at",
            "auto_approved",
            "revision_count",
            "latest_deliverable",
        ]
        read_only_fields = fields

    def get_latest_deliverable(self, obj: Milestone) -> dict | None:
        deliverable = obj.deliverables.order_by("-created_at").first()
        if deliverable is None:
            return None
        return DeliverableSerializer(deliverable).data


class DisputeSerializer(serializers.ModelSerializer):
    class Meta:
        model = Dispute
        fields = [
            "id",
            "raised_by",
            "category",
            "reason",
            "requested_amount_cents",
            "status",
            "priority",
            "admin_notes",
            "escalated_by",
            "escalated_at",
            "resolution",
            "resolution_note",
            "resolved_by",
            "resolved_at",
            "created_at",
        ]
        read_only_fields = fields


class DealSerializer(serializers.ModelSerializer):
    """
    Deal detail.

    Fields:
        state: draft, funded, released, disputed or refunded
        released_amount_cents: Sum of RELEASED milestone amounts
        milestones: Ordered by position
        payouts: Every payout attempt, newest first
        disputes: Every dispute, newest first
    """

    released_amount_cents = serializers.IntegerField(read_only=True)
    milestones = MilestoneSerializer(many=True, read_only=True)
    payouts = serializers.SerializerMethodField()
    disputes = serializers.SerializerMethodField()

    class Meta:
        model = Deal
        fields = [
            "id",
            "payer",
            "receiver",
            "title",
            "amount_cents",
            "currency",
            "state",
            "provider",
            "funding_reference",
            "escrow_reference",
            "refund_amount_cents",
            "refund_reference",
            "auto_approval_enabled",
            "auto_approval_grace_hours",
            "released_amount_cents",
            "accepted_at",
            "funded_at",
            "disputed_at",
            "released_at",
            "refunded_at",
            "created_at",
            "version",
            "milestones",
            "payouts",
            "disputes",
        ]
        read_only_fields = fields

    def get_payouts(self, obj: Deal) -> list[dict]:
        return PayoutSerializer(obj.payouts.order_by("-created_at"), many=True).data

    def get_disputes(self, obj: Deal) -> list[dict]:
        return DisputeSerializer(obj.disputes.order_by("-created_at"), many=True).data


class FundingSerializer(serializers.Serializer):
    deal = DealSerializer(read_only=True)
    payment_reference = serializers.CharField(read_only=True)
    client_secret = serializers.CharField(read_only=True, allow_null=True)


class ApprovalSerializer(serializers.Serializer):
    milestone = MilestoneSerializer(read_only=True)
    payout = PayoutSerializer(read_only=True)
    transfer_status = serializers.CharField(read_only=True)
    message = serializers.CharField(read_only=True)


class ResolutionSerializer(serializers.Serializer):
    deal = DealSerializer(read_only=True)
    dispute = DisputeSerializer(read_only=True)
    follow_up_status = serializers.CharField(read_only=True)


class TransferOutcomeSerializer(serializers.Serializer):
    payout = PayoutSerializer(read_only=True)
    status = serializers.CharField(read_only=True)
    reason = serializers.CharField(read_only=True)
    message = serializers.CharField(read_only=True)


# =============================================================================
# Write Serializers
# =============================================================================


class MilestoneInputSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=200)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    amount_cents = serializers.IntegerField(min_value=1)
    due_at = serializers.DateTimeField(required=False, allow_null=True, default=None)


class DealCreateSerializer(serializers.Serializer):
    """
    Create a deal as the payer.

    The deal amount is the sum of the milestone amounts.
    """

    receiver_id = serializers.PrimaryKeyRelatedField(
        queryset=User.objects.filter(is_active=True),
        source="receiver",
    )
    title = serializers.CharField(max_length=200, required=False, allow_blank=True, default="")
    currency = serializers.RegexField(r"^[A-Za-z]{3}$", required=False, default="usd")
    milestones = MilestoneInputSerializer(many=True, allow_empty=False)
    auto_approval_enabled = serializers.BooleanField(required=False, allow_null=True, default=None)
    auto_approval_grace_hours = serializers.IntegerField(
        required=False, allow_null=True, default=None, min_value=1
    )


class AutoApprovalSettingsSerializer(serializers.Serializer):
    """
    Per-deal auto-approval settings.

    null for either field falls back to ESCROW_AUTO_APPROVAL_GRACE_HOURS.
    """

    enabled = serializers.BooleanField(allow_null=True)
    grace_hours = serializers.IntegerField(
        required=False, allow_null=True, default=None, min_value=1
    )


class MilestoneSubmitSerializer(serializers.Serializer):
    url = serializers.URLField(required=False, allow_blank=True, default="")
    file_reference = serializers.CharField(
        max_length=255, required=False, allow_blank=True, default=""
    )
    note = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if not attrs.get("url") and not attrs.get("file_reference"):
            raise serializers.ValidationError("Provide a url or a file_reference.")
        return attrs


class RevisionRequestSerializer(serializers.Serializer):
    feedback = serializers.CharField()


class DisputeCreateSerializer(serializers.Serializer):
    reason = serializers.CharField()
    category = serializers.ChoiceField(
        choices=DisputeCategory.choices,
        required=False,
        default=DisputeCategory.OTHER,
    )
    requested_amount_cents = serializers.IntegerField(
        required=False, allow_null=True, default=None, min_value=1
    )


class DisputeEscalateSerializer(serializers.Serializer):
    priority = serializers.ChoiceField(
        choices=DisputePriority.choices,
        required=False,
        default=DisputePriority.MEDIUM,
    )
    note = serializers.CharField(required=False, allow_blank=True, default="", max_length=500)


class DisputeResolveSerializer(serializers.Serializer):
    resolution = serializers.ChoiceField(choices=DisputeResolution.choices)
    note = serializers.CharField(required=False, allow_blank=True, default="")
    refund_amount_cents = serializers.IntegerField(
        required=False, allow_null=True, default=None, min_value=1
    )
