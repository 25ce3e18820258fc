"""
DRF views for the escrow API.

Each view validates the request, calls one service method and maps the
ServiceResult to a response: the new entity state on success, or
``{error, error_code}`` with a status derived from the error code.

Endpoints:
    POST /api/v1/escrow/deals/                           - Create deal (payer)
    GET  /api/v1/escrow/deals/{id}/                      - Deal detail (parties, staff)
    POST /api/v1/escrow/deals/{id}/accept/               - Accept terms (receiver)
    POST /api/v1/escrow/deals/{id}/fund/                 - Start funding (payer)
    POST /api/v1/escrow/deals/{id}/auto-approval/        - Auto-approval settings (payer)
    POST /api/v1/escrow/deals/{id}/dispute/              - Raise dispute (either party)
    POST /api/v1/escrow/deals/{id}/escalate/             - Escalate dispute (staff)
    POST /api/v1/escrow/deals/{id}/resolve/              - Resolve dispute (staff)
    POST /api/v1/escrow/milestones/{id}/submit/          - Submit deliverable (receiver)
    POST /api/v1/escrow/milestones/{id}/approve/         - Approve (payer)
    POST /api/v1/escrow/milestones/{id}/request-revision/ - Request revision (payer)
    POST /api/v1/escrow/payouts/{id}/retry/              - Retry failed payout (staff)

Security:
    - All endpoints require authentication
    - escalate, resolve and retry require IsAdminUser
    - Party checks are enforced by the services
"""

from __future__ import annotations

import logging

from django.db.models import Q
from drf_spectacular.utils import extend_schema
from rest_framework import status
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.services import ServiceResult

from escrow.models import Deal
from escrow.serializers import (
    ApprovalSerializer,
    AutoApprovalSettingsSerializer,
    DealCreateSerializer,
    DealSerializer,
    DisputeCreateSerializer,
    DisputeEscalateSerializer,
    DisputeResolveSerializer,
    DisputeSerializer,
    FundingSerializer,
    MilestoneSerializer,
    MilestoneSubmitSerializer,
    ResolutionSerializer,
    RevisionRequestSerializer,
    TransferOutcomeSerializer,
)
from escrow.services import EscrowService, PayoutOrchestrator, TransferRequestStatus

logger = logging.getLogger(__name__)


# Error code -> HTTP status for failed ServiceResults
ERROR_STATUS = {
    "INVALID_STATE": status.HTTP_409_CONFLICT,
    "LOCK_ACQUISITION_FAILED": status.HTTP_409_CONFLICT,
    "PERMISSION_DENIED": status.HTTP_403_FORBIDDEN,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "AMOUNT_MISMATCH": status.HTTP_400_BAD_REQUEST,
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "INVALID_CURRENCY": status.HTTP_400_BAD_REQUEST,
    "PROVIDER_REQUEST_REJECTED": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "PROVIDER_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "PROVIDER_CONFIGURATION_ERROR": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "LEDGER_WRITE_FAILED": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_response(result: ServiceResult) -> Response:
    body = result.to_response()
    body.pop("success", None)
    return Response(
        body,
        status=ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST),
    )


def validation_error_response(errors) -> Response:
    return Response(
        {
            "error": "Invalid request",
            "error_code": "VALIDATION_ERROR",
            "errors": errors,
        },
        status=status.HTTP_400_BAD_REQUEST,
    )


class EscrowActionView(APIView):
    """
    Base for action endpoints.

    Subclasses set ``request_serializer_class`` (optional) and implement
    ``perform(request, pk, data)`` returning a ServiceResult, plus
    ``serialize(data)`` for the success body.
    """

    permission_classes = [IsAuthenticated]
    request_serializer_class = None
    success_status = status.HTTP_200_OK

    def get_service(self) -> EscrowService:
        return EscrowService()

    def post(self, request, pk):
        data = {}
        if self.request_serializer_class is not None:
            serializer = self.request_serializer_class(data=request.data)
            if not serializer.is_valid():
                return validation_error_response(serializer.errors)
            data = serializer.validated_data

        result = self.perform(request, pk, data)
        if not result.success:
            return error_response(result)
        return Response(self.serialize(result.data), status=self.get_success_status(result.data))

    def perform(self, request, pk, data) -> ServiceResult:
        raise NotImplementedError

    def serialize(self, data):
        raise NotImplementedError

    def get_success_status(self, data) -> int:
        return self.success_status


# =============================================================================
# Deals
# =============================================================================


class DealCreateView(APIView):
    """
    Create a DRAFT deal with the current user as payer.

    POST /api/v1/escrow/deals/

    Request body:
        receiver_id: Receiver user id
        title: Deal title (optional)
        currency: ISO code (default "usd")
        milestones: [{title, amount_cents, description?, due_at?}, ...]
        auto_approval_enabled: Per-deal switch (optional)
        auto_approval_grace_hours: Per-deal grace period (optional)
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="create_deal",
        summary="Create deal",
        tags=["Escrow - Deals"],
        request=DealCreateSerializer,
        responses={201: DealSerializer},
    )
    def post(self, request):
        serializer = DealCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return validation_error_response(serializer.errors)
        data = serializer.validated_data

        result = EscrowService().create_deal(
            payer=request.user,
            receiver=data["receiver"],
            milestones=[dict(m) for m in data["milestones"]],
            currency=data["currency"],
            title=data["title"],
            auto_approval_enabled=data["auto_approval_enabled"],
            auto_approval_grace_hours=data["auto_approval_grace_hours"],
        )
        if not result.success:
            return error_response(result)
        return Response(DealSerializer(result.data).data, status=status.HTTP_201_CREATED)


class DealDetailView(APIView):
    """
    GET /api/v1/escrow/deals/{id}/

    Visible to the deal's parties and staff; 404 for everyone else.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_deal",
        summary="Get deal",
        tags=["Escrow - Deals"],
        responses={200: DealSerializer},
    )
    def get(self, request, pk):
        deals = Deal.objects.all()
        if not request.user.is_staff:
            deals = deals.filter(Q(payer=request.user) | Q(receiver=request.user))
        deal = deals.filter(pk=pk).first()
        if deal is None:
            return Response(
                {"error": "Deal not found", "error_code": "NOT_FOUND"},
                status=status.HTTP_404_NOT_FOUND,
            )
        return Response(DealSerializer(deal).data)


class DealAcceptView(EscrowActionView):
    """POST /api/v1/escrow/deals/{id}/accept/"""

    @extend_schema(
        operation_id="accept_deal",
        summary="Accept deal",
        tags=["Escrow - Deals"],
        request=None,
        responses={200: DealSerializer},
    )
    def post(self, request, pk):
        return super().post(request, pk)

    def perform(self, request, pk, data):
        return self.get_service().accept_deal(pk, request.user)

    def serialize(self, data):
        return DealSerializer(data).data


class DealFundView(EscrowActionView):
    """
    Start funding; the deal stays DRAFT until the provider confirms.

    POST /api/v1/escrow/deals/{id}/fund/

    Returns the payment reference and client secret for the payer's client.
    """

    @extend_schema(
        operation_id="fund_deal",
        summary="Fund deal",
        tags=["Escrow - Deals"],
        request=None,
        responses={200: FundingSerializer},
    )
    def post(self, request, pk):
        return super().post(request, pk)

    def perform(self, request, pk, data):
        return self.get_service().fund_deal(pk, request.user)

    def serialize(self, data):
        return FundingSerializer(data).data


class DealAutoApprovalView(EscrowActionView):
    """
    POST /api/v1/escrow/deals/{id}/auto-approval/

    Payer sets the deal's auto-approval switch and grace period before the
    receiver accepts.
    """

    request_serializer_class = AutoApprovalSettingsSerializer

    @extend_schema(
        operation_id="update_deal_auto_approval",
        summary="Update auto-approval settings",
        tags=["Escrow - Deals"],
        request=AutoApprovalSettingsSerializer,
        responses={200: DealSerializer},
    )
    def post(self, request, pk):
        return super().post(request, pk)

    def perform(self, request, pk, data):
        return self.get_service().update_auto_approval(
            pk, request.user, enabled=data["enabled"], grace_hours=data["grace_hours"]
        )

    def serialize(self, data):
        return DealSerializer(data).data


class DealDisputeView(EscrowActionView):
    """POST /api/v1/escrow/deals/{id}/dispute/"""

    request_serializer_class = DisputeCreateSerializer
    success_status = status.HTTP_201_CREATED

    @extend_schema(
        operation_id="raise_dispute",
        summary="Raise dispute",
        tags=["Escrow - Disputes"],
        request=DisputeCreateSerializer,
        responses={201: DisputeSerializer},
    )
    def post(self, request, pk):
        return super().post(request, pk)

    def perform(self, request, pk, data):
        return self.get_service().raise_dispute(
            pk,
            request.user,
            reason=data["reason"],
            category=data["category"],
            requested_amount_cents=data["requested_amount_cents"],
        )

    def serialize(self, data):
        return DisputeSerializer(data).data


class DealEscalateView(EscrowActionView):
    """POST /api/v1/escrow/deals/{id}/escalate/"""

    permission_classes = [IsAuthenticated, IsAdminUser]
    request_serializer_class = DisputeEscalateSerializer

    @extend_schema(
        operation_id="escalate_dispute",
        summary="Escalate dispute",
        tags=["Escrow - Disputes"],
        request=DisputeEscalateSerializer,
        responses={200: DisputeSerializer},
    )
    def post(self, request, pk):
        return super().post(request, pk)

    def perform(self, request, pk, data):
        return self.get_service().escalate_dispute(
            pk, request.user, priority=data["priority"], note=data["note"]
        )

    def serialize(self, data):
        return DisputeSerializer(data).data


class DealResolveView(EscrowActionView):
    """
    POST /api/v1/escrow/deals/{id}/resolve/

    202 when the follow-up transfer or refund was deferred.
    """

    permission_classes = [IsAuthenticated, IsAdminUser]
    request_serializer_class = DisputeResolveSerializer

    @extend_schema(
        operation_id="resolve_dispute",
        summary="Resolve dispute",
        tags=["Escrow - Disputes"],
        request=DisputeResolveSerializer,
        responses={200: ResolutionSerializer, 202: ResolutionSerializer},
    )
    def post(self, request, pk):
        return super().post(request, pk)

    def perform(self, request, pk, data):
        return self.get_service().resolve_dispute(
            pk,
            request.user,
            resolution=data["resolution"],
            note=data["note"],
            refund_amount_cents=data["refund_amount_cents"],
        )

    def serialize(self, data):
        return ResolutionSerializer(data).data

    def get_success_status(self, data) -> int:
        return status.HTTP_202_ACCEPTED if data.deferred else status.HTTP_200_OK


# =============================================================================
# Milestones
# =============================================================================


class MilestoneSubmitView(EscrowActionView):
    """POST /api/v1/escrow/milestones/{id}/submit/"""

    request_serializer_class = MilestoneSubmitSerializer

    @extend_schema(
        operation_id="submit_milestone",
        summary="Submit milestone",
        tags=["Escrow - Milestones"],
        request=MilestoneSubmitSerializer,
        responses={200: MilestoneSerializer},
    )
    def post(self, request, pk):
        return super().post(request, pk)

    def perform(self, request, pk, data):
        return self.get_service().submit_milestone(
            pk,
            request.user,
            url=data["url"],
            file_reference=data["file_reference"],
            note=data["note"],
        )

    def serialize(self, data):
        return MilestoneSerializer(data).data


class MilestoneApproveView(EscrowActionView):
    """
    Approve a submitted milestone and start its payout.

    POST /api/v1/escrow/milestones/{id}/approve/

    200 when the transfer was requested, 202 when it was deferred
    (provider unavailable or receiver account not ready).
    """

    @extend_schema(
        operation_id="approve_milestone",
        summary="Approve milestone",
        tags=["Escrow - Milestones"],
        request=None,
        responses={200: ApprovalSerializer, 202: ApprovalSerializer},
    )
    def post(self, request, pk):
        return super().post(request, pk)

    def perform(self, request, pk, data):
        return self.get_service().approve_milestone(pk, request.user)

    def serialize(self, data):
        return ApprovalSerializer(data).data

    def get_success_status(self, data) -> int:
        return status.HTTP_202_ACCEPTED if data.deferred else status.HTTP_200_OK


class MilestoneRevisionView(EscrowActionView):
    """POST /api/v1/escrow/milestones/{id}/request-revision/"""

    request_serializer_class = RevisionRequestSerializer

    @extend_schema(
        operation_id="request_milestone_revision",
        summary="Request revision",
        tags=["Escrow - Milestones"],
        request=RevisionRequestSerializer,
        responses={200: MilestoneSerializer},
    )
    def post(self, request, pk):
        return super().post(request, pk)

    def perform(self, request, pk, data):
        return self.get_service().request_revision(pk, request.user, feedback=data["feedback"])

    def serialize(self, data):
        return MilestoneSerializer(data).data


# =============================================================================
# Payouts
# =============================================================================


class PayoutRetryView(EscrowActionView):
    """POST /api/v1/escrow/payouts/{id}/retry/"""

    permission_classes = [IsAuthenticated, IsAdminUser]

    @extend_schema(
        operation_id="retry_payout",
        summary="Retry failed payout",
        tags=["Escrow - Payouts"],
        request=None,
        responses={200: TransferOutcomeSerializer, 202: TransferOutcomeSerializer},
    )
    def post(self, request, pk):
        return super().post(request, pk)

    def perform(self, request, pk, data):
        return PayoutOrchestrator().retry_payout(pk, request.user)

    def serialize(self, data):
        return TransferOutcomeSerializer(data).data

    def get_success_status(self, data) -> int:
        if data.status == TransferRequestStatus.DEFERRED:
            return status.HTTP_202_ACCEPTED
        return status.HTTP_200_OK
