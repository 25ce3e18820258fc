"""
URL configuration for the escrow API.

All routes are prefixed with /api/v1/escrow/ in the main URL configuration.
"""

from django.urls import path

from escrow import views
from escrow.webhooks.views import stripe_webhook

app_name = "escrow"

urlpatterns = [
    # Deals
    path("deals/", views.DealCreateView.as_view(), name="deal-create"),
    path("deals/<uuid:pk>/", views.DealDetailView.as_view(), name="deal-detail"),
    path("deals/<uuid:pk>/accept/", views.DealAcceptView.as_view(), name="deal-accept"),
    path("deals/<uuid:pk>/fund/", views.DealFundView.as_view(), name="deal-fund"),
    path(
        "deals/<uuid:pk>/auto-approval/",
        views.DealAutoApprovalView.as_view(),
        name="deal-auto-approval",
    ),
    path("deals/<uuid:pk>/dispute/", views.DealDisputeView.as_view(), name="deal-dispute"),
    path("deals/<uuid:pk>/escalate/", views.DealEscalateView.as_view(), name="deal-escalate"),
    path("deals/<uuid:pk>/resolve/", views.DealResolveView.as_view(), name="deal-resolve"),
    # Milestones
    path(
        "milestones/<uuid:pk>/submit/",
        views.MilestoneSubmitView.as_view(),
        name="milestone-submit",
    ),
    path(
        "milestones/<uuid:pk>/approve/",
        views.MilestoneApproveView.as_view(),
        name="milestone-approve",
    ),
    path(
        "milestones/<uuid:pk>/request-revision/",
        views.MilestoneRevisionView.as_view(),
        name="milestone-request-revision",
    ),
    # Payouts
    path("payouts/<uuid:pk>/retry/", views.PayoutRetryView.as_view(), name="payout-retry"),
    # Webhook endpoints
    path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
]
