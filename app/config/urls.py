"""
URL configuration for the Django application.

URL Structure:
    /                              - ReDoc API documentation
    /admin/                        - Django admin interface
    /health/                       - Health check endpoint (for load balancers, Docker)
    /schema/                       - OpenAPI schema (YAML)
    /api/v1/escrow/                - Escrow endpoints
        deals/                     - Create deal (POST)
        deals/{id}/                - Deal detail with milestones and payouts
        deals/{id}/accept/         - Receiver accepts the terms
        deals/{id}/fund/           - Payer starts funding
        deals/{id}/dispute/        - Either party raises a dispute
        deals/{id}/resolve/        - Administrator resolves a dispute
        milestones/{id}/submit/    - Receiver submits a deliverable
        milestones/{id}/approve/   - Payer approves (starts the payout)
        milestones/{id}/request-revision/ - Payer sends the milestone back
        payouts/{id}/retry/        - Administrator retries a failed payout
        webhooks/stripe/           - Stripe webhook endpoint (POST)

For more information, see:
https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
# All routes here are prefixed with /api/v1/ automatically
api_v1_patterns = [
    # Escrow
    path("escrow/", include("escrow.urls")),
]

urlpatterns = [
    # Documentation
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    # Admin
    path("admin/", admin.site.urls),
    # Health check (Docker, Kubernetes, load balancers)
    path("health/", health_check, name="health_check"),
    # API v1
    path("api/v1/", include(api_v1_patterns)),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Escrow Admin"
admin.site.site_title = "Escrow Admin Portal"
admin.site.index_title = "Deals, payouts and ledger"
