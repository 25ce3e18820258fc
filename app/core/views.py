"""
Infrastructure endpoints that sit outside the escrow domain.
"""

import logging

from django.db import DatabaseError, connection
from django.http import JsonResponse
from django_redis import get_redis_connection
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def health_check(request):
    """
    Health check endpoint for load balancers and orchestration.

    The database is required. Redis backs the payout locks, so an
    unreachable Redis reports "degraded" but still answers 200: approvals
    keep working and transfer requests are deferred to the retry task.

    HTTP Status Codes:
        200: Database reachable
        503: Database unreachable
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "redis": "unknown",
    }
    is_healthy = True

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        health_status["database"] = "connected"
    except DatabaseError:
        logger.error("Health check: database unreachable", exc_info=True)
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"
        is_healthy = False

    try:
        get_redis_connection("default").ping()
        health_status["redis"] = "connected"
    except RedisError:
        logger.warning("Health check: redis unreachable", exc_info=True)
        health_status["redis"] = "disconnected"
        if is_healthy:
            health_status["status"] = "degraded"

    return JsonResponse(health_status, status=200 if is_healthy else 503)
