"""
Core views providing infrastructure endpoints.

The recovery engine has no business HTTP surface; this module only exposes
the health check used by container orchestration.
"""

import logging

from django.db import connection
from django.http import JsonResponse
from django_redis import get_redis_connection

logger = logging.getLogger(__name__)


def health_check(request):
    """
    Health check endpoint for monitoring and orchestration.

    Checks the two stores every recovery run depends on: the database
    (obligation state) and Redis (per-obligation leases). Without Redis no
    lease can be acquired, so every trigger would no-op; that is reported
    as unhealthy rather than degraded.

    Returns:
        JsonResponse with status and component health:
        - status: "healthy" or "unhealthy"
        - database: "connected" or "disconnected"
        - lease_store: "connected" or "disconnected"

    HTTP Status Codes:
        200: All systems operational
        503: One or more systems unhealthy
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "lease_store": "unknown",
    }

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        health_status["database"] = "connected"
    except Exception:
        logger.exception("Health check: database unreachable")
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"

    try:
        get_redis_connection("default").ping()
        health_status["lease_store"] = "connected"
    except Exception:
        logger.exception("Health check: lease store unreachable")
        health_status["lease_store"] = "disconnected"
        health_status["status"] = "unhealthy"

    status_code = 200 if health_status["status"] == "healthy" else 503
    return JsonResponse(health_status, status=status_code)
