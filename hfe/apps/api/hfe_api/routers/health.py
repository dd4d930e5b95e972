"""Health check endpoints."""

import logging

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from redis import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from hfe_api.db.redis_client import RedisClient
from hfe_api.db.session import get_session_factory
from hfe_api.errors import ConfigurationError

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database() -> str:
    """Check database connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        with get_session_factory()() as db:
            db.execute(text("SELECT 1"))
        return "up"
    except (SQLAlchemyError, ConfigurationError) as e:
        logger.error(f"Database health check failed: {e}")
        return f"down: {str(e)[:50]}"


def check_redis() -> str:
    """Check Redis connectivity ("disabled" when rate limiting runs without Redis)."""
    if not RedisClient.is_configured():
        return "disabled"
    try:
        RedisClient.get_client().ping()
        return "up"
    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return f"down: {str(e)[:50]}"


def check_sqs() -> str:
    """Check the webhook queue with GetQueueAttributes on the configured URL."""
    try:
        from hfe_api.queue.sqs_client import get_sqs_client

        sqs_client = get_sqs_client()
        sqs_client.client.get_queue_attributes(
            QueueUrl=sqs_client.queue_url,
            AttributeNames=["ApproximateNumberOfMessages"],
        )
        return "up"
    except ConfigurationError as e:
        logger.error(f"SQS config error: {e}")
        return f"down: config error - {str(e)[:40]}"
    except (BotoCoreError, ClientError) as e:
        logger.error(f"SQS health check failed: {e}")
        return f"down: {str(e)[:50]}"


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness: always 200 (use /readyz for dependency checks)."""
    return HealthResponse(status="healthy", version=SERVICE_VERSION, services={"api": "up"})


@router.get("/readyz", response_model=HealthResponse)
async def readiness_check(response: Response) -> HealthResponse:
    """
    Readiness check endpoint.

    Returns 503 if any dependency is down.
    """
    services = {
        "api": "up",
        "database": check_database(),
        "redis": check_redis(),
        "sqs": check_sqs(),
    }

    if any(svc_status.startswith("down") for svc_status in services.values()):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", version=SERVICE_VERSION, services=services)

    return HealthResponse(status="ready", version=SERVICE_VERSION, services=services)
