"""Dependencies shared by every router.

Routers build their services per request from these pieces: the activity
trail service (separate DB session), the process-wide event publisher and
the request correlation ID. Adapters created in the lifespan (AI client, key
provider) are read from app.state.
"""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from complianceos.adapters.audit_wall import ActivityTrailRepository, get_activity_db_session
from complianceos.adapters.kafka import ComplianceEventPublisher
from complianceos.common.errors import ExternalServiceError, ValidationError
from complianceos.core.interfaces import IAIClient, IEventPublisher, IKeyProvider
from complianceos.core.services import ActivityService
from complianceos.settings import Settings

# Used when the app was built without the lifespan (tests, scripts): publishing is skipped.
_IDLE_PUBLISHER = ComplianceEventPublisher(enabled=False)


def get_event_publisher(request: Request) -> IEventPublisher:
    return getattr(request.app.state, "event_publisher", None) or _IDLE_PUBLISHER


def get_correlation_id(request: Request) -> str | None:
    return getattr(request.state, "correlation_id", None)


def get_activity_service(
    activity_session: Annotated[AsyncSession, Depends(get_activity_db_session)],
) -> ActivityService:
    return ActivityService(ActivityTrailRepository(activity_session))


def get_ai_client(request: Request) -> IAIClient:
    """The AI client configured at startup.

    Raises:
        ExternalServiceError: If no AI provider is configured.
    """
    client = getattr(request.app.state, "ai_client", None)
    if client is None:
        raise ExternalServiceError(service="ai-provider", message="AI provider is not configured")
    return client


def get_key_provider(request: Request) -> IKeyProvider:
    """The key provider configured at startup.

    Raises:
        ValidationError: If no encryption master key is configured.
    """
    provider = getattr(request.app.state, "key_provider", None)
    if provider is None:
        raise ValidationError(message="Encryption is not configured on this deployment", field="encryption")
    return provider


def get_settings(request: Request) -> Settings:
    """Settings stored on app.state by the lifespan, else read from the environment."""
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else Settings()
