"""ComplianceEventPublisher - Kafka domain events for complianceOS.

Every state-changing service operation publishes one event. Event types use
dot notation `compliance.<area>.<action>` and are routed to the topic
`compliance.<area>`:

- compliance.control.* - control created / status changed
- compliance.evidence.* - evidence uploaded / reviewed / versioned
- compliance.policy.* - policy lifecycle and acknowledgments
- compliance.risk.* - risk register changes
- compliance.task.* - task creation and completion
- compliance.audit_run.* - audit run lifecycle, reviews, findings, exports
- compliance.questionnaire.* - questionnaire and answer workflow
- compliance.encryption.* - key initialization and rotation
- compliance.identity.* - SCIM and directory syncs

All events carry tenant_id and correlation_id for distributed tracing.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from complianceos.common.events import EventPublisher
from complianceos.common.observability import get_logger

logger = get_logger(__name__)

SOURCE_SERVICE = "complianceos"

_DEFAULT_BOOTSTRAP_SERVERS = "localhost:9092"


def topic_for(event_type: str) -> str:
    """Map `compliance.audit_run.locked` to the topic `compliance.audit_run`."""
    parts = event_type.split(".")
    return ".".join(parts[:2]) if len(parts) > 2 else event_type


class ComplianceEventPublisher:
    """Kafka publisher for compliance domain events.

    Wraps the shared EventPublisher and builds the standard envelope.

    Args:
        bootstrap_servers: Comma-separated Kafka bootstrap servers.
        enabled: When False, events are only logged.
    """

    def __init__(self, bootstrap_servers: str = _DEFAULT_BOOTSTRAP_SERVERS, enabled: bool = True) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._enabled = enabled
        self._publisher: EventPublisher | None = None

    async def start(self) -> None:
        """Start the underlying producer. Called from the lifespan handler."""
        self._publisher = EventPublisher(bootstrap_servers=self._bootstrap_servers, enabled=self._enabled)
        await self._publisher.start()
        logger.info("ComplianceEventPublisher started", bootstrap_servers=self._bootstrap_servers)

    async def stop(self) -> None:
        """Flush buffered events and close the producer."""
        if self._publisher is not None:
            await self._publisher.stop()
            self._publisher = None
            logger.info("ComplianceEventPublisher stopped")

    def _build_envelope(
        self,
        event_type: str,
        tenant_id: uuid.UUID,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        """Build the standard event envelope.

        Args:
            event_type: Dot-notation event type.
            tenant_id: Owning organization.
            payload: Event-specific data.
            correlation_id: Optional request correlation ID.

        Returns:
            Envelope dict ready for Kafka.
        """
        return {
            "event_type": event_type,
            "tenant_id": str(tenant_id),
            "source_service": SOURCE_SERVICE,
            "occurred_at": datetime.now(UTC).isoformat(),
            "correlation_id": correlation_id,
            "payload": payload,
        }

    async def publish_event(
        self,
        event_type: str,
        tenant_id: uuid.UUID,
        resource_id: uuid.UUID,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> None:
        """Publish one domain event, keyed by the affected resource.

        Args:
            event_type: Dot-notation event type, e.g. "compliance.policy.published".
            tenant_id: Owning organization.
            resource_id: Affected resource; used as the partition key.
            payload: Event-specific data.
            correlation_id: Optional request correlation ID.
        """
        event = self._build_envelope(event_type, tenant_id, payload, correlation_id)
        await self._publish(topic_for(event_type), str(resource_id), event)

    async def _publish(self, topic: str, key: str, event: dict[str, Any]) -> None:
        """Send an event; skipped with a debug log when the producer is not started."""
        if self._publisher is None:
            logger.debug(
                "ComplianceEventPublisher not started, skipping publish",
                topic=topic,
                event_type=event.get("event_type"),
            )
            return

        await self._publisher.publish(topic=topic, value=event, key=key)
        logger.debug(
            "Compliance event published",
            topic=topic,
            event_type=event.get("event_type"),
            tenant_id=event.get("tenant_id"),
        )
