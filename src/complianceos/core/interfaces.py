"""Protocol interfaces for complianceOS adapters.

Services depend on these Protocols, never on concrete adapters, so tests can
inject AsyncMock objects and production wiring can swap implementations
(e.g. a cloud KMS key provider instead of the local master key).

Interfaces:
- IActivityRepository - append-only activity trail (separate database)
- IEventPublisher - Kafka domain event publishing
- IAIClient - embeddings + chat completions
- IKeyProvider - data-key generation and unwrapping (KMS abstraction)
- IDirectoryConnector - external directory user listing (Entra, Google, Okta)
- ISCIMClient - SCIM 2.0 /Users listing
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from complianceos.common.auth import TenantContext
from complianceos.core.models import ActivityEntry


@dataclass(frozen=True)
class DirectoryUserRecord:
    """A user as reported by an external directory, normalized across sources.

    Attributes:
        external_id: The directory's own identifier.
        email: Primary email address, or None when the directory has none.
        display_name: Human-readable name.
        active: Whether the directory reports the account as enabled.
    """

    external_id: str
    email: str | None
    display_name: str | None
    active: bool = True


class IActivityRepository(Protocol):
    """Append-only repository for the activity trail."""

    async def append(
        self,
        tenant_id: uuid.UUID,
        event_type: str,
        actor_id: uuid.UUID,
        resource_type: str,
        resource_id: uuid.UUID,
        action: str,
        details: dict[str, Any],
        timestamp: datetime,
        correlation_id: str | None = None,
    ) -> ActivityEntry:
        """Write one immutable entry."""
        ...

    async def query(
        self,
        tenant: TenantContext,
        event_type_filter: str | None = None,
        resource_type_filter: str | None = None,
        resource_id_filter: uuid.UUID | None = None,
        actor_id_filter: uuid.UUID | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[ActivityEntry], int]:
        """Return one page of entries (newest first) and the total count."""
        ...


class IEventPublisher(Protocol):
    """Publishes domain events after state changes."""

    async def publish_event(
        self,
        event_type: str,
        tenant_id: uuid.UUID,
        resource_id: uuid.UUID,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> None:
        """Publish one domain event."""
        ...


class IAIClient(Protocol):
    """OpenAI-compatible embeddings and chat completions."""

    @property
    def embedding_model(self) -> str:
        """Name of the embedding model in use."""
        ...

    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for `text`."""
        ...

    async def complete(self, messages: list[dict[str, str]]) -> str:
        """Return the assistant reply for a chat message list."""
        ...


class IKeyProvider(Protocol):
    """Generates and unwraps tenant data keys.

    The wrapped form is safe to persist; the plaintext key must only ever
    live in memory.
    """

    @property
    def key_id(self) -> str:
        """Identifier of the wrapping key."""
        ...

    def generate_data_key(self) -> tuple[bytes, bytes]:
        """Return (plaintext_key, wrapped_key) for a fresh 256-bit data key."""
        ...

    def unwrap(self, wrapped_key: bytes) -> bytes:
        """Return the plaintext data key for a wrapped key."""
        ...


class IDirectoryConnector(Protocol):
    """A source of directory users (Microsoft Entra, Google Workspace, Okta)."""

    source: str

    async def test_connection(self) -> bool:
        """Return True when the directory accepts our credentials."""
        ...

    async def list_users(self) -> list[DirectoryUserRecord]:
        """Return every user, following the directory's pagination."""
        ...


class ISCIMClient(Protocol):
    """Client for a remote SCIM 2.0 server."""

    async def test_connection(self) -> bool:
        """Return True when the server accepts the bearer token."""
        ...

    async def list_users(self) -> list[dict[str, Any]]:
        """Return raw SCIM User resources across all pages."""
        ...
