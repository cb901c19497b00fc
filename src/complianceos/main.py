"""complianceOS service entry point.

Initializes the FastAPI application with:
- Primary database for frameworks, evidence, policies, risks, audits and the rest
- Activity trail database connection (separate, append-only)
- Kafka publisher for compliance domain events
- AI client for embeddings and answers (when a provider key is configured)
- Key provider for tenant envelope encryption (when a master key is configured)
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from complianceos.adapters.audit_wall import close_activity_db, init_activity_db
from complianceos.adapters.kafka import ComplianceEventPublisher
from complianceos.adapters.kms import LocalMasterKeyProvider
from complianceos.adapters.llm_client import AIClient
from complianceos.ai.routes import router as ai_router
from complianceos.api.router import router
from complianceos.audits.routes import router as audits_router
from complianceos.common.app import create_app
from complianceos.common.database import close_database, init_database
from complianceos.common.observability import get_logger
from complianceos.enterprise.routes import router as enterprise_router
from complianceos.governance.routes import router as governance_router
from complianceos.identity.routes import router as identity_router
from complianceos.knowledge.routes import router as knowledge_router
from complianceos.questionnaires.routes import router as questionnaires_router
from complianceos.settings import Settings

logger = get_logger(__name__)

settings = Settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    Initializes the primary database, the activity trail database and the
    Kafka publisher, then the optional AI client and key provider. Closes
    everything in reverse order on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None
    """
    logger.info("Initializing primary database", service=settings.service_name)
    init_database(settings.database)

    logger.info(
        "Initializing activity trail database",
        service=settings.service_name,
        pool_size=settings.activity_db_pool_size,
    )
    init_activity_db(
        activity_db_url=settings.activity_db_url,
        pool_size=settings.activity_db_pool_size,
        max_overflow=settings.activity_db_max_overflow,
        pool_timeout=settings.activity_db_pool_timeout,
    )

    logger.info("Initializing Kafka publisher", bootstrap_servers=settings.kafka.bootstrap_servers)
    publisher = ComplianceEventPublisher(
        bootstrap_servers=settings.kafka.bootstrap_servers,
        enabled=settings.kafka.enabled,
    )
    await publisher.start()

    app.state.settings = settings
    app.state.event_publisher = publisher
    app.state.ai_client = None
    app.state.key_provider = None

    if settings.ai_api_key:
        app.state.ai_client = AIClient(
            base_url=settings.ai_base_url,
            api_key=settings.ai_api_key,
            embedding_model=settings.ai_embedding_model,
            chat_model=settings.ai_chat_model,
            max_tokens=settings.ai_max_tokens,
            temperature=settings.ai_temperature,
            timeout_seconds=settings.ai_timeout_seconds,
        )
    else:
        logger.warning("No AI provider key configured; AI endpoints will return 502")

    if settings.encryption_master_key:
        app.state.key_provider = LocalMasterKeyProvider(
            master_key_b64=settings.encryption_master_key,
            key_id=settings.encryption_master_key_id,
        )
    else:
        logger.warning("No encryption master key configured; tenant encryption cannot be initialized")

    logger.info(
        "complianceOS startup complete",
        ai_enabled=app.state.ai_client is not None,
        encryption_enabled=app.state.key_provider is not None,
    )

    yield

    logger.info("Shutting down complianceOS")
    await publisher.stop()
    await close_activity_db()
    await close_database()
    logger.info("complianceOS shutdown complete")


app: FastAPI = create_app(
    service_name="complianceos",
    version="0.1.0",
    settings=settings,
    lifespan=lifespan,
)

for module_router in (
    router,
    audits_router,
    questionnaires_router,
    ai_router,
    governance_router,
    enterprise_router,
    identity_router,
    knowledge_router,
):
    app.include_router(module_router, prefix="/api/v1")
