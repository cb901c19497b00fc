"""Adapters - external integrations for complianceOS.

Contains:
- repositories.py - SQLAlchemy repositories for the primary DB
- audit_wall.py - Separate activity trail DB session and ActivityTrailRepository
- kafka.py - ComplianceEventPublisher
- llm_client.py - OpenAI-compatible embeddings and chat completions
- kms.py - LocalMasterKeyProvider (AES-256-GCM key wrapping)
- identity_connectors.py - SCIM client and Entra / Google / Okta directory connectors
"""

__all__: list[str] = []
