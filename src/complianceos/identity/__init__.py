"""Identity integrations: SSO providers, SCIM provisioning and directory connectors."""

from complianceos.identity.service import IdentityService

__all__ = ["IdentityService"]
