"""Enterprise controls: envelope encryption with key rotation, and data residency."""

from complianceos.enterprise.encryption import EncryptionService
from complianceos.enterprise.residency import REGIONS, DataResidencyService

__all__ = [
    "REGIONS",
    "DataResidencyService",
    "EncryptionService",
]
