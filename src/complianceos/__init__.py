"""complianceOS - multi-tenant compliance, audit and GRC management service."""

__version__ = "0.1.0"
