"""Core domain layer: ORM models, Protocol interfaces and business services."""
