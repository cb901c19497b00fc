"""HTTP API: core routers and request/response schemas."""
