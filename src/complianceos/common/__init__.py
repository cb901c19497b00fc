"""Shared platform layer: config, logging, errors, database, auth, events, app factory."""
