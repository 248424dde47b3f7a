"""Shared infrastructure: config, database, redis, auth, errors and models."""
