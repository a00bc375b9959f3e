"""Idempotency store adapters.

The Redis and SQLAlchemy stores import their client libraries lazily:
``from reliable_pipeline.idempotency.redis import RedisIdempotencyStore``.
"""

from __future__ import annotations

from .memory import InMemoryIdempotencyStore

__all__ = ["InMemoryIdempotencyStore"]
