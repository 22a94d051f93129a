"""Infrastructure clients (Redis)."""

from ehr_audit.infra.redis import AttemptCounterStore, RedisClient, get_redis

__all__ = ["AttemptCounterStore", "RedisClient", "get_redis"]
