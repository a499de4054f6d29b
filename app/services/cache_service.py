"""
Approval Cache Service.

Provides a thin cache wrapper for the approval inbox:
  - Pending approvals per approver (short TTL)
  - Proxy (delegated) pending approvals per delegate
  - Manual invalidation helpers called after every state change

Uses Redis in production (via REDIS_URL), falls back to
a simple in-memory dict for development/testing.
"""

import json
import logging
import os
import time

import redis

logger = logging.getLogger(__name__)

# ── In-memory fallback ───────────────────────────────────────────────────

_memory_store: dict = {}  # key → (value_json, expire_ts)


class _MemoryBackend:
    """Simple dict cache for dev/testing."""

    def get(self, key):
        entry = _memory_store.get(key)
        if entry is None:
            return None
        val, expires = entry
        if expires and time.time() > expires:
            _memory_store.pop(key, None)
            return None
        return val

    def setex(self, key, ttl_seconds, value):
        _memory_store[key] = (value, time.time() + ttl_seconds)

    def delete(self, *keys):
        for k in keys:
            _memory_store.pop(k, None)

    def keys(self, pattern):
        """Simple glob matching for 'prefix*' patterns."""
        if pattern.endswith("*"):
            prefix = pattern[:-1]
            return [k for k in _memory_store if k.startswith(prefix)]
        return [k for k in _memory_store if k == pattern]

    def flushdb(self):
        _memory_store.clear()

    def ping(self):
        return True


# ── Singleton cache backend ──────────────────────────────────────────────

_backend = None


def _get_backend():
    """Lazy-initialise Redis or fall back to in-memory."""
    global _backend
    if _backend is not None:
        return _backend

    redis_url = os.getenv("REDIS_URL")
    if redis_url and not redis_url.startswith("memory://"):
        try:
            client = redis.from_url(redis_url, decode_responses=True)
            client.ping()
            _backend = client
            logger.info("Cache: using Redis at %s", redis_url.split("@")[-1])
        except redis.RedisError as exc:
            logger.warning("Redis unavailable (%s), falling back to memory cache", exc)
            _backend = _MemoryBackend()
    else:
        _backend = _MemoryBackend()
    return _backend


# ── Default TTLs ─────────────────────────────────────────────────────────

PENDING_TTL = 60
DEFAULT_TTL = 300


# ── Key builders ─────────────────────────────────────────────────────────

def pending_key(employee_id):
    return f"pending:{employee_id}"


def proxy_pending_key(employee_id):
    return f"proxy_pending:{employee_id}"


# ── Public API ───────────────────────────────────────────────────────────


def get_cached(key, ttl=DEFAULT_TTL, loader=None):
    """Generic cache-aside.  If *loader* is provided, it's called on miss
    and the result is cached."""
    be = _get_backend()
    raw = be.get(key)
    if raw is not None:
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            pass
    if loader is None:
        return None
    value = loader()
    if value is not None:
        be.setex(key, ttl, json.dumps(value, default=str))
    return value


def invalidate_approval_inbox(employee_ids=()):
    """Drop pending lists for *employee_ids* and every proxy list.

    Proxy lists depend on delegations as well as on executions, so they are
    always cleared wholesale.
    """
    be = _get_backend()
    keys = [pending_key(e) for e in set(employee_ids) if e is not None]
    keys.extend(be.keys("proxy_pending:*"))
    if keys:
        be.delete(*keys)


def clear_all():
    """Flush entire cache (use sparingly, mainly for testing)."""
    _get_backend().flushdb()


def health_check():
    """Return cache backend status."""
    try:
        be = _get_backend()
        be.ping()
        backend_type = "redis" if not isinstance(be, _MemoryBackend) else "memory"
        return {"status": "ok", "backend": backend_type}
    except redis.RedisError as exc:
        return {"status": "error", "detail": str(exc)}
