"""
API key authentication and fixed-window rate limiting.

Keys come from the auth section of config.yaml:

    auth:
      allow_anonymous: false
      window_seconds: 3600
      keys:
        - key: ${CHATRELAY_WIDGET_KEY}
          name: Production Widget
          permissions: [chat:read, chat:write]
          rate_limit: 100

A key's request budget is a fixed window: the first request opens a window
of window_seconds, each allowed request increments the count, and once the
count reaches the key's rate_limit further requests are refused until the
window has passed. The window is reset lazily on the next request after it
expires; nothing runs in the background.
"""

from __future__ import annotations

import logging
import secrets
import string
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from chatrelay.storage.models import utcnow

logger = logging.getLogger(__name__)

DEFAULT_PERMISSIONS = ("chat:read", "chat:write")
DEFAULT_RATE_LIMIT = 100
DEFAULT_WINDOW_SECONDS = 3600
KEY_LENGTH = 64
KEY_ALPHABET = string.ascii_lowercase + string.digits


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def mask_key(key: str) -> str:
    return f"{key[:8]}...{key[-8:]}" if len(key) > 16 else "***"


@dataclass
class ApiKeyRecord:
    key: str
    name: str = "Unnamed Key"
    permissions: set[str] = field(default_factory=lambda: set(DEFAULT_PERMISSIONS))
    rate_limit: int = DEFAULT_RATE_LIMIT
    created_at: str = field(default_factory=utcnow)
    last_used_at: str | None = None
    is_active: bool = True

    def to_dict(self, masked: bool = True) -> dict:
        return {
            "name": self.name,
            "apiKey": mask_key(self.key) if masked else self.key,
            "permissions": sorted(self.permissions),
            "rateLimit": self.rate_limit,
            "lastUsed": self.last_used_at,
            "isActive": self.is_active,
            "createdAt": self.created_at,
        }


@dataclass
class RateWindow:
    key: str
    count: int
    reset_at: float


@dataclass
class RateLimitStatus:
    allowed: bool
    limit: int = 0
    current: int = 0
    reset_at: float | None = None
    reason: str = ""

    @property
    def reset_at_iso(self) -> str | None:
        return _iso(self.reset_at)

    def to_dict(self) -> dict:
        body = {
            "allowed": self.allowed,
            "limit": self.limit,
            "current": self.current,
            "resetAt": self.reset_at_iso,
        }
        if self.reason:
            body["reason"] = self.reason
        return body

    def headers(self) -> dict:
        """X-RateLimit-* response headers."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Current": str(self.current),
            "X-RateLimit-Reset": self.reset_at_iso or "",
        }


class RateLimiter:
    """
    Fixed-window counter per key. check() reads, compares and increments
    under one lock, so two concurrent requests cannot both take the last slot.
    """

    def __init__(self, window_seconds: float = DEFAULT_WINDOW_SECONDS, clock: Callable[[], float] = time.time):
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, RateWindow] = {}
        self._lock = threading.Lock()

    def check(self, key: str, limit: int) -> RateLimitStatus:
        with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                window = RateWindow(key=key, count=0, reset_at=now + self.window_seconds)
                self._windows[key] = window

            if window.count >= limit:
                return RateLimitStatus(
                    allowed=False,
                    limit=limit,
                    current=window.count,
                    reset_at=window.reset_at,
                    reason="Rate limit exceeded",
                )
            window.count += 1
            return RateLimitStatus(
                allowed=True, limit=limit, current=window.count, reset_at=window.reset_at,
            )

    def usage(self, key: str) -> int:
        with self._lock:
            window = self._windows.get(key)
            return window.count if window else 0

    def forget(self, key: str):
        with self._lock:
            self._windows.pop(key, None)

    def cleanup_expired(self) -> int:
        """Drop windows that have already passed. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, w in self._windows.items() if now > w.reset_at]
            for k in expired:
                del self._windows[k]
        return len(expired)


class ApiKeyAuthenticator:
    """Key registry plus the rate limiter that meters it."""

    def __init__(
        self,
        records: list[ApiKeyRecord] | None = None,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        allow_anonymous: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self._keys: dict[str, ApiKeyRecord] = {r.key: r for r in records or []}
        self.limiter = RateLimiter(window_seconds=window_seconds, clock=clock)
        self.allow_anonymous = allow_anonymous

    @classmethod
    def from_config(cls, auth_cfg: dict | None) -> "ApiKeyAuthenticator":
        auth_cfg = auth_cfg or {}
        records = []
        for entry in auth_cfg.get("keys", []) or []:
            key = (entry.get("key") or "").strip()
            if not key:
                logger.warning("Skipping API key '%s': empty key (unset env var?)", entry.get("name", "?"))
                continue
            records.append(ApiKeyRecord(
                key=key,
                name=entry.get("name", "Unnamed Key"),
                permissions=set(entry.get("permissions") or DEFAULT_PERMISSIONS),
                rate_limit=int(entry.get("rate_limit", DEFAULT_RATE_LIMIT)),
                created_at=str(entry.get("created_at") or utcnow()),
                is_active=bool(entry.get("active", True)),
            ))
        auth = cls(
            records,
            window_seconds=float(auth_cfg.get("window_seconds", DEFAULT_WINDOW_SECONDS)),
            allow_anonymous=bool(auth_cfg.get("allow_anonymous", False)),
        )
        logger.info("Loaded %d API key(s), anonymous access %s",
                    len(records), "allowed" if auth.allow_anonymous else "refused")
        return auth

    def validate(self, key) -> ApiKeyRecord | None:
        """The key's record if it exists and is active. Stamps last_used_at."""
        if not key or not isinstance(key, str):
            return None
        record = self._keys.get(key)
        if record is None or not record.is_active:
            return None
        record.last_used_at = utcnow()
        return record

    def has_permission(self, key: str, permission: str) -> bool:
        record = self._keys.get(key)
        return bool(record and record.is_active and permission in record.permissions)

    def check_rate_limit(self, key: str) -> RateLimitStatus:
        record = self._keys.get(key)
        if record is None or not record.is_active:
            return RateLimitStatus(allowed=False, reason="Invalid API key")
        return self.limiter.check(key, record.rate_limit)

    def generate_key(
        self,
        name: str = "Unnamed Key",
        permissions: list[str] | set[str] | None = None,
        rate_limit: int = DEFAULT_RATE_LIMIT,
    ) -> str:
        """Register a new random key and return it."""
        key = "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_LENGTH))
        self._keys[key] = ApiKeyRecord(
            key=key,
            name=name,
            permissions=set(permissions or DEFAULT_PERMISSIONS),
            rate_limit=rate_limit,
        )
        logger.info("Generated API key '%s' (%s)", name, mask_key(key))
        return key

    def revoke(self, key: str) -> bool:
        record = self._keys.get(key)
        if record is None:
            return False
        record.is_active = False
        self.limiter.forget(key)
        logger.info("Revoked API key '%s' (%s)", record.name, mask_key(key))
        return True

    def cleanup_expired_usage(self) -> int:
        return self.limiter.cleanup_expired()

    def get_stats(self) -> list[dict]:
        stats = []
        for record in self._keys.values():
            entry = record.to_dict(masked=True)
            entry["currentUsage"] = self.limiter.usage(record.key)
            stats.append(entry)
        return stats

    def __len__(self) -> int:
        return len(self._keys)
