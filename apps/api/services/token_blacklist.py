"""
Token Blacklist Service
Invalidates access tokens on logout until they would have expired anyway.

Uses Redis when REDIS_URL is configured, in-process memory otherwise.
"""

import hashlib
import logging
import time
from threading import Lock
from typing import Dict, Optional

import redis

from config import get_settings

logger = logging.getLogger(__name__)


class TokenBlacklist:
    """Singleton store of revoked token ids."""

    _instance = None
    _lock = Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        self._redis_client: Optional[redis.Redis] = None
        self._memory_expiry: Dict[str, float] = {}  # key -> expiry timestamp

        redis_url = get_settings().redis_url
        if redis_url:
            try:
                self._redis_client = redis.from_url(redis_url, decode_responses=True)
                self._redis_client.ping()
                logger.info("Token blacklist using Redis")
            except redis.RedisError as e:
                logger.warning(f"Failed to connect to Redis: {e}. Using in-memory blacklist.")
                self._redis_client = None
        else:
            logger.info("Token blacklist using in-memory storage")

    @staticmethod
    def _key(token: str, token_jti: Optional[str]) -> str:
        return token_jti or hashlib.sha256(token.encode()).hexdigest()[:32]

    def add(self, token: str, token_jti: Optional[str] = None, expires_in_seconds: int = 3600) -> bool:
        key = self._key(token, token_jti)
        expires_in_seconds = max(1, int(expires_in_seconds))
        try:
            if self._redis_client:
                self._redis_client.setex(f"blacklist:{key}", expires_in_seconds, "1")
            else:
                self._purge_expired()
                self._memory_expiry[key] = time.time() + expires_in_seconds
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to add token to blacklist: {e}")
            return False

    def is_blacklisted(self, token: str, token_jti: Optional[str] = None) -> bool:
        key = self._key(token, token_jti)
        try:
            if self._redis_client:
                return self._redis_client.exists(f"blacklist:{key}") > 0
            expiry = self._memory_expiry.get(key)
            return expiry is not None and expiry > time.time()
        except redis.RedisError as e:
            logger.error(f"Failed to check blacklist: {e}")
            return False

    def _purge_expired(self):
        now = time.time()
        expired = [k for k, v in self._memory_expiry.items() if v <= now]
        for key in expired:
            self._memory_expiry.pop(key, None)

    def clear(self):
        """Forget every entry (used by tests)."""
        if self._redis_client:
            keys = self._redis_client.keys("blacklist:*")
            if keys:
                self._redis_client.delete(*keys)
        else:
            self._memory_expiry.clear()


# Global instance
token_blacklist = TokenBlacklist()


def blacklist_token(token: str, token_jti: Optional[str] = None, expires_in_seconds: int = 3600) -> bool:
    return token_blacklist.add(token, token_jti, expires_in_seconds)


def is_token_blacklisted(token: str, token_jti: Optional[str] = None) -> bool:
    return token_blacklist.is_blacklisted(token, token_jti)
