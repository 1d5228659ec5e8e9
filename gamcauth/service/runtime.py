from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from gamcauth.config import get_settings, reset_settings_cache
from gamcauth.logging import get_logger
from gamcauth.service.auth import AuthService
from gamcauth.service.email import EmailService
from gamcauth.service.password_reset import PasswordResetManager
from gamcauth.service.passwords import PasswordService
from gamcauth.service.pipeline import AuthPipeline
from gamcauth.service.rate_limit import RateLimiter
from gamcauth.service.security_questions import SecurityQuestionService
from gamcauth.service.tokens import TokenCodec
from gamcauth.storage.blacklist import BlacklistStore
from gamcauth.storage.kv import KeyValueStore
from gamcauth.storage.memory import MemoryStore
from gamcauth.storage.memory_kv import MemoryKeyValueStore
from gamcauth.storage.redis_cache import RedisKeyValueStore
from gamcauth.storage.sessions import RefreshTokenStore, SessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL so it can be logged.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_kv=self.settings.use_memory_kv,
            test_mode=self.settings.test_mode,
        )

        self.store = MemoryStore(
            fs_root=self.settings.shared_fs_root,
            persist=self.settings.persist_memory_store,
        )
        self.kv = self._build_kv()

        self.sessions = SessionStore(self.kv)
        self.refresh_tokens = RefreshTokenStore(self.kv)
        self.blacklist = BlacklistStore(self.kv)
        self.rate_limiter = RateLimiter(self.kv)
        self.codec = TokenCodec(self.settings)
        self.passwords = PasswordService()
        self.questions = SecurityQuestionService(self.store, self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.pipeline = AuthPipeline(
            self.codec, self.blacklist, self.sessions, self.store, self.settings
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            codec=self.codec,
            sessions=self.sessions,
            refresh_tokens=self.refresh_tokens,
            blacklist=self.blacklist,
            passwords=self.passwords,
        )
        self.password_reset = PasswordResetManager(
            self.store,
            self.settings,
            questions=self.questions,
            passwords=self.passwords,
            rate_limiter=self.rate_limiter,
            sessions=self.sessions,
            refresh_tokens=self.refresh_tokens,
            email=self.email,
        )

        logger.info(
            "runtime_initialized",
            kv_backend=type(self.kv).__name__,
            email_configured=self.email.is_configured,
            reset_allowed_domain=self.settings.reset_allowed_domain,
        )

    def _build_kv(self) -> KeyValueStore:
        if self.settings.test_mode or self.settings.use_memory_kv:
            return MemoryKeyValueStore()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                kv = RedisKeyValueStore(
                    self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
                )
                kv.verify_connection()
                return kv
            except Exception as exc:
                redis_error = exc

        if not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, the token blacklist and rate limits; "
                "start Redis or set USE_MEMORY_KV=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                "Running without Redis under ALLOW_REDIS_FALLBACK_DEV; sessions, revocations "
                "and rate limits are in-memory and local to this process."
            ),
        )
        return MemoryKeyValueStore()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path, the second
    check under the lock prevents two threads building separate runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.kv, RedisKeyValueStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.kv.close())
            except RuntimeError:
                asyncio.run(runtime.kv.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
