from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from pmoguard.config import Settings, get_settings, reset_settings_cache
from pmoguard.logging import get_logger
from pmoguard.service.access import ProjectAccessService
from pmoguard.service.assignees import TaskService
from pmoguard.service.audit import AuditSink, LoggingAuditSink
from pmoguard.service.auth import AuthService
from pmoguard.service.guards import RoleGuard
from pmoguard.service.identity import IdentityExtractor
from pmoguard.service.rate_limit import FixedWindowRateLimiter
from pmoguard.service.tenancy import TenantResolver, TenantService
from pmoguard.service.tokens import TokenService
from pmoguard.storage.memory import MemoryStore
from pmoguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379 for log lines."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the long-lived service singletons; never holds request state."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            multi_tenant=self.settings.multi_tenant_enabled,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = store or MemoryStore(fs_root=self.settings.state_path)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None
            if self.cache is None:
                if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                    raise RuntimeError(
                        "Redis is configured but unreachable; start Redis, unset REDIS_URL, "
                        "or set ALLOW_REDIS_FALLBACK_DEV=true for in-process rate limits."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else "unknown",
                    mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
                )

        self._ensure_default_tenant()

        self.audit: AuditSink = audit or LoggingAuditSink()
        self.tokens = TokenService.from_settings(self.settings)
        self.identity = IdentityExtractor(
            self.tokens, cookie_name=self.settings.auth_cookie_name
        )
        self.tenant_resolver = TenantResolver(
            self.store,
            multi_tenant_enabled=self.settings.multi_tenant_enabled,
            default_slug=self.settings.default_tenant_slug,
            base_domain=self.settings.tenant_base_domain,
        )
        self.tenants = TenantService(self.store)
        self.guard = RoleGuard(self.store)
        self.auth = AuthService(self.store, self.cache, self.settings)
        self.projects = ProjectAccessService(self.store, self.guard, audit=self.audit)
        self.tasks = TaskService(self.store, self.projects)

        login_max, login_window = self.settings.login_rate_limit
        reset_max, reset_window = self.settings.password_reset_rate_limit
        self.login_limiter = FixedWindowRateLimiter(
            "login",
            max_attempts=login_max,
            window_seconds=login_window,
            cache=self.cache,
            action="login attempts",
        )
        self.password_reset_limiter = FixedWindowRateLimiter(
            "password_reset",
            max_attempts=reset_max,
            window_seconds=reset_window,
            cache=self.cache,
            action="password reset requests",
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            login_limit=login_max,
            relaxed_rate_limits=self.settings.relaxed_rate_limits,
        )

    def _ensure_default_tenant(self) -> None:
        slug = self.settings.default_tenant_slug
        if not slug or self.store.get_tenant_by_slug(slug) is not None:
            return
        tenant = self.store.create_tenant(slug, "Default")
        logger.info("default_tenant_created", tenant_id=tenant.id, slug=slug)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
