from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from tenantauth.config import Settings, get_settings, reset_settings_cache
from tenantauth.logging import get_logger
from tenantauth.service.audit import AuditRecorder
from tenantauth.service.auth import AccountManager
from tenantauth.service.notifications import LogOtpNotifier, WebhookOtpNotifier
from tenantauth.service.otp import OtpEngine
from tenantauth.service.passwords import CredentialHasher, PasswordPolicy
from tenantauth.service.permissions import validate_permission_table
from tenantauth.service.staff import StaffService
from tenantauth.service.tokens import SigningKeys, TokenConfig, TokenIssuer, parse_expiry
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.postgres import PostgresStore
from tenantauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

LOCAL_BUCKET_SWEEP_SECONDS = 60


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""

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
    user = parsed.username or ""
    netloc = f"{user}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_token_issuer(settings: Settings) -> TokenIssuer:
    keys = SigningKeys(
        current=settings.jwt_secret, previous=tuple(settings.jwt_previous_secrets)
    )
    return TokenIssuer(
        TokenConfig(
            keys=keys,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=parse_expiry(settings.jwt_access_expiry),
            refresh_ttl_seconds=parse_expiry(settings.jwt_refresh_expiry),
            leeway_seconds=settings.jwt_leeway_seconds,
        )
    )


def build_notifier(settings: Settings):
    if settings.sms_gateway_url:
        return WebhookOtpNotifier(
            settings.sms_gateway_url,
            token=settings.sms_gateway_token,
            timeout=settings.sms_gateway_timeout_seconds,
            expiry_minutes=settings.otp_expiry_minutes,
        )
    return LogOtpNotifier(log_codes=settings.otp_dev_log_codes)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        validate_permission_table()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.memory_state_dir)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client under TEST_MODE so tests can run one event loop per case
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and the access token denylist; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits are "
                    "in-process only and logout cannot denylist access tokens."
                ),
                mode=fallback_mode,
            )

        # key -> (tokens, last refill, window seconds)
        self._local_rate_limits: Dict[str, Tuple[float, float, int]] = {}
        self._local_rate_limit_lock = threading.Lock()
        self._local_rate_limit_swept_at = time.monotonic()

        self.hasher = CredentialHasher(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
            parallelism=self.settings.argon2_parallelism,
        )
        self.policy = PasswordPolicy(
            self.hasher, history_limit=self.settings.password_history_limit
        )
        self.otp = OtpEngine(
            self.settings.otp_secret,
            expiry_minutes=self.settings.otp_expiry_minutes,
            max_attempts=self.settings.otp_max_attempts,
        )
        self.tokens = build_token_issuer(self.settings)
        self.notifier = build_notifier(self.settings)
        self.audit = AuditRecorder(self.store)
        self.accounts = AccountManager(
            self.store,
            hasher=self.hasher,
            policy=self.policy,
            otp=self.otp,
            tokens=self.tokens,
            notifier=self.notifier,
            audit=self.audit,
            cache=self.cache,
            max_failed_logins=self.settings.max_failed_logins,
            lockout_minutes=self.settings.lockout_minutes,
            trial_days=self.settings.trial_days,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
        )
        self.staff = StaffService(
            self.store, hasher=self.hasher, policy=self.policy, audit=self.audit
        )
        logger.info("runtime_init_completed", notifier=type(self.notifier).__name__)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


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
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime
    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


def _sweep_local_buckets(runtime: Runtime, now: float) -> None:
    """Drop buckets idle for a full window; they would read as full anyway.

    Caller holds ``runtime._local_rate_limit_lock``.
    """

    stale = [
        key
        for key, (_, last_ts, window) in runtime._local_rate_limits.items()
        if now - last_ts >= window
    ]
    for key in stale:
        del runtime._local_rate_limits[key]
    runtime._local_rate_limit_swept_at = now


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit; falls back to an in-process bucket without Redis."""

    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        if now - runtime._local_rate_limit_swept_at >= LOCAL_BUCKET_SWEEP_SECONDS:
            _sweep_local_buckets(runtime, now)
        tokens, last_ts, _ = runtime._local_rate_limits.get(
            key, (float(limit), now, window_seconds)
        )
        elapsed = max(0.0, now - last_ts)
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now, window_seconds)
        reset_seconds = (
            int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
