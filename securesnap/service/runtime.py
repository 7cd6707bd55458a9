from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from securesnap.config import Settings, get_settings
from securesnap.logging import get_logger
from securesnap.service.auth import AuthService
from securesnap.service.email import EmailService
from securesnap.storage.memory import MemoryStore
from securesnap.storage.models import utcnow
from securesnap.storage.postgres import PostgresStore
from securesnap.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password part of a connection URL with ``***`` for logs."""
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
    """Service graph for one app instance.

    Built by the app factory and kept on ``app.state``; nothing here is a
    module-level global, so tests can build as many isolated runtimes as
    they like.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                # QR polling falls back to the store; nothing else needs Redis.
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.client_url,
        )
        self.auth = AuthService(
            self.store, self.settings, cache=self.cache, email=self.email, clock=clock
        )
        logger.info(
            "runtime_init_completed",
            store_type=type(self.store).__name__,
            redis=bool(self.cache),
            email_configured=self.email.is_configured,
        )

    def _build_store(self):
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                return MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_secret_key or self.settings.jwt_secret,
                )
            return PostgresStore(
                self.settings.database_url,
                mfa_encryption_key=self.settings.mfa_secret_key or self.settings.jwt_secret,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    async def close(self) -> None:
        await self.auth.drain_notifications()
        if self.cache:
            await self.cache.close()
        self.store.close()
