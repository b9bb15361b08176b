from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from greenagent.config import get_settings, reset_settings_cache
from greenagent.logging import get_logger
from greenagent.service.ledger import HttpLedgerClient
from greenagent.service.notifier import LoggingNotifier, WebhookNotifier
from greenagent.service.nlu import RegexWorkParser
from greenagent.service.orchestrator import Orchestrator
from greenagent.service.ports import HandlerDeps
from greenagent.service.rate_limit import (
    RedisRateLimiter,
    SlidingWindowRateLimiter,
    build_limits,
)
from greenagent.service.vault import CredentialVault
from greenagent.service.voice import VoiceService
from greenagent.service.wallet import generate_secure_id
from greenagent.storage.memory import MemoryStore
from greenagent.storage.postgres import PostgresStore
from greenagent.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the singleton collaborators behind the HTTP surface."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.vault = CredentialVault.from_settings(self.settings)
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.data_root, vault=self.vault)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, vault=self.vault)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        limits = build_limits(self.settings.rate_limit_overrides())
        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Running without Redis; rate limits are per-process only.",
                )
        if self.cache is not None:
            self.rate_limiter: Union[RedisRateLimiter, SlidingWindowRateLimiter] = (
                RedisRateLimiter(self.cache, limits)
            )
        else:
            self.rate_limiter = SlidingWindowRateLimiter(
                limits,
                sweep_interval_seconds=self.settings.rate_limit_sweep_interval_seconds,
            )

        timeout = self.settings.external_call_timeout_seconds
        self.voice = VoiceService(
            api_key=self.settings.voice_api_key,
            transcription_model=self.settings.voice_transcription_model,
            timeout_seconds=timeout,
        )
        transcriber = self.voice if self.voice.is_configured else None
        self.ai = RegexWorkParser(transcriber)
        self.ledger = HttpLedgerClient(
            self.settings.ledger_api_url,
            chain_id=self.settings.ledger_chain_id,
            api_key=self.settings.ledger_api_key,
            timeout_seconds=timeout,
            cache_ttl_seconds=self.settings.ledger_cache_ttl_seconds,
        )
        self.notifier: Union[WebhookNotifier, LoggingNotifier] = (
            WebhookNotifier(self.settings.notifier_webhook_url, timeout_seconds=timeout)
            if self.settings.notifier_webhook_url
            else LoggingNotifier()
        )
        self.deps = HandlerDeps(
            storage=self.store,
            ledger=self.ledger,
            ai=self.ai,
            rate_limiter=self.rate_limiter,
            generate_id=generate_secure_id,
            notifier=self.notifier,
            pending_page_size=self.settings.pending_page_size,
        )
        self.orchestrator = Orchestrator(self.deps, transcriber=transcriber)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            voice_configured=self.voice.is_configured,
            notifier="webhook" if self.settings.notifier_webhook_url else "logging",
            ledger_chain_id=self.settings.ledger_chain_id,
        )

    async def close(self) -> None:
        """Stop the limiter and release HTTP clients and the store."""
        await self.rate_limiter.stop()
        await self.voice.close()
        await self.ledger.close()
        if isinstance(self.notifier, WebhookNotifier):
            await self.notifier.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton, double-checking under a lock."""
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
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.cache.close())
            except RuntimeError as exc:
                # Called from inside a running loop or on a closed client
                logger.warning("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
