from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from depositbridge.core.config import Settings
from depositbridge.persistence.db import build_engine, build_sessionmaker, create_schema
from depositbridge.persistence.serialization import FieldCodec
from depositbridge.providers.downstream.factory import build_downstream_client
from depositbridge.providers.enrichment.factory import build_region_lookup
from depositbridge.providers.source.factory import build_source_client
from depositbridge.services.archive import ArchivalService
from depositbridge.services.audit import AuditSink, DatabaseAuditSink
from depositbridge.services.classifier import ErrorClassifier, load_pattern_table
from depositbridge.services.enrichment import Enricher
from depositbridge.services.lease import LeaseManager
from depositbridge.services.polling import PollingService
from depositbridge.services.polling_settings import PollingSettingsProvider
from depositbridge.services.resilience import RetryPolicy
from depositbridge.services.saga import SagaExecutor


logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Runtime:
    """Process-wide dependencies, built once by each entrypoint.

    The API builds it in its lifespan, the worker in ``on_startup`` and the
    scripts in ``main``; nothing below it caches clients at module level.
    """

    settings: Settings
    engine: AsyncEngine
    sessionmaker: async_sessionmaker[AsyncSession]
    codec: FieldCodec
    classifier: ErrorClassifier
    polling_settings: PollingSettingsProvider
    source: Any
    downstream: Any
    region_lookup: Any
    audit_sink: AuditSink
    clock: Callable[[], datetime]
    archival: ArchivalService
    lease: LeaseManager
    saga: SagaExecutor
    polling: PollingService

    async def dispose(self) -> None:
        # Close provider HTTP clients before the engine so no request outlives its pool.
        for provider in (self.source, self.downstream, self.region_lookup):
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()
        await self.engine.dispose()


async def build_runtime(
    settings: Settings,
    *,
    source: Any | None = None,
    downstream: Any | None = None,
    region_lookup: Any | None = None,
    audit_sink: AuditSink | None = None,
    clock: Callable[[], datetime] | None = None,
    ensure_schema: bool = False,
) -> Runtime:
    # Injected providers and clock replace the configured ones; tests rely on this.
    engine = build_engine(settings)
    if ensure_schema:
        await create_schema(engine)
    sessionmaker = build_sessionmaker(engine)
    # Provider calls retry in-call; outer step deadlines must outlast every attempt.
    retry_budget_ms = RetryPolicy.from_settings(settings).budget_ms()
    clock = clock or utc_now
    codec = FieldCodec(settings.max_field_bytes)
    classifier = ErrorClassifier(load_pattern_table(settings.error_patterns_path))
    polling_settings = PollingSettingsProvider(settings, sessionmaker)
    source = source if source is not None else build_source_client(settings)
    downstream = downstream if downstream is not None else build_downstream_client(settings)
    region_lookup = region_lookup if region_lookup is not None else build_region_lookup(settings)
    audit_sink = audit_sink if audit_sink is not None else DatabaseAuditSink(sessionmaker, max_metadata_bytes=settings.max_field_bytes)

    archival = ArchivalService(sessionmaker, codec=codec, clock=clock)
    lease = LeaseManager(
        sessionmaker,
        codec=codec,
        archival=archival,
        clock=clock,
        lease_timeout_minutes=settings.lease_timeout_minutes,
    )
    saga = SagaExecutor(
        source=source,
        downstream=downstream,
        enricher=Enricher(
            region_lookup,
            default_region=settings.enrichment_default_region,
            timeout_ms=retry_budget_ms,
        ),
        classifier=classifier,
        polling_settings=polling_settings,
        lease=lease,
        archival=archival,
        audit_sink=audit_sink,
        clock=clock,
        timeout_ms=settings.ext_call_timeout_ms,
        fetch_timeout_ms=retry_budget_ms,
    )
    polling = PollingService(
        lease=lease,
        saga=saga,
        batch_size=settings.tick_batch_size,
        concurrency=settings.tick_concurrency,
    )
    logger.info(
        "runtime_built source=%s downstream=%s enrichment=%s",
        type(source).__name__,
        type(downstream).__name__,
        type(region_lookup).__name__,
    )
    return Runtime(
        settings=settings,
        engine=engine,
        sessionmaker=sessionmaker,
        codec=codec,
        classifier=classifier,
        polling_settings=polling_settings,
        source=source,
        downstream=downstream,
        region_lookup=region_lookup,
        audit_sink=audit_sink,
        clock=clock,
        archival=archival,
        lease=lease,
        saga=saga,
        polling=polling,
    )
