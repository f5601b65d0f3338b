from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from snaptriage.core.config import Settings
from snaptriage.core.redis_client import close_redis, create_redis
from snaptriage.db.session import build_engine, build_session_factory
from snaptriage.services.content_store import ContentStore, LocalContentStore, is_retryable_store_error
from snaptriage.services.dispatcher import InProcessRelocationDispatcher, RedisRelocationDispatcher, RelocationDispatcher
from snaptriage.services.enrichment import ContentAnalyzer, build_analyzer
from snaptriage.services.retry import RetryPolicy, analysis_policy, content_store_policy, metadata_store_policy

logger = logging.getLogger(__name__)


@dataclass
class TriageContext:
    """Everything a handler needs, built once per process and passed explicitly."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    content_store: ContentStore
    content_policy: RetryPolicy
    metadata_policy: RetryPolicy
    analysis_policy: RetryPolicy
    dispatcher: RelocationDispatcher | None = None
    analyzer: ContentAnalyzer | None = None
    redis: Redis | None = None
    engine: AsyncEngine | None = None

    @property
    def store_location(self) -> str:
        return self.settings.content_store_location


def build_context(
    settings: Settings,
    *,
    engine: AsyncEngine | None = None,
    redis: Redis | None = None,
    use_redis: bool = True,
) -> TriageContext:
    from snaptriage.services.relocation_tasks import process_relocation

    engine = engine or build_engine(settings.database_url)
    if redis is None and use_redis:
        redis = create_redis(settings.redis_url)
    api_policy = analysis_policy(settings.analysis_max_wait_seconds)
    ctx = TriageContext(
        settings=settings,
        session_factory=build_session_factory(engine),
        content_store=LocalContentStore(settings.content_store_root, settings.content_store_location),
        content_policy=content_store_policy(is_retryable_store_error),
        metadata_policy=metadata_store_policy(),
        analysis_policy=api_policy,
        analyzer=build_analyzer(settings, api_policy),
        redis=redis,
        engine=engine,
    )
    if redis is not None:
        ctx.dispatcher = RedisRelocationDispatcher(redis, settings.relocation_queue_key)
    else:
        ctx.dispatcher = InProcessRelocationDispatcher(partial(process_relocation, ctx))
    logger.info(
        "context_built",
        extra={
            "dispatch_mode": "redis" if redis is not None else "in_process",
            "enrichment_enabled": ctx.analyzer is not None,
            "store_location": settings.content_store_location,
        },
    )
    return ctx


async def close_context(ctx: TriageContext) -> None:
    drain = getattr(ctx.dispatcher, "drain", None)
    if drain is not None:
        await drain()
    await close_redis(ctx.redis)
    if ctx.engine is not None:
        await ctx.engine.dispose()
