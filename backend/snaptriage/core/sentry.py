from __future__ import annotations

import logging
from typing import Any

from snaptriage.core.config import Settings

# Keys whose values must never leave the process in an event payload.
_SCRUBBED_KEYS = frozenset({"authorization", "analysis_api_key", "api_key"})


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: "[scrubbed]" if str(k).lower() in _SCRUBBED_KEYS else _scrub(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_scrub(item) for item in value]
    return value


def _before_send(event: dict[str, Any], _hint: dict[str, Any]) -> dict[str, Any]:
    request = event.get("request")
    if isinstance(request, dict) and "headers" in request:
        request["headers"] = _scrub(request["headers"])
    if "extra" in event:
        event["extra"] = _scrub(event["extra"])
    return event


def init_sentry(settings: Settings, *, component: str = "api") -> bool:
    """Start error reporting for the API, worker or CLI; returns whether it was enabled."""
    if not settings.sentry_dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations import Integration
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.httpx import HttpxIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.redis import RedisIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    integrations: list[Integration] = [SqlalchemyIntegration(), HttpxIntegration()]
    if component == "api":
        integrations.append(FastApiIntegration())
    if settings.redis_url:
        integrations.append(RedisIntegration())
    if settings.sentry_enable_logs:
        event_level = getattr(logging, str(settings.sentry_log_level or "error").strip().upper(), logging.ERROR)
        integrations.append(LoggingIntegration(level=logging.INFO, event_level=event_level))

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=f"snaptriage@{settings.app_version}",
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=integrations,
        before_send=_before_send,
        send_default_pii=False,
    )
    sentry_sdk.set_tag("component", component)
    sentry_sdk.set_tag("store_location", settings.content_store_location)
    return True
