"""Runtime configuration for ingestion sources, batch sizes and relevance weights.

Values come from the environment (optionally populated from a ``.env`` file by
the entry points); the dataclasses below carry the defaults.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Iterable

from pipelines.relevance import DEFAULT_WEIGHTS, RelevanceWeights
from pipelines.sources.base import SourceSettings
from pipelines.sources.dld import DLD_API_BASE_URL
from pipelines.sources.ejari import EJARI_API_BASE_URL
from pipelines.sources.portals import (
    BAYUT,
    DEFAULT_PORTAL_AREAS,
    PORTAL_BASE_URLS,
    PROPERTYFINDER,
    SUPPORTED_PORTALS,
    canonical_portal,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_LOOKBACK_DAYS = 7
DEFAULT_MOCK_COUNT = 100

ALL_SOURCES: tuple[str, ...] = ("dld", "ejari", "portals")


@dataclass(frozen=True)
class SourceDefaults:
    """Built-in endpoint and quota for one upstream provider."""

    name: str
    env_prefix: str
    base_url: str
    max_requests: int
    window_seconds: float = 1.0


SOURCE_DEFAULTS: tuple[SourceDefaults, ...] = (
    SourceDefaults("dld", "DLD", DLD_API_BASE_URL, max_requests=10),
    SourceDefaults("ejari", "EJARI", EJARI_API_BASE_URL, max_requests=10),
    SourceDefaults(BAYUT, "BAYUT", PORTAL_BASE_URLS[BAYUT], max_requests=5),
    SourceDefaults(
        PROPERTYFINDER, "PROPERTYFINDER", PORTAL_BASE_URLS[PROPERTYFINDER], max_requests=5
    ),
)


@dataclass(frozen=True)
class IngestionConfig:
    batch_size: int = DEFAULT_BATCH_SIZE
    lookback_days: int = DEFAULT_LOOKBACK_DAYS
    mock_count: int = DEFAULT_MOCK_COUNT
    portals: tuple[str, ...] = SUPPORTED_PORTALS
    portal_areas: tuple[str, ...] = DEFAULT_PORTAL_AREAS


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer; using %s.", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number; using %s.", name, raw, default)
        return default


def _env_list(name: str, default: Iterable[str]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return tuple(default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def get_source_defaults(name: str) -> SourceDefaults:
    for defaults in SOURCE_DEFAULTS:
        if defaults.name.lower() == name.lower():
            return defaults
    raise KeyError(f"Unknown source '{name}'")


def load_source_settings(name: str) -> SourceSettings:
    """Resolve ``SourceSettings`` for ``name`` from ``<PREFIX>_API_*`` variables."""

    defaults = get_source_defaults(name)
    prefix = defaults.env_prefix
    return SourceSettings(
        name=defaults.name,
        base_url=os.getenv(f"{prefix}_API_BASE_URL") or defaults.base_url,
        api_key=os.getenv(f"{prefix}_API_KEY") or None,
        max_requests=_env_int(f"{prefix}_MAX_REQUESTS", defaults.max_requests),
        window_seconds=_env_float(f"{prefix}_WINDOW_SECONDS", defaults.window_seconds),
        page_size=_env_int(f"{prefix}_PAGE_SIZE", 100),
        max_pages=_env_int(f"{prefix}_MAX_PAGES", 100),
        max_retries=_env_int(f"{prefix}_MAX_RETRIES", 3),
    )


def load_ingestion_config() -> IngestionConfig:
    portals: list[str] = []
    for name in _env_list("INGEST_PORTALS", SUPPORTED_PORTALS):
        try:
            portals.append(canonical_portal(name))
        except ValueError:
            logger.warning("Ignoring unsupported portal: %s", name)
    return IngestionConfig(
        batch_size=_env_int("INGEST_BATCH_SIZE", DEFAULT_BATCH_SIZE),
        lookback_days=_env_int("INGEST_LOOKBACK_DAYS", DEFAULT_LOOKBACK_DAYS),
        mock_count=_env_int("INGEST_MOCK_COUNT", DEFAULT_MOCK_COUNT),
        portals=tuple(dict.fromkeys(portals)),
        portal_areas=_env_list("PORTAL_AREAS", DEFAULT_PORTAL_AREAS),
    )


def load_relevance_weights(base: RelevanceWeights = DEFAULT_WEIGHTS) -> RelevanceWeights:
    """Apply ``RELEVANCE_<FIELD>`` overrides (e.g. ``RELEVANCE_THRESHOLD``)."""

    overrides: dict[str, object] = {}
    for item in fields(base):
        env_name = f"RELEVANCE_{item.name.rstrip('_').upper()}"
        if item.name == "risky_signal_types":
            if os.getenv(env_name):
                overrides[item.name] = frozenset(_env_list(env_name, ()))
            continue
        if os.getenv(env_name):
            overrides[item.name] = _env_float(env_name, getattr(base, item.name))
    return replace(base, **overrides) if overrides else base


def log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()


__all__ = [
    "ALL_SOURCES",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_LOOKBACK_DAYS",
    "DEFAULT_MOCK_COUNT",
    "IngestionConfig",
    "SOURCE_DEFAULTS",
    "SourceDefaults",
    "get_source_defaults",
    "load_ingestion_config",
    "load_relevance_weights",
    "load_source_settings",
    "log_level",
]
