"""Helpers for wiring the analytics orchestrator into applications.

Environment variables
---------------------
- ANALYTICS_*: configuration overrides, see ``AnalyticsConfig.from_env``.
- ANALYTICS_CONFIG_FILE: optional YAML file with configuration overrides.
- ANALYTICS_STATE_DIR: optional directory for persisted profiles and
  configuration (JSON files). Without it state lives in memory only.
- LOG_LEVEL: logging level used by ``setup_logging``.
"""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, List, Optional, Union

from dotenv import find_dotenv, load_dotenv

from .analytics_config import AnalyticsConfig, AnalyticsConfigManager
from .interfaces import InMemoryDatastore, maybe_await
from .orchestrator import AnalyticsOrchestrator
from .profile_store import JsonFilePersistence, ProfileStore

logger = logging.getLogger(__name__)


def load_environment(dotenv_path: Optional[Union[str, Path]] = None) -> bool:
    """Load a ``.env`` file into ``os.environ`` without overriding existing values.

    Returns whether a file was found and loaded.
    """
    path = str(dotenv_path) if dotenv_path else find_dotenv(usecwd=True)
    if not path:
        return False
    loaded = load_dotenv(path, override=False)
    if loaded:
        logger.debug("Loaded environment from %s", path)
    return bool(loaded)


def build_orchestrator(
    datastore: Any = None,
    *,
    pattern_analyzer: Any = None,
    correlation_analyzer: Any = None,
    predictive_analyzer: Any = None,
    anomaly_detector: Any = None,
    alert_generator: Any = None,
    config: Optional[AnalyticsConfig] = None,
    config_manager: Optional[AnalyticsConfigManager] = None,
    persistence: Any = None,
    **orchestrator_kwargs: Any,
) -> AnalyticsOrchestrator:
    """Return an `AnalyticsOrchestrator` with default collaborators filled in.

    Parameters
    ----------
    datastore:
        Entity/record source. Defaults to an empty `InMemoryDatastore`.
    pattern_analyzer, correlation_analyzer, predictive_analyzer, anomaly_detector:
        Optional analyzers; a missing analyzer contributes an empty list.
    alert_generator:
        Optional alert collaborator invoked after analysis.
    config:
        Explicit configuration. When omitted it is read from
        ``ANALYTICS_CONFIG_FILE`` (YAML) if set, else from persisted state, else
        from ``ANALYTICS_*`` environment variables.
    config_manager:
        Existing manager to subscribe to. One is created when omitted.
    persistence:
        String key/value store for profiles and configuration. Defaults to
        `JsonFilePersistence` under ``ANALYTICS_STATE_DIR`` when that is set.
    orchestrator_kwargs:
        Forwarded to the `AnalyticsOrchestrator` constructor.
    """
    if persistence is None and os.getenv("ANALYTICS_STATE_DIR"):
        persistence = JsonFilePersistence(os.environ["ANALYTICS_STATE_DIR"])

    if config is None and config_manager is None:
        config_file = os.getenv("ANALYTICS_CONFIG_FILE")
        if config_file:
            config = AnalyticsConfig.from_yaml(config_file)
        elif persistence is None:
            config = AnalyticsConfig.from_env()
    if config is not None:
        for warning in config.warnings:
            logger.warning(f"Analytics configuration: {warning}")
        for error in config.errors:
            logger.error(f"Analytics configuration: {error}")

    if config_manager is None:
        config_manager = AnalyticsConfigManager(config, persistence=persistence)
    active = config_manager.get_config()

    profile_store = orchestrator_kwargs.pop("profile_store", None) or ProfileStore(
        persistence, categories=active.categories.tracked
    )
    return AnalyticsOrchestrator(
        datastore if datastore is not None else InMemoryDatastore(),
        pattern_analyzer=pattern_analyzer,
        correlation_analyzer=correlation_analyzer,
        predictive_analyzer=predictive_analyzer,
        anomaly_detector=anomaly_detector,
        alert_generator=alert_generator,
        config_manager=config_manager,
        profile_store=profile_store,
        **orchestrator_kwargs,
    )


async def ensure_initialized(
    orchestrator: AnalyticsOrchestrator,
    seeder: Any = None,
    warm: bool = True,
) -> List[str]:
    """Prepare every entity for analytics at process start.

    Seeds an empty datastore when a seeder is supplied, initializes a profile
    for each entity and, when ``warm`` is set, computes analytics for all of
    them. Seeding and warming are best effort; failures are logged.

    Returns the ids of the initialized entities.
    """
    entities = await orchestrator.list_entities()
    if not entities and seeder is not None:
        try:
            await maybe_await(seeder.seed(orchestrator.datastore))
            logger.info("Seeded empty datastore")
        except Exception as exc:
            logger.error(f"Datastore seeding failed: {exc}")
        entities = await orchestrator.list_entities()

    entity_ids: List[str] = []
    for entity in entities:
        entity_id = entity.get("id") if isinstance(entity, dict) else getattr(entity, "id", None)
        if entity_id and orchestrator.initialize_entity(str(entity_id)) is not None:
            entity_ids.append(str(entity_id))

    if warm and entity_ids:
        results = await asyncio.gather(
            *(orchestrator.get_analytics(entity_id) for entity_id in entity_ids), return_exceptions=True
        )
        for entity_id, result in zip(entity_ids, results):
            if isinstance(result, Exception):
                logger.warning(f"Cache warm-up failed for {entity_id}: {result}")

    logger.info(f"Analytics initialized for {len(entity_ids)} entities")
    return entity_ids


__all__ = [
    "build_orchestrator",
    "ensure_initialized",
    "load_environment",
]
