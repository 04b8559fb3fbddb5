"""Monitoring package exports and helpers."""

from __future__ import annotations

from typing import Optional

from ..config.settings import AppConfig, get_app_config
from ..datalake.storage import SQLiteStorage
from .alerts import AlertManager
from .event_bus import EVENT_BUS
from .logger import configure_logging, get_logger
from .metrics import METRICS


def bootstrap_observability(
    storage: Optional[SQLiteStorage],
    *,
    config: Optional[AppConfig] = None,
) -> AlertManager:
    """Configure logging, event persistence and alert routing for a CLI run."""

    app_config = config or get_app_config()
    configure_logging(app_config.monitoring)
    get_logger(__name__).info(
        "Observability ready for profile %s (config file: %s)",
        app_config.mode.active,
        app_config.mode.config_file or "none",
    )
    manager = AlertManager(app_config.monitoring)
    if app_config.event_bus.enabled:
        EVENT_BUS.resize_history(app_config.event_bus.history_size)
        EVENT_BUS.attach_metrics(METRICS)
        EVENT_BUS.attach_alert_manager(manager)
        EVENT_BUS.attach_storage(storage if app_config.event_bus.persist_events else None)
    return manager


__all__ = ["bootstrap_observability", "EVENT_BUS", "METRICS"]
