"""Service wiring for the follow-up API and CLI."""

import logging
from dataclasses import dataclass
from functools import lru_cache

from agents.followup.calendar import HttpCalendarOracle, OpenCalendar
from agents.followup.config import FollowUpConfig
from agents.followup.controller import ExecutionController
from agents.followup.dispatch import NoOpDispatcher, OutboxDispatcher
from agents.followup.errors import ConfigurationError
from agents.followup.monitor import TriggerMonitor
from agents.followup.ports import CalendarOracle, DispatchPort, PersistencePort
from agents.followup.store import SqlStore
from backend.core.config import Settings, settings

logger = logging.getLogger(__name__)


@dataclass
class FollowUpServices:
    """Wired follow-up components sharing one store."""

    store: PersistencePort
    dispatcher: DispatchPort
    calendar: CalendarOracle
    controller: ExecutionController
    monitor: TriggerMonitor


def build_calendar(app_settings: Settings) -> CalendarOracle:
    if not app_settings.FOLLOWUP_CALENDAR_URL:
        return OpenCalendar()
    return HttpCalendarOracle(
        app_settings.FOLLOWUP_CALENDAR_URL,
        timeout_ms=app_settings.FOLLOWUP_CALENDAR_TIMEOUT_MS,
    )


def build_dispatcher(app_settings: Settings, engine) -> DispatchPort:
    mode = app_settings.FOLLOWUP_DISPATCH_MODE.strip().lower()
    if mode == "noop":
        return NoOpDispatcher()
    if mode == "outbox":
        dispatcher = OutboxDispatcher(engine)
        if app_settings.FOLLOWUP_CREATE_SCHEMA:
            dispatcher.create_schema()
        return dispatcher
    raise ConfigurationError(f"Unknown dispatch mode: {app_settings.FOLLOWUP_DISPATCH_MODE}")


def build_services(
    store: PersistencePort,
    dispatcher: DispatchPort,
    calendar: CalendarOracle,
    config: FollowUpConfig | None = None,
    **kwargs,
) -> FollowUpServices:
    """Wire controller and monitor around the given adapters.

    Extra keyword arguments (clock, id_generator) go to both components.
    """
    config = config or FollowUpConfig.from_env()
    controller = ExecutionController(store, dispatcher, calendar, config, **kwargs)
    monitor = TriggerMonitor(store, controller, calendar, config, **kwargs)
    return FollowUpServices(store, dispatcher, calendar, controller, monitor)


def services_from_settings(app_settings: Settings = settings) -> FollowUpServices:
    """Build services backed by the configured database."""
    store = SqlStore(app_settings.database_url)
    if app_settings.FOLLOWUP_CREATE_SCHEMA:
        store.create_schema()
    dispatcher = build_dispatcher(app_settings, store.engine)
    calendar = build_calendar(app_settings)
    logger.info(
        "Follow-up services initialized",
        extra={
            "dispatch_mode": app_settings.FOLLOWUP_DISPATCH_MODE,
            "calendar": type(calendar).__name__,
        },
    )
    return build_services(store, dispatcher, calendar)


@lru_cache(maxsize=1)
def get_services() -> FollowUpServices:
    """FastAPI dependency returning process-wide services."""
    return services_from_settings()
