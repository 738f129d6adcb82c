"""Assemble a polling driver for a configured source.

Each collaborator is constructed explicitly and passed in; there is no
plugin registry and no process-wide HTTP client.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

import httpx

from src.config import Settings
from src.connect.base import DriverConfig, Sink
from src.connect.pipeline import FetchPipeline
from src.connect.scheduler import PollingScheduler, utc_now
from src.connect.session import SessionManager
from src.connect.sources.glooko import (
    GlookoAuthenticator,
    GlookoClient,
    GlookoDataSource,
    GlookoTransformer,
)

logger = logging.getLogger("connect.driver")


def build_glooko_driver(
    settings: Settings,
    http_client: httpx.AsyncClient,
    sink: Sink,
    driver_config: DriverConfig,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> PollingScheduler:
    """Wire a ``PollingScheduler`` for one Glooko account.

    Args:
        settings:      Credentials for the account.
        http_client:   Client pointed at the Glooko API (see ``build_http_client``).
        sink:          Receives every cycle result.
        driver_config: Timings and timezone offset.
        clock:         Current-time source (injectable for tests).
    """
    client = GlookoClient(http_client)
    sessions = SessionManager(
        GlookoAuthenticator(client, settings.glooko_email, settings.glooko_password),
        refresh_delay_ms=driver_config.refresh_delay_ms,
        expire_delay_ms=driver_config.expire_delay_ms,
    )
    pipeline = FetchPipeline(
        GlookoDataSource(client, driver_config.timezone_offset_ms),
        GlookoTransformer(),
        timezone_offset_ms=driver_config.timezone_offset_ms,
    )
    logger.info(
        "Glooko driver: every %ds, timezone offset %dms",
        driver_config.expected_data_interval_ms // 1000,
        driver_config.timezone_offset_ms,
    )
    return PollingScheduler(
        sessions=sessions,
        pipeline=pipeline,
        sink=sink,
        config=driver_config,
        name="glooko",
        clock=clock,
    )
