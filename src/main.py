"""cgm-connect — polling driver entry point.

Run locally:
    CONNECT_GLOOKO_EMAIL=... CONNECT_GLOOKO_PASSWORD=... python -m src.main
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from contextlib import AsyncExitStack
from pathlib import Path

import httpx

from src.config import Settings, get_settings
from src.connect.config_loader import get_driver_config
from src.connect.driver import build_glooko_driver
from src.connect.outputs.nightscout import NightscoutUploader
from src.connect.sinks import LoggingSink, QueueSink
from src.connect.sources.glooko import build_http_client

logger = logging.getLogger("connect")


# ---------- Logging ----------

def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


# ---------- Main loop ----------

async def main(settings: Settings) -> None:
    """Run one Glooko driver until SIGINT/SIGTERM."""
    config_path = Path(settings.driver_config_path) if settings.driver_config_path else None
    driver_config = get_driver_config(config_path).driver_config_for(
        "glooko", settings.glooko_timezone_offset_ms
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # Windows
            pass

    async with AsyncExitStack() as stack:
        glooko_http = await stack.enter_async_context(build_http_client(settings.glooko_server))

        uploader_task: asyncio.Task | None = None
        if settings.nightscout_enabled:
            queue = QueueSink(maxsize=settings.upload_queue_size, successes_only=True)
            ns_http = await stack.enter_async_context(httpx.AsyncClient(timeout=30.0))
            uploader = NightscoutUploader(
                ns_http, settings.nightscout_url, settings.nightscout_api_secret, queue
            )
            uploader_task = uploader.start()
            sink = queue
            logger.info("Uploading to Nightscout at %s", settings.nightscout_url)
        else:
            sink = LoggingSink(name="glooko")
            logger.info("No Nightscout configured; results are only logged")

        scheduler = build_glooko_driver(settings, glooko_http, sink, driver_config)
        handle = scheduler.start()

        await stop_event.wait()
        logger.info("Shutting down")
        scheduler.stop(handle)
        await handle.wait()

        if uploader_task is not None:
            uploader_task.cancel()
            await asyncio.gather(uploader_task, return_exceptions=True)

    logger.info("%s stopped", settings.app_name)


def run() -> None:
    """Console-script entry point."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    asyncio.run(main(settings))


if __name__ == "__main__":
    run()
