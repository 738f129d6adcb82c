"""cgm-connect authenticated polling driver.

This package periodically pulls CGM readings and insulin delivery events
from a session-authenticated source, normalizes them, and hands the
results to a sink.

Subpackages:
    sources/  — Source collaborators (Glooko)
    outputs/  — Downstream uploaders (Nightscout)

Core modules:
    base          — Data model and collaborator ABCs
    errors        — Error taxonomy
    backoff       — Bounded exponential backoff
    session       — Session lifecycle state machine
    pipeline      — fetch → align → transform for one cycle
    scheduler     — The repeating cycle, retries, and result emission
    sinks         — Logging and queue sinks
    config_loader — Load/validate driver_config.yaml
    driver        — Wire a driver for a configured source
"""

from src.connect.backoff import BackoffPolicy
from src.connect.base import (
    BackoffSpec,
    CycleResult,
    DriverConfig,
    PollCursor,
    RecoverableFailure,
    Session,
    Success,
    TerminalFailure,
)
from src.connect.pipeline import FetchPipeline
from src.connect.scheduler import PollingHandle, PollingScheduler
from src.connect.session import SessionManager, SessionState

__all__ = [
    "BackoffPolicy",
    "BackoffSpec",
    "CycleResult",
    "DriverConfig",
    "FetchPipeline",
    "PollCursor",
    "PollingHandle",
    "PollingScheduler",
    "RecoverableFailure",
    "Session",
    "SessionManager",
    "SessionState",
    "Success",
    "TerminalFailure",
]
