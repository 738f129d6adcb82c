"""Convert Glooko raw records into Nightscout entries and treatments.

``GlookoDataSource`` has already moved every record timestamp from the
device clock onto UTC, so the transformer uses ``RawRecord.timestamp`` as
is and does not apply the timezone offset a second time.

Mapping:
    readings         → Entry (type 'sgv')
    normalBoluses    → Treatment ('Meal Bolus' with carbs, else 'Correction Bolus')
    scheduledBasals  → Treatment ('Temp Basal', duration in minutes)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from src.connect.base import RawBatch, RawRecord, Transformer, TransformedBatch
from src.connect.errors import TransformError
from src.connect.models import Entry, Treatment
from src.connect.sources.glooko.source import NORMAL_BOLUSES, READINGS, SCHEDULED_BASALS

logger = logging.getLogger("connect.sources.glooko.transform")

DEVICE = "cgm-connect://glooko"
ENTERED_BY = "cgm-connect-glooko"


def _num(value: object) -> float | None:
    """Safely coerce a value to float, returning None on failure."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class GlookoTransformer(Transformer):
    """Pure transformer for Glooko batches."""

    def transform(self, batch: RawBatch, timezone_offset_ms: int) -> TransformedBatch:
        out = TransformedBatch()
        try:
            for record in batch.records.get(READINGS, []):
                entry = self._entry(record)
                if entry is not None:
                    out.entries.append(entry)
            for record in batch.records.get(NORMAL_BOLUSES, []):
                bolus = self._bolus(record)
                if bolus is not None:
                    out.treatments.append(bolus)
            for record in batch.records.get(SCHEDULED_BASALS, []):
                basal = self._basal(record)
                if basal is not None:
                    out.treatments.append(basal)
        except (ValueError, TypeError) as exc:
            raise TransformError(f"Malformed Glooko record: {exc}") from exc

        out.entries.sort(key=lambda e: e.date)
        out.treatments.sort(key=lambda t: t.created_at)
        logger.info(
            "Glooko: transformed %d entries, %d treatments", len(out.entries), len(out.treatments)
        )
        return out

    # ------------------------------------------------------------------

    @staticmethod
    def _entry(record: RawRecord) -> Entry | None:
        value = _num(record.payload.get("value"))
        if value is None:
            logger.debug("Glooko: reading without value at %s", record.timestamp)
            return None
        at = record.timestamp
        return Entry(
            sgv=round(value),
            date=int(at.timestamp() * 1000),
            dateString=_iso(at),
            device=DEVICE,
            direction=record.payload.get("trend") or None,
        )

    @staticmethod
    def _bolus(record: RawRecord) -> Treatment | None:
        payload = record.payload
        insulin = _num(payload.get("insulinDelivered"))
        if insulin is None:
            insulin = _num(payload.get("programmedNormal"))
        carbs = _num(payload.get("carbsInput"))
        if insulin is None and not carbs:
            logger.debug("Glooko: bolus without insulin at %s", record.timestamp)
            return None
        return Treatment(
            eventType="Meal Bolus" if carbs else "Correction Bolus",
            created_at=_iso(record.timestamp),
            enteredBy=ENTERED_BY,
            insulin=insulin,
            carbs=carbs if carbs else None,
        )

    @staticmethod
    def _basal(record: RawRecord) -> Treatment | None:
        payload = record.payload
        rate = _num(payload.get("rate"))
        if rate is None:
            logger.debug("Glooko: basal without rate at %s", record.timestamp)
            return None
        duration_s = _num(payload.get("duration")) or 0.0
        return Treatment(
            eventType="Temp Basal",
            created_at=_iso(record.timestamp),
            enteredBy=ENTERED_BY,
            rate=rate,
            absolute=rate,
            duration=duration_s / 60.0,
        )
