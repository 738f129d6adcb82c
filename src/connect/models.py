"""Pydantic output models: the normalized records handed to sinks.

Field names follow the Nightscout REST API so that the records can be
uploaded as-is with ``model_dump(exclude_none=True)``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ConnectBase(BaseModel):
    """Base model with shared config for all output records."""

    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        frozen=True,
    )


# ---------- Entries (CGM readings) ----------

class Entry(ConnectBase):
    type: str = "sgv"
    sgv: int = Field(ge=0)
    date: int  # epoch milliseconds
    date_string: str = Field(alias="dateString")
    device: str
    direction: str | None = None


# ---------- Treatments (insulin delivery) ----------

class Treatment(ConnectBase):
    event_type: str = Field(alias="eventType")
    created_at: str
    entered_by: str = Field(alias="enteredBy")
    insulin: float | None = Field(default=None, ge=0)
    carbs: float | None = Field(default=None, ge=0)
    rate: float | None = Field(default=None, ge=0)
    absolute: float | None = Field(default=None, ge=0)
    duration: float | None = Field(default=None, ge=0)  # minutes
    notes: str | None = None
