"""Output adapters that forward cycle results to downstream services."""

from src.connect.outputs.nightscout import NightscoutUploader

__all__ = ["NightscoutUploader"]
