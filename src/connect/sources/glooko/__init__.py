"""Glooko source: email/password sign-in, CGM and pump data retrieval."""

from src.connect.sources.glooko.api import GlookoClient, build_http_client
from src.connect.sources.glooko.source import GlookoAuthenticator, GlookoDataSource
from src.connect.sources.glooko.transform import GlookoTransformer

__all__ = [
    "GlookoClient",
    "GlookoAuthenticator",
    "GlookoDataSource",
    "GlookoTransformer",
    "build_http_client",
]
