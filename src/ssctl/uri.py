"""Shareable ``ss://`` connection URIs."""
from __future__ import annotations

import base64

from .errors import MissingArgumentError
from .records import ConfigRecord
from .settings import Settings

URI_SCHEME = "ss://"


def format_uri(record: ConfigRecord, settings: Settings) -> str:
    """Return ``ss://`` plus unpadded base64 of ``method:password@address:port``."""
    if not settings.has_address:
        raise MissingArgumentError(
            "Server address is not set; run `ssctl address <addr>` first."
        )
    plain = f"{record.method}:{record.password}@{settings.server_address}:{record.server_port}"
    encoded = base64.b64encode(plain.encode("utf-8")).decode("ascii").rstrip("=")
    return f"{URI_SCHEME}{encoded}"


def decode_uri(uri: str) -> str:
    """Return the ``method:password@address:port`` payload of an ``ss://`` URI."""
    if not uri.startswith(URI_SCHEME):
        raise MissingArgumentError(f"Not an {URI_SCHEME} URI: {uri!r}")
    payload = uri[len(URI_SCHEME) :]
    padded = payload + "=" * (-len(payload) % 4)
    return base64.b64decode(padded).decode("utf-8")


__all__ = ["URI_SCHEME", "decode_uri", "format_uri"]
