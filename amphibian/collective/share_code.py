"""Out-of-band share codes: ``base64("host:port:secret")``."""

from __future__ import annotations

import base64
import binascii
import logging
import secrets
import socket
from typing import NamedTuple

import psutil

from amphibian.errors import InputInvalidError

logger = logging.getLogger(__name__)

SECRET_HEX_CHARS = 12


class ShareCode(NamedTuple):
    host: str
    port: int
    secret: str


def generate_secret() -> str:
    """Random 12-hex-character pool secret."""
    return secrets.token_hex(SECRET_HEX_CHARS // 2)


def generate_share_code(host: str, port: int, secret: str) -> str:
    """Encode a rendezvous tuple.

    Raises:
        InputInvalidError: If the tuple could not be parsed back unchanged
    """
    if not host or ":" in host or ":" in secret or not secret:
        raise InputInvalidError("Share code host and secret must be non-empty and contain no ':'")
    if not 1 <= int(port) <= 65535:
        raise InputInvalidError(f"Port out of range: {port}", {"port": port})
    return base64.b64encode(f"{host}:{int(port)}:{secret}".encode()).decode("ascii")


def parse_share_code(code: str) -> ShareCode | None:
    """Decode a share code; anything malformed yields None."""
    try:
        decoded = base64.b64decode(code.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError, AttributeError):
        return None

    parts = decoded.split(":")
    if len(parts) != 3:
        return None

    host, port_text, secret = parts
    if not host or not secret or not (port_text.isascii() and port_text.isdigit()):
        return None

    port = int(port_text)
    if not 1 <= port <= 65535:
        return None

    return ShareCode(host, port, secret)


def local_ip_addresses() -> list[str]:
    """Non-loopback IPv4 addresses of this host, for advertising a pool."""
    addresses = []
    for name, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                addresses.append(addr.address)
                logger.debug(f"Interface {name}: {addr.address}")
    return addresses
