# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Ephemeral local port allocation for the container's SSH mapping."""

from __future__ import annotations

import logging
import socket


logger = logging.getLogger(__name__)

#: Port returned when the kernel cannot hand out an ephemeral port.
FALLBACK_PORT = 2222


def find_free_port(
    host: str = "127.0.0.1", fallback: int = FALLBACK_PORT
) -> int:
    """Return a TCP port that was free on *host* at the time of the call.

    Binds to port 0, reads back the kernel-assigned port and closes the
    socket immediately.  The port may be taken again before the caller
    binds it; the engine's port mapping is created right afterwards, which
    keeps that window small.

    Args:
        host: Interface to probe (loopback by default).
        fallback: Port returned if binding fails for any reason.

    Returns:
        The allocated port, or *fallback* on failure.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, 0))
            port: int = sock.getsockname()[1]
    except OSError as e:
        logger.warning(
            "Could not allocate a free port on %s (%s); using %d",
            host,
            e,
            fallback,
        )
        return fallback

    logger.debug("Allocated free port %d on %s", port, host)
    return port
