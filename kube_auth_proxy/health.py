from __future__ import annotations

import asyncio
import logging
import time

from .config import PORT_POLL_INTERVAL, PORT_WAIT_TIMEOUT
from .errors import PortUnreachable

LOGGER = logging.getLogger("KubeAuthProxy.Health")

_CONNECT_TIMEOUT = 1.0


async def _probe(host: str, port: int, timeout: float) -> None:
    _, writer = await asyncio.wait_for(
        asyncio.open_connection(host, port), timeout=timeout
    )
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as exc:
        LOGGER.debug("Closing probe connection to %s:%s failed: %s", host, port, exc)


async def wait_until_port_is_used(
    port: int,
    interval: float = PORT_POLL_INTERVAL,
    timeout: float = PORT_WAIT_TIMEOUT,
    *,
    host: str = "localhost",
) -> None:
    """Poll ``host:port`` until a TCP connection succeeds or ``timeout`` elapses."""

    deadline = time.monotonic() + max(timeout, 0.0)
    attempt = 0
    while True:
        attempt += 1
        remaining = deadline - time.monotonic()
        try:
            await _probe(host, port, max(min(_CONNECT_TIMEOUT, remaining), 0.01))
        except (OSError, asyncio.TimeoutError) as exc:
            LOGGER.debug("Port %s not accepting connections yet: %s", port, exc)
        else:
            LOGGER.info(
                "Port %s accepted a connection after %s attempt(s).", port, attempt
            )
            return

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        await asyncio.sleep(min(interval, remaining))

    LOGGER.warning(
        "Timed out waiting for port %s to accept connections after %s attempt(s).",
        port,
        attempt,
    )
    raise PortUnreachable(port, timeout)
