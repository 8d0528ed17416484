from __future__ import annotations

import asyncio
import logging
import re
from typing import AsyncIterator, Callable, Optional, Pattern, Protocol

from .config import STARTING_SERVE_PATTERN
from .errors import PortDiscoveryFailed

LOGGER = logging.getLogger("KubeAuthProxy.Stream")

STARTING_SERVE_REGEX = re.compile(STARTING_SERVE_PATTERN, re.IGNORECASE)


class LineReader(Protocol):
    async def readline(self) -> bytes: ...


def parse_port(address: str) -> int:
    """Return the trailing ``:<port>`` segment of ``address`` as an integer."""

    _, separator, port_text = address.strip().rpartition(":")
    if not separator:
        raise ValueError(f"Address '{address}' has no port segment")
    port = int(port_text)
    if not 0 < port < 65536:
        raise ValueError(f"Port {port} is out of range")
    return port


async def get_port_from_stream(
    stream: LineReader,
    *,
    line_regex: Pattern[str] = STARTING_SERVE_REGEX,
    on_find: Optional[Callable[[], None]] = None,
    on_line: Optional[Callable[[str], None]] = None,
) -> int:
    """Read ``stream`` until a line matches ``line_regex`` and return its port.

    The regex must define an ``address`` group. Reading stops at the first
    match so later output stays on the stream for other consumers.
    """

    while True:
        try:
            raw = await stream.readline()
        except ValueError as exc:
            # readline discards the oversized line before raising.
            LOGGER.warning("Skipping oversized proxy output line: %s", exc)
            continue
        except (OSError, asyncio.IncompleteReadError) as exc:
            raise PortDiscoveryFailed(f"Failed to read proxy output: {exc}") from exc

        if not raw:
            raise PortDiscoveryFailed("Proxy output ended before a port was announced")

        line = raw.decode("utf-8", errors="replace").rstrip()
        if on_line is not None:
            on_line(line)

        match = line_regex.search(line)
        if match is None:
            continue

        try:
            port = parse_port(match.group("address"))
        except ValueError as exc:
            LOGGER.warning("Ignoring serve announcement '%s': %s", line, exc)
            continue

        if on_find is not None:
            on_find()
        return port


async def iter_output_lines(stream: LineReader) -> AsyncIterator[str]:
    """Yield decoded, right-stripped lines until EOF.

    Lines longer than the reader's buffer limit are dropped with a warning
    instead of ending the iteration. Read errors propagate.
    """

    while True:
        try:
            raw = await stream.readline()
        except ValueError as exc:
            LOGGER.warning("Dropping oversized proxy output line: %s", exc)
            continue
        if not raw:
            return
        yield raw.decode("utf-8", errors="replace").rstrip()
