from __future__ import annotations

import asyncio
import re

import pytest

from kube_auth_proxy.errors import PortDiscoveryFailed
from kube_auth_proxy.stream import get_port_from_stream, iter_output_lines, parse_port


class _BrokenStream:
    async def readline(self) -> bytes:
        raise OSError("pipe closed")


def _stream(*chunks: str, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk.encode("utf-8"))
    if eof:
        reader.feed_eof()
    return reader


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_port_is_read_from_first_matching_line() -> None:
    found: list[str] = []
    stream = _stream("noise\n", "starting to serve on 127.0.0.1:8443\n")

    port = await get_port_from_stream(stream, on_find=lambda: found.append("found"))

    assert port == 8443
    assert found == ["found"]


@pytest.mark.anyio
async def test_match_is_case_insensitive() -> None:
    stream = _stream("Starting To Serve On [::1]:39213\n")

    assert await get_port_from_stream(stream) == 39213


@pytest.mark.anyio
async def test_lines_after_match_are_left_unread() -> None:
    stream = _stream(
        "starting to serve on 127.0.0.1:8001\n",
        "starting to serve on 127.0.0.1:9001\n",
        "tail\n",
    )

    assert await get_port_from_stream(stream) == 8001
    assert await stream.readline() == b"starting to serve on 127.0.0.1:9001\n"


@pytest.mark.anyio
async def test_line_split_across_chunks_is_matched() -> None:
    stream = _stream("starting to se", "rve on localhost:", "6001\n")

    assert await get_port_from_stream(stream) == 6001


@pytest.mark.anyio
async def test_stream_end_without_match_fails() -> None:
    found: list[str] = []
    stream = _stream("noise\n", "more noise\n")

    with pytest.raises(PortDiscoveryFailed):
        await get_port_from_stream(stream, on_find=lambda: found.append("found"))
    assert found == []


@pytest.mark.anyio
async def test_read_error_fails_discovery() -> None:
    with pytest.raises(PortDiscoveryFailed):
        await get_port_from_stream(_BrokenStream())


@pytest.mark.anyio
async def test_oversized_line_is_skipped() -> None:
    stream = _stream("x" * 70000 + "\n", "starting to serve on 127.0.0.1:7443\n")

    assert await get_port_from_stream(stream) == 7443


@pytest.mark.anyio
async def test_output_lines_survive_oversized_line() -> None:
    stream = _stream("first\n", "y" * 70000 + "\n", "last\n")

    lines = [line async for line in iter_output_lines(stream)]

    assert lines == ["first", "last"]


@pytest.mark.anyio
async def test_unparsable_address_is_skipped() -> None:
    stream = _stream(
        "starting to serve on unix-socket\n",
        "starting to serve on 127.0.0.1:7443\n",
    )

    assert await get_port_from_stream(stream) == 7443


@pytest.mark.anyio
async def test_custom_pattern_and_line_observer() -> None:
    lines: list[str] = []
    stream = _stream("boot\n", "listening at 0.0.0.0:5000\n")
    regex = re.compile(r"listening at (?P<address>\S+)")

    port = await get_port_from_stream(stream, line_regex=regex, on_line=lines.append)

    assert port == 5000
    assert lines == ["boot", "listening at 0.0.0.0:5000"]


def test_parse_port_rejects_invalid_addresses() -> None:
    assert parse_port("127.0.0.1:8443") == 8443
    with pytest.raises(ValueError):
        parse_port("no-port-here")
    with pytest.raises(ValueError):
        parse_port("127.0.0.1:http")
    with pytest.raises(ValueError):
        parse_port("127.0.0.1:70000")
