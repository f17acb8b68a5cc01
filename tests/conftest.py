"""Shared test fixtures for mapipe."""

import asyncio
import io
import logging
import socket
from collections.abc import AsyncIterator, Iterator

import pytest

from mapipe.address import parse_address
from mapipe.endpoint import Connection, EndpointProvider
from mapipe.trace import Trace

Peer = tuple[asyncio.StreamReader, asyncio.StreamWriter]


class RecordingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord):
        self.records.append(record)

    def messages(self) -> list[str]:
        return [record.getMessage() for record in self.records]

    async def wait_for(self, prefix: str, count: int = 1) -> list[logging.LogRecord]:
        while True:
            matches = [r for r in self.records if r.getMessage().startswith(prefix)]
            if len(matches) >= count:
                return matches
            await asyncio.sleep(0.01)


@pytest.fixture()
def control() -> Iterator[RecordingHandler]:
    logger = logging.getLogger("mapipe.test.control")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    handler = RecordingHandler()
    logger.addHandler(handler)
    yield handler
    logger.removeHandler(handler)


@pytest.fixture()
def trace(control: RecordingHandler) -> Trace:
    return Trace(
        control=logging.getLogger("mapipe.test.control"),
        a2b=io.BytesIO(),
        b2a=io.BytesIO(),
    )


@pytest.fixture()
def provider() -> EndpointProvider:
    return EndpointProvider()


async def open_pair() -> tuple[Connection, Peer]:
    """Returns an accepted connection and the streams of the peer that dialed it."""
    listener = await EndpointProvider().listen(parse_address("/ip4/127.0.0.1/tcp/0"))
    peer = await asyncio.open_connection("127.0.0.1", listener.address.port)
    connection = await listener.accept()
    listener.close()
    return connection, peer


class Upstream:
    """A TCP server handing its accepted connections to the test."""

    def __init__(self):
        self.accepted: asyncio.Queue[Peer] = asyncio.Queue()
        self.server: asyncio.Server | None = None

    async def _on_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        await self.accepted.put((reader, writer))

    @property
    def port(self) -> int:
        return self.server.sockets[0].getsockname()[1]

    @property
    def address(self) -> str:
        return f"/ip4/127.0.0.1/tcp/{self.port}"

    async def next(self) -> Peer:
        return await asyncio.wait_for(self.accepted.get(), 5)


@pytest.fixture()
async def upstream() -> AsyncIterator[Upstream]:
    upstream = Upstream()
    upstream.server = await asyncio.start_server(upstream._on_connection, "127.0.0.1", 0)
    yield upstream
    upstream.server.close()


@pytest.fixture()
async def other_upstream() -> AsyncIterator[Upstream]:
    upstream = Upstream()
    upstream.server = await asyncio.start_server(upstream._on_connection, "127.0.0.1", 0)
    yield upstream
    upstream.server.close()


@pytest.fixture()
def unused_address() -> str:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"/ip4/127.0.0.1/tcp/{port}"
