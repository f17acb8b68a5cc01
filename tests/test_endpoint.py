import asyncio
import os
from pathlib import Path

import pytest

from mapipe.address import ProcessStdio, parse_address
from mapipe.common import ListenerClosed, NoMoreConnections
from mapipe.endpoint import EndpointProvider, StdioConnection

from .conftest import open_pair


@pytest.fixture()
def stdio_pipes():
    """A provider whose stdio are pipes, with the test's ends of the pipes."""
    stdin_r, stdin_w = os.pipe()
    stdout_r, stdout_w = os.pipe()
    provider = EndpointProvider(
        stdin=open(stdin_r, "rb", buffering=0),
        stdout=open(stdout_w, "wb", buffering=0),
    )
    yield provider, stdin_w, stdout_r
    for fd in (stdin_w, stdout_r):
        try:
            os.close(fd)
        except OSError:
            pass


async def test_stdio_listener_accepts_once(stdio_pipes):
    provider, _, _ = stdio_pipes
    listener = await provider.listen(ProcessStdio())
    assert listener.address == ProcessStdio()

    connection = await listener.accept()
    assert isinstance(connection, StdioConnection)
    assert connection.local_address == ProcessStdio()
    assert connection.remote_address == ProcessStdio()

    with pytest.raises(NoMoreConnections, match="no more connections"):
        await listener.accept()

    listener.close()
    await connection.close()


async def test_stdio_dial_returns_the_same_connection(stdio_pipes):
    provider, _, _ = stdio_pipes
    first = await provider.dial(ProcessStdio())
    second = await provider.dial(ProcessStdio())
    assert first is second
    await first.close()


async def test_stdio_connection_reads_stdin_and_writes_stdout(stdio_pipes):
    provider, stdin_w, stdout_r = stdio_pipes
    connection = await provider.dial(ProcessStdio())

    os.write(stdin_w, b"ping")
    assert await connection.read(4) == b"ping"

    await connection.write(b"pong")
    assert os.read(stdout_r, 4) == b"pong"

    await connection.close()
    await connection.close()
    await asyncio.sleep(0.05)

    # The write side of stdout was closed.
    assert os.read(stdout_r, 1) == b""


async def test_network_listener_reports_bound_port(provider: EndpointProvider):
    listener = await provider.listen(parse_address("/ip4/127.0.0.1/tcp/0"))
    try:
        assert listener.address.host == "127.0.0.1"
        assert listener.address.port != 0
    finally:
        listener.close()


async def test_closed_listener_refuses_connections(provider: EndpointProvider):
    listener = await provider.listen(parse_address("/ip4/127.0.0.1/tcp/0"))
    port = listener.address.port

    _, writer = await asyncio.open_connection("127.0.0.1", port)
    connection = await listener.accept()
    listener.close()
    listener.close()

    with pytest.raises(OSError):
        await asyncio.open_connection("127.0.0.1", port)

    with pytest.raises(ListenerClosed):
        await listener.accept()

    await connection.close()
    writer.close()


async def test_close_wakes_up_pending_accept(provider: EndpointProvider):
    listener = await provider.listen(parse_address("/ip4/127.0.0.1/tcp/0"))
    accept = asyncio.create_task(listener.accept())
    await asyncio.sleep(0.01)

    listener.close()

    with pytest.raises(ListenerClosed):
        await asyncio.wait_for(accept, 5)


async def test_connection_addresses(provider: EndpointProvider):
    listener = await provider.listen(parse_address("/ip4/127.0.0.1/tcp/0"))
    dialed = await provider.dial(listener.address)
    accepted = await listener.accept()
    listener.close()

    assert dialed.remote_address == listener.address
    assert accepted.local_address == listener.address
    assert accepted.remote_address == dialed.local_address

    await dialed.close()
    await accepted.close()


async def test_close_is_idempotent():
    connection, (reader, writer) = await open_pair()

    await connection.close()
    await connection.close()
    await asyncio.gather(connection.close(), connection.close())

    assert connection.closed
    assert await asyncio.wait_for(reader.read(), 5) == b""
    writer.close()


async def test_concurrent_closes_close_once(monkeypatch: pytest.MonkeyPatch):
    connection, (_, writer) = await open_pair()
    calls = []
    original = connection._close_streams

    async def counting_close():
        calls.append(1)
        await original()

    monkeypatch.setattr(connection, "_close_streams", counting_close)
    await asyncio.gather(*(connection.close() for _ in range(5)))

    assert calls == [1]
    writer.close()


async def test_read_returns_empty_at_end_of_stream():
    connection, (_, writer) = await open_pair()
    writer.write(b"last words")
    await writer.drain()
    writer.close()

    assert await connection.read(1024) == b"last words"
    assert await connection.read(1024) == b""
    await connection.close()


async def test_unix_socket_listen_and_dial(provider: EndpointProvider, tmp_path: Path):
    address = parse_address(f"/unix{tmp_path}/mapipe.sock")
    listener = await provider.listen(address)

    dialed = await provider.dial(address)
    accepted = await listener.accept()
    listener.close()

    await dialed.write(b"over unix")
    assert await accepted.read(9) == b"over unix"

    await dialed.close()
    await accepted.close()


async def test_stdio_over_regular_files(tmp_path: Path):
    stdin_path = tmp_path / "in.bin"
    stdout_path = tmp_path / "out.bin"
    stdin_path.write_bytes(b"from a file")

    provider = EndpointProvider(
        stdin=open(stdin_path, "rb"),
        stdout=open(stdout_path, "wb"),
    )
    connection = await provider.dial(ProcessStdio())
    assert isinstance(connection, StdioConnection)
    assert connection.local_address == ProcessStdio()
    assert connection.remote_address == ProcessStdio()

    received = b""
    while chunk := await connection.read(4):
        received += chunk
    assert received == b"from a file"

    await connection.write(b"to a file")
    await connection.close()
    await connection.close()

    assert connection.closed
    assert await connection.read(4) == b""
    assert stdout_path.read_bytes() == b"to a file"


async def test_stdio_listener_over_regular_files(tmp_path: Path):
    stdin_path = tmp_path / "in.bin"
    stdin_path.write_bytes(b"")
    provider = EndpointProvider(
        stdin=open(stdin_path, "rb"),
        stdout=open(tmp_path / "out.bin", "wb"),
    )
    listener = await provider.listen(ProcessStdio())

    connection = await listener.accept()
    assert await connection.read(16) == b""

    with pytest.raises(NoMoreConnections):
        await listener.accept()
    await connection.close()
