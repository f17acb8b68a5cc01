import asyncio
import os
import socket
import stat
import sys
from typing import BinaryIO, Protocol

from .address import Address, NetworkAddress, ProcessStdio
from .common import Constants, ListenerClosed, NoMoreConnections
from .logging import get_logger


LOGGER = get_logger(__name__)

STDIO = ProcessStdio()


class Connection:

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        local_address: Address,
        remote_address: Address,
    ):
        self.reader = reader
        self.writer = writer
        self.local_address = local_address
        self.remote_address = remote_address
        self._closed = False

    @classmethod
    def from_streams(
        cls,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        fallback: NetworkAddress,
    ) -> "Connection":
        sock = writer.get_extra_info("socket")
        family = sock.family if sock is not None else socket.AF_INET

        def render(sockaddr) -> NetworkAddress:
            if not sockaddr:
                # Unnamed unix socket ends.
                return fallback
            return NetworkAddress.from_socket(sockaddr, family)

        return cls(
            reader,
            writer,
            local_address=render(writer.get_extra_info("sockname")),
            remote_address=render(writer.get_extra_info("peername")),
        )

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, n: int) -> bytes:
        """Reads up to ``n`` bytes, returning ``b""`` at end of stream."""
        return await self.reader.read(n)

    async def write(self, data: bytes):
        self.writer.write(data)
        await self.writer.drain()

    async def close(self):
        """Closes the connection. Only the first call has any effect."""

        if self._closed:
            return
        self._closed = True

        LOGGER.debug("Closing connection %s <-> %s.", self.local_address, self.remote_address)
        await self._close_streams()

    async def _close_streams(self):
        if not self.writer.is_closing():
            self.writer.close()
        try:
            await asyncio.wait_for(self.writer.wait_closed(), Constants.CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            # The peer is not reading what is left in the write buffer.
            LOGGER.debug("Aborting connection %s.", self.remote_address)
            self.writer.transport.abort()
        except OSError as e:
            LOGGER.debug("Connection %s closed with error: %s", self.remote_address, e)


def _is_pipe_like(file: BinaryIO) -> bool:
    """Returns whether asyncio pipe transports can serve ``file``."""
    mode = os.fstat(file.fileno()).st_mode
    return stat.S_ISFIFO(mode) or stat.S_ISSOCK(mode) or stat.S_ISCHR(mode)


class PipeSource:

    def __init__(self, reader: asyncio.StreamReader, transport: asyncio.ReadTransport):
        self._reader = reader
        self._transport = transport

    async def read(self, n: int) -> bytes:
        return await self._reader.read(n)

    def close(self):
        if not self._transport.is_closing():
            self._transport.close()


class PipeSink:

    def __init__(self, writer: asyncio.StreamWriter):
        self._writer = writer

    async def write(self, data: bytes):
        self._writer.write(data)
        await self._writer.drain()

    def close(self):
        # Pipe transports have no close waiter, closing them is enough.
        if not self._writer.is_closing():
            self._writer.close()


class FileSource:
    """Reads a regular file from a worker thread."""

    def __init__(self, file: BinaryIO):
        self._file = file
        self._fd = file.fileno()

    async def read(self, n: int) -> bytes:
        if self._file.closed:
            return b""
        return await asyncio.get_running_loop().run_in_executor(None, os.read, self._fd, n)

    def close(self):
        self._file.close()


class FileSink:
    """Writes a regular file from a worker thread."""

    def __init__(self, file: BinaryIO):
        self._file = file
        self._fd = file.fileno()

    def _write_all(self, data: bytes):
        view = memoryview(data)
        while view:
            n = os.write(self._fd, view)
            view = view[n:]

    async def write(self, data: bytes):
        await asyncio.get_running_loop().run_in_executor(None, self._write_all, data)

    def close(self):
        self._file.close()


class StdioConnection(Connection):
    """The standard input and output of the process as one connection."""

    def __init__(self, source: PipeSource | FileSource, sink: PipeSink | FileSink):
        self.source = source
        self.sink = sink
        self.local_address = STDIO
        self.remote_address = STDIO
        self._closed = False

    async def read(self, n: int) -> bytes:
        return await self.source.read(n)

    async def write(self, data: bytes):
        await self.sink.write(data)

    async def _close_streams(self):
        self.sink.close()
        self.source.close()


async def connect_stdin_stdout(stdin: BinaryIO, stdout: BinaryIO) -> StdioConnection:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)

    if _is_pipe_like(stdin):
        r_transport, _ = await loop.connect_read_pipe(lambda: protocol, stdin)
        source = PipeSource(reader, r_transport)
    else:
        LOGGER.debug("Reading stdin as a regular file.")
        source = FileSource(stdin)

    if _is_pipe_like(stdout):
        w_transport, w_protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, stdout
        )
        sink = PipeSink(asyncio.StreamWriter(w_transport, w_protocol, reader, loop))
    else:
        LOGGER.debug("Writing stdout as a regular file.")
        sink = FileSink(stdout)

    return StdioConnection(source, sink)


class Listener(Protocol):

    @property
    def address(self) -> Address: ...

    async def accept(self) -> Connection: ...

    def close(self): ...


class NetworkListener:

    def __init__(self, requested: NetworkAddress):
        self._requested = requested
        self._address = requested
        self._server: asyncio.Server | None = None
        self._pending: asyncio.Queue[tuple[asyncio.StreamReader, asyncio.StreamWriter] | None] = asyncio.Queue()
        self._closed = False

    @classmethod
    async def open(cls, address: NetworkAddress) -> "NetworkListener":
        listener = cls(address)
        if address.is_unix:
            listener._server = await asyncio.start_unix_server(
                listener._on_connection, address.unix_path
            )
        else:
            listener._server = await asyncio.start_server(
                listener._on_connection, address.host, address.port
            )

        sock = listener._server.sockets[0]
        listener._address = NetworkAddress.from_socket(sock.getsockname(), sock.family)
        return listener

    @property
    def address(self) -> NetworkAddress:
        return self._address

    async def _on_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ):
        if self._closed:
            writer.close()
            return
        await self._pending.put((reader, writer))

    async def accept(self) -> Connection:
        if self._closed:
            raise ListenerClosed()

        streams = await self._pending.get()
        if streams is None:
            raise ListenerClosed()

        reader, writer = streams
        return Connection.from_streams(reader, writer, fallback=self._address)

    def close(self):
        if self._closed:
            return
        self._closed = True

        LOGGER.debug("Closing listener on %s.", self._address)
        if self._server is not None:
            self._server.close()

        # Connections that arrived but were never accepted.
        while not self._pending.empty():
            streams = self._pending.get_nowait()
            if streams is not None:
                streams[1].close()

        # Wakes up a pending accept.
        self._pending.put_nowait(None)


class StdioListener:

    def __init__(self, provider: "EndpointProvider"):
        self._provider = provider
        self._accepted = False

    @property
    def address(self) -> ProcessStdio:
        return STDIO

    async def accept(self) -> Connection:
        # Can only accept once.
        if self._accepted:
            raise NoMoreConnections()
        self._accepted = True
        return await self._provider.stdio_connection()

    def close(self):
        pass


class EndpointProvider:
    """Creates listeners and connections for addresses.

    One provider is created per process. It owns the process stdio endpoint:
    the stdio listener accepts exactly once and dialing stdio always returns
    the same connection.

    Parameters
    ----------
    stdin : BinaryIO | None
        Read side of the stdio endpoint, ``sys.stdin`` if not given.
    stdout : BinaryIO | None
        Write side of the stdio endpoint, ``sys.stdout`` if not given.
    """

    def __init__(self, stdin: BinaryIO | None = None, stdout: BinaryIO | None = None):
        self._stdin = stdin if stdin is not None else sys.stdin
        self._stdout = stdout if stdout is not None else sys.stdout
        self._stdio_connection: StdioConnection | None = None
        self._stdio_lock = asyncio.Lock()
        self._stdio_listener = StdioListener(self)

    async def stdio_connection(self) -> StdioConnection:
        async with self._stdio_lock:
            if self._stdio_connection is None:
                LOGGER.debug("Binding process stdio.")
                self._stdio_connection = await connect_stdin_stdout(self._stdin, self._stdout)
            return self._stdio_connection

    async def listen(self, address: Address) -> Listener:
        match address:
            case ProcessStdio():
                return self._stdio_listener
            case NetworkAddress():
                return await NetworkListener.open(address)
        raise TypeError(f"cannot listen on {address!r}")

    async def dial(self, address: Address) -> Connection:
        match address:
            case ProcessStdio():
                return await self.stdio_connection()
            case NetworkAddress() if address.is_unix:
                reader, writer = await asyncio.open_unix_connection(address.unix_path)
            case NetworkAddress():
                reader, writer = await asyncio.open_connection(address.host, address.port)
            case _:
                raise TypeError(f"cannot dial {address!r}")
        return Connection.from_streams(reader, writer, fallback=address)
