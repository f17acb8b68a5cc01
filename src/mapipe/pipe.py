import asyncio
import dataclasses
import time

from .address import Address
from .common import Constants, ShortWriteError, TransferCancelled, is_benign
from .endpoint import Connection
from .logging import get_logger
from .trace import Trace, Writable
from .units import format_bandwidth


LOGGER = get_logger(__name__)


@dataclasses.dataclass(slots=True)
class Opts:
    trace: Trace = dataclasses.field(default_factory=Trace)
    max_bandwidth: int = 0
    """Bytes per second in each direction, 0 for unlimited."""


@dataclasses.dataclass(slots=True)
class Transfer:
    """Outcome of copying one direction of a pipe."""

    source: Address
    destination: Address
    written: int = 0
    error: BaseException | None = None

    @property
    def failed(self) -> bool:
        return not is_benign(self.error)


async def rate_limited_copy(
    transfer: Transfer,
    dst: Connection,
    src: Connection,
    mirror: Writable,
    *,
    max_bandwidth: int,
    stop: asyncio.Event,
):
    """Copies ``src`` into ``dst`` and ``mirror`` until end of stream.

    With a ``max_bandwidth`` above zero, each read is at most one second's
    worth of bytes, and after every write the copy sleeps until the average
    rate since the start of the copy is back at ``max_bandwidth``.

    Raises
    ------
    TransferCancelled
        If ``stop`` is set while the copy is running.
    ShortWriteError
        If ``mirror`` accepts fewer bytes than it was given.
    """

    limited = max_bandwidth > 0
    chunk_size = max_bandwidth if limited else Constants.COPY_CHUNK_SIZE
    tstart = time.monotonic()

    while True:
        data = await src.read(chunk_size)
        if stop.is_set():
            raise TransferCancelled()
        if not data:
            return

        await dst.write(data)
        transfer.written += len(data)

        n = mirror.write(data)
        if n is not None and n != len(data):
            raise ShortWriteError()

        if limited:
            telapsed = time.monotonic() - tstart
            texpected = transfer.written / max_bandwidth
            if texpected > telapsed:
                await asyncio.sleep(texpected - telapsed)


async def pipe_connections(
    a: Connection,
    b: Connection,
    opts: Opts,
    cancel: asyncio.Event | None = None,
):
    """Copies bytes between ``a`` and ``b`` in both directions.

    The pipe ends as soon as either direction ends: both connections are then
    closed, which also ends the other direction. Setting ``cancel`` ends the
    pipe the same way. Both connections are closed on return.

    Raises
    ------
    BaseException
        The first error that ended a direction other than by end of stream
        or cancellation, checking A before B.
    """

    if a is None or b is None:
        raise ValueError("attempt to pipe a missing connection")

    control = opts.trace.control
    control.info("piping %s <--> %s", a.remote_address, b.remote_address)
    if opts.max_bandwidth > 0:
        control.info("rate-limiting to %s", format_bandwidth(opts.max_bandwidth))

    stop = asyncio.Event()
    results: asyncio.Queue[Transfer] = asyncio.Queue(maxsize=2)

    async def transmit(transfer: Transfer, dst: Connection, src: Connection, mirror: Writable):
        try:
            await rate_limited_copy(
                transfer, dst, src, mirror, max_bandwidth=opts.max_bandwidth, stop=stop
            )
        except Exception as e:
            if stop.is_set() and not isinstance(e, TransferCancelled):
                LOGGER.debug("Ignoring error after cancellation: %r", e)
                e = TransferCancelled()
            transfer.error = e
        await results.put(transfer)

    async def close_on_stop():
        waiters = [asyncio.create_task(stop.wait())]
        if cancel is not None:
            waiters.append(asyncio.create_task(cancel.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        stop.set()
        await a.close()
        await b.close()

    a_to_b = Transfer(source=b.remote_address, destination=a.remote_address)
    b_to_a = Transfer(source=a.remote_address, destination=b.remote_address)

    tasks = [
        asyncio.create_task(transmit(a_to_b, a, b, opts.trace.a2b)),
        asyncio.create_task(transmit(b_to_a, b, a, opts.trace.b2a)),
    ]
    watcher = asyncio.create_task(close_on_stop())

    def print_result(transfer: Transfer):
        control.info(
            "wrote %d bytes from %s to %s",
            transfer.written,
            transfer.source,
            transfer.destination,
        )
        if transfer.failed:
            control.info("%s connection failed: %s", transfer.source, transfer.error)

    try:
        print_result(await results.get())
        # Stop when any side closes, like nc does.
        stop.set()
        print_result(await results.get())
        await watcher
    finally:
        stop.set()
        await asyncio.gather(*tasks, watcher, return_exceptions=True)
        await a.close()
        await b.close()

    for transfer in (a_to_b, b_to_a):
        if transfer.failed:
            raise transfer.error
