"""The four ways of establishing the two connections of a pipe.

Every mode ends by piping the two connections. On failure, everything the
mode opened is closed before the error propagates.
"""

import asyncio

from .address import Address
from .common import UsageError
from .discovery import read_destination
from .endpoint import Connection, EndpointProvider, Listener
from .logging import get_logger
from .pipe import Opts, pipe_connections


LOGGER = get_logger(__name__)

MODE_ARITY = {
    "listen": 2,
    "dial": 2,
    "fwd": 2,
    "proxy": 1,
}


async def _close_all(*connections: Connection | None):
    for connection in connections:
        if connection is not None:
            await connection.close()


async def _accept_one_then_close(listener: Listener, opts: Opts) -> Connection:
    try:
        connection = await listener.accept()
    finally:
        listener.close()
    opts.trace.control.info("accepted %s %s", connection.local_address, connection.remote_address)
    return connection


async def _dial(provider: EndpointProvider, address: Address, opts: Opts) -> Connection:
    opts.trace.control.info("dialing %s", address)
    connection = await provider.dial(address)
    opts.trace.control.info("dialed %s %s", connection.local_address, connection.remote_address)
    return connection


async def _listen(provider: EndpointProvider, address: Address, opts: Opts) -> Listener:
    listener = await provider.listen(address)
    opts.trace.control.info("listening on %s", listener.address)
    return listener


async def listen_pipe(
    provider: EndpointProvider,
    l1: Address,
    l2: Address,
    opts: Opts,
    cancel: asyncio.Event | None = None,
):
    """Listens on both addresses, accepts one connection each, and pipes them."""

    list1 = await _listen(provider, l1, opts)
    try:
        list2 = await _listen(provider, l2, opts)
    except BaseException:
        list1.close()
        raise

    listeners = (list1, list2)
    results: asyncio.Queue[tuple[int, Connection | None, BaseException | None]] = asyncio.Queue(maxsize=2)

    async def accept(index: int):
        try:
            connection = await _accept_one_then_close(listeners[index], opts)
        except Exception as e:
            # The other accept cannot complete the pipe anymore.
            listeners[1 - index].close()
            await results.put((index, None, e))
        else:
            await results.put((index, connection, None))

    tasks = [asyncio.create_task(accept(0)), asyncio.create_task(accept(1))]

    connections: list[Connection | None] = [None, None]
    error: BaseException | None = None
    try:
        for _ in range(2):
            index, connection, e = await results.get()
            connections[index] = connection
            if error is None:
                error = e
    except BaseException:
        for listener in listeners:
            listener.close()
        await asyncio.gather(*tasks, return_exceptions=True)
        await _close_all(*connections)
        raise

    if error is not None:
        await _close_all(*connections)
        raise error

    c1, c2 = connections
    await pipe_connections(c1, c2, opts, cancel)


async def dial_pipe(
    provider: EndpointProvider,
    d1: Address,
    d2: Address,
    opts: Opts,
    cancel: asyncio.Event | None = None,
):
    """Dials both addresses, in order, and pipes them."""

    c1 = await _dial(provider, d1, opts)
    try:
        c2 = await _dial(provider, d2, opts)
    except BaseException:
        await c1.close()
        raise

    await pipe_connections(c1, c2, opts, cancel)


async def forward_pipe(
    provider: EndpointProvider,
    l: Address,
    d: Address,
    opts: Opts,
    cancel: asyncio.Event | None = None,
):
    """Listens on ``l``, accepts one connection, dials ``d``, and pipes them."""

    listener = await _listen(provider, l, opts)
    c1 = await _accept_one_then_close(listener, opts)
    try:
        c2 = await _dial(provider, d, opts)
    except BaseException:
        await c1.close()
        raise

    await pipe_connections(c1, c2, opts, cancel)


async def proxy_pipe(
    provider: EndpointProvider,
    l: Address,
    opts: Opts,
    cancel: asyncio.Event | None = None,
):
    """Listens on ``l``, accepts one connection, reads the address to dial
    from its first line, dials it, and pipes them."""

    listener = await _listen(provider, l, opts)
    c1 = await _accept_one_then_close(listener, opts)
    try:
        d = await read_destination(c1)
        opts.trace.control.info("requested proxy to %s", d)
        c2 = await _dial(provider, d, opts)
    except BaseException:
        await c1.close()
        raise

    await pipe_connections(c1, c2, opts, cancel)


async def run_mode(
    provider: EndpointProvider,
    mode: str,
    addresses: list[Address],
    opts: Opts,
    cancel: asyncio.Event | None = None,
):
    if mode not in MODE_ARITY:
        raise UsageError(f"invalid mode {mode}")

    arity = MODE_ARITY[mode]
    if len(addresses) != arity:
        noun = "multiaddr" if arity == 1 else "multiaddrs"
        raise UsageError(f"{mode} mode takes exactly {arity} {noun}")

    LOGGER.debug("Running %s mode with %s.", mode, ", ".join(str(a) for a in addresses))

    if mode == "listen":
        await listen_pipe(provider, addresses[0], addresses[1], opts, cancel)
    elif mode == "dial":
        await dial_pipe(provider, addresses[0], addresses[1], opts, cancel)
    elif mode == "fwd":
        await forward_pipe(provider, addresses[0], addresses[1], opts, cancel)
    else:
        await proxy_pipe(provider, addresses[0], opts, cancel)
