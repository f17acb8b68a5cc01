import asyncio


class MapipeError(Exception):
    def __init__(self, msg: str):
        super().__init__(msg)
        self._msg = msg

    @property
    def message(self) -> str:
        return self._msg


class AddressError(MapipeError):
    """Raised when a textual address cannot be turned into an Address."""


class BandwidthError(MapipeError):
    def __init__(self, msg: str = "Invalid bandwidth. Must of the form: 10MBps, 1Kbps, 1GB/s, ..."):
        super().__init__(msg)


class UsageError(MapipeError):
    pass


class NoMoreConnections(MapipeError):
    def __init__(self, msg: str = "no more connections"):
        super().__init__(msg)


class ListenerClosed(MapipeError):
    def __init__(self, msg: str = "listener closed"):
        super().__init__(msg)


class ProtocolViolation(MapipeError):
    """Raised when a peer does not send a newline terminated address."""


class ShortWriteError(MapipeError):
    def __init__(self, msg: str = "short write"):
        super().__init__(msg)


class TransferCancelled(MapipeError):
    def __init__(self, msg: str = "transfer cancelled"):
        super().__init__(msg)


class Constants:

    # Destination discovery reads at most this many bytes looking for "\n".
    MAX_DESTINATION_LENGTH = 2048

    # Chunk size of an unlimited copy, in bytes.
    COPY_CHUNK_SIZE = 32 * 1024

    # Seconds a closing connection may spend flushing before it is aborted.
    CLOSE_TIMEOUT = 1.0

    STDIO_ADDRESS = "/unix/stdio"


def is_benign(error: BaseException | None) -> bool:
    """Returns whether a transfer that ended with ``error`` ended normally.

    End of stream (``EOFError`` and ``asyncio.IncompleteReadError``) and
    cancellation do not count as failures of a session.
    """

    return error is None or isinstance(
        error, (EOFError, TransferCancelled, asyncio.CancelledError)
    )
