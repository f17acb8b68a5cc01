from .address import Address, parse_address
from .common import AddressError, Constants, ProtocolViolation
from .endpoint import Connection
from .logging import get_logger


LOGGER = get_logger(__name__)


async def read_destination(connection: Connection) -> Address:
    """Reads the address a proxied connection asks to be forwarded to.

    The peer sends the address followed by ``"\\n"``. The connection is read
    one byte at a time so that nothing after the newline is consumed.

    Raises
    ------
    ProtocolViolation
        If the stream ends, fails, or yields ``Constants.MAX_DESTINATION_LENGTH``
        bytes without a newline, or if the line is not a valid address.
    """

    buffer = bytearray()
    while len(buffer) < Constants.MAX_DESTINATION_LENGTH:
        try:
            byte = await connection.read(1)
        except OSError as e:
            raise ProtocolViolation(f"failed reading destination address: {e}") from e

        if byte == b"":
            raise ProtocolViolation("connection closed before destination address was read")

        if byte == b"\n":
            LOGGER.debug("Read destination line of %d bytes.", len(buffer))
            try:
                return parse_address(buffer.decode())
            except (AddressError, UnicodeDecodeError) as e:
                raise ProtocolViolation(f"invalid destination address: {e}") from e

        buffer += byte

    raise ProtocolViolation("did not find expected multiaddr and newline")
