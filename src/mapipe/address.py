"""Addresses understood by mapipe.

An address is either a network endpoint written as a multiaddr, or the
reserved ``/unix/stdio`` address standing for the standard input and output
of the running process.
"""

import dataclasses
import socket
from typing import Union

from multiaddr import Multiaddr
from multiaddr import exceptions as multiaddr_exceptions

from .common import AddressError, Constants


_HOST_PROTOCOLS = ("ip4", "ip6", "dns", "dns4", "dns6")


@dataclasses.dataclass(frozen=True, slots=True)
class ProcessStdio:
    def __str__(self) -> str:
        return Constants.STDIO_ADDRESS


@dataclasses.dataclass(frozen=True, slots=True)
class NetworkAddress:
    multiaddr: Multiaddr

    def __str__(self) -> str:
        return str(self.multiaddr)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NetworkAddress):
            return NotImplemented
        return str(self.multiaddr) == str(other.multiaddr)

    def __hash__(self) -> int:
        return hash(str(self.multiaddr))

    @property
    def protocols(self) -> list[str]:
        return [protocol.name for protocol in self.multiaddr.protocols()]

    @property
    def is_unix(self) -> bool:
        return "unix" in self.protocols

    @property
    def unix_path(self) -> str:
        return self.multiaddr.value_for_protocol("unix")

    @property
    def host(self) -> str:
        for name in self.protocols:
            if name in _HOST_PROTOCOLS:
                return self.multiaddr.value_for_protocol(name)
        raise AddressError(f"{self} does not name a host")

    @property
    def port(self) -> int:
        return int(self.multiaddr.value_for_protocol("tcp"))

    @classmethod
    def from_socket(cls, sockaddr, family: int) -> "NetworkAddress":
        """Builds the address of a bound or connected socket.

        Parameters
        ----------
        sockaddr
            The value of ``getsockname()`` or ``getpeername()``.
        family : int
            The address family of the socket.
        """

        if family == socket.AF_UNIX:
            if isinstance(sockaddr, bytes):
                sockaddr = sockaddr.decode()
            return cls(Multiaddr(f"/unix{sockaddr}"))
        if family == socket.AF_INET6:
            return cls(Multiaddr(f"/ip6/{sockaddr[0]}/tcp/{sockaddr[1]}"))
        return cls(Multiaddr(f"/ip4/{sockaddr[0]}/tcp/{sockaddr[1]}"))


Address = Union[NetworkAddress, ProcessStdio]


def parse_address(text: str) -> Address:
    """Parses a textual address.

    Raises
    ------
    AddressError
        If ``text`` is not a multiaddr, or names a transport that cannot be
        listened on or dialed (only tcp and unix are).
    """

    if text == Constants.STDIO_ADDRESS:
        return ProcessStdio()

    try:
        multiaddr = Multiaddr(text)
    except (ValueError, multiaddr_exceptions.Error) as e:
        raise AddressError(f"invalid address {text!r}: {e}") from e

    address = NetworkAddress(multiaddr)
    names = address.protocols

    if names == ["unix"]:
        return address
    if len(names) == 2 and names[0] in _HOST_PROTOCOLS and names[1] == "tcp":
        return address

    raise AddressError(f"unsupported address {text!r}: only tcp and unix transports are supported")
