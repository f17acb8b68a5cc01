from .address import Address, NetworkAddress, ProcessStdio, parse_address
from .endpoint import Connection, EndpointProvider
from .modes import dial_pipe, forward_pipe, listen_pipe, proxy_pipe, run_mode
from .pipe import Opts, pipe_connections
from .trace import Trace

__version__ = "1.0.0"

__all__ = [
    "Address",
    "Connection",
    "EndpointProvider",
    "NetworkAddress",
    "Opts",
    "ProcessStdio",
    "Trace",
    "dial_pipe",
    "forward_pipe",
    "listen_pipe",
    "parse_address",
    "pipe_connections",
    "proxy_pipe",
    "run_mode",
]
