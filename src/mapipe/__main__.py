import argparse
import asyncio
import contextlib
import signal
import sys

import tap

from mapipe import __version__
from mapipe.address import parse_address
from mapipe.common import MapipeError
from mapipe.endpoint import EndpointProvider
from mapipe.logging import get_control_logger, get_logger
from mapipe.modes import run_mode
from mapipe.pipe import Opts
from mapipe.trace import PrefixWriter, Trace, open_trace_files
from mapipe.units import parse_bandwidth

LOGGER = get_logger(__name__)

USAGE = """\
USAGE
	mapipe <mode> <multiaddrs>...

	mapipe listen <listen-multiaddr1> <listen-multiaddr2>
	mapipe dial <dial-multiaddr1> <dial-multiaddr2>
	mapipe fwd <listen-multiaddr> <dial-multiaddr>
	mapipe proxy <listen-multiaddr>
"""

EXAMPLES = """\
EXAMPLES
	# listen on two multiaddrs, accept 1 conn each, and pipe them
	mapipe listen /ip4/127.0.0.1/tcp/1234 /ip4/127.0.0.1/tcp/1234

	# dial to both multiaddrs, and pipe them
	mapipe dial /ip4/127.0.0.1/tcp/1234 /ip4/127.0.0.1/tcp/1234

	# listen on one multiaddr, accept 1 conn, dial to the other, and pipe them
	mapipe fwd /ip4/127.0.0.1/tcp/1234 /ip4/127.0.0.1/tcp/1234

	# listen on one multiaddr, accept 1 conn.
	# read the first line, parse a multiaddr, dial that multiaddr, and pipe them
	mapipe proxy /ip4/127.0.0.1/tcp/1234

	# mapipe supports "zero" listen multiaddrs
	mapipe proxy /ip4/0.0.0.0/tcp/0

	# mapipe supports the /unix/stdio multiaddr
	mapipe fwd /unix/stdio /ip4/127.0.0.1/tcp/1234

	# mapipe supports the --tee option to inspect conn in stdio
	mapipe --tee fwd /ip4/0.0.0.0/tcp/0 /ip4/127.0.0.1/tcp/1234

	# mapipe allows throttling connections with a bandwidth max
	mapipe --bandwidth 1MB/s listen /ip4/127.0.0.1/tcp/1234 /ip4/127.0.0.1/tcp/1234
"""


class Args(tap.Tap):

    mode: str | None = None
    """One of listen, dial, fwd or proxy."""

    addrs: list[str] = []
    """Multiaddrs to listen on or dial."""

    trace: str | None = None
    """Save a trace of the connection to this directory."""

    tee: bool = False
    """Tee the connection to stdio."""

    bandwidth: str = ""
    """Introduce a bandwidth cap (eg 1MB/s)."""

    version: bool = False
    """Display the version of the program."""

    def configure(self):
        self.add_argument("mode", nargs="?")
        self.add_argument("addrs", nargs="*")
        self.add_argument("-t", "--trace")
        self.add_argument("-e", "--tee")
        self.add_argument("-v", "--version")


def build_trace(args: Args, stack: contextlib.ExitStack) -> Trace:
    if args.tee:
        trace = Trace(
            control=get_control_logger(prefix="# "),
            a2b=PrefixWriter(sys.stdout.buffer, "> "),
            b2a=PrefixWriter(sys.stdout.buffer, "< "),
        )
    else:
        trace = Trace(control=get_control_logger())

    if args.trace:
        open_trace_files(trace, args.trace, stack)
    return trace


async def main(args: Args) -> int:
    if args.version:
        print("mapipe", __version__)
        return 0

    # <mode> <addrs>+
    if args.mode is None or not args.addrs:
        print(USAGE, file=sys.stderr)
        print("error: not enough arguments", file=sys.stderr)
        return 1

    with contextlib.ExitStack() as stack:
        trace = build_trace(args, stack)
        try:
            addresses = [parse_address(addr) for addr in args.addrs]
            opts = Opts(trace=trace, max_bandwidth=parse_bandwidth(args.bandwidth))

            # When SIGPIPE is received, end the pipe gracefully instead of
            # having the output cut.
            cancel = asyncio.Event()

            def on_sigpipe():
                trace.control.info("received SIGPIPE, closing...")
                cancel.set()

            loop = asyncio.get_running_loop()
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(signal.SIGPIPE, on_sigpipe)

            await run_mode(EndpointProvider(), args.mode, addresses, opts, cancel)
        except (MapipeError, OSError) as e:
            LOGGER.debug("Mode %s failed.", args.mode, exc_info=True)
            trace.control.info("error: %s", e)
            return 1

    return 0


def cli():
    args = Args(
        underscores_to_dashes=True,
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    ).parse_args()
    sys.exit(asyncio.run(main(args)))


if __name__ == "__main__":
    cli()
