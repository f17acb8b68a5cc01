import humanfriendly

from .common import BandwidthError


def parse_bandwidth(text: str) -> int:
    """Parses a bandwidth of the form ``<size>/s`` or ``<size>ps`` into bytes per second.

    An empty string means no limit and parses to 0. Sizes use decimal units
    (``10MBps`` is 10,000,000 bytes per second) unless a binary unit such as
    ``KiB`` is given.
    """

    if text == "":
        return 0
    if len(text) < 4:
        raise BandwidthError()
    if text[-1] != "s":
        raise BandwidthError()
    if text[-2] not in ("/", "p"):
        raise BandwidthError()

    try:
        return humanfriendly.parse_size(text[:-2])
    except humanfriendly.InvalidSize as e:
        raise BandwidthError() from e


def format_bandwidth(bytes_per_second: int) -> str:
    return f"{humanfriendly.format_size(bytes_per_second)}/s"
