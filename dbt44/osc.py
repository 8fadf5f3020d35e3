#!/usr/bin/env python3
"""
DBT-44 OSC Infrastructure - Wire codec, frame scanning and UDP helpers.

The DBT-44 speaks plain OSC over UDP, with two quirks:
- Every address ends with /<device_name> (the identifier set on the unit).
- Replies to /ping come back as "path-only" frames: a padded address string
  with no type-tag section at all.

Messages are built with python-osc's OscMessageBuilder and arguments are
decoded by python-osc's OscMessage. Frame boundaries are found here, since the
bridge reassembles a byte stream that can hold partial, multiple or bundled
frames.

Classes:
    - OscMessage: Decoded message (address + argument list)
    - OscBundle: Decoded one-level bundle (list of OscMessage)
    - OscError, OscDecodeError, IncompleteFrameError, OscEncodeError

Functions:
    - encode_message(path, args): Build a binary OSC message
    - decode(data): Decode the first frame in a buffer
    - frame_length(data): Length of the first frame, raises on failure
    - message_byte_length(data): Length of the first frame, never raises
    - path_only_frame_length(data): Length of a leading path-only frame
    - bind_udp_socket(port): Non-blocking UDP socket with address reuse
    - validate_port(port): Validate port in range 1-65535

Constants:
    - DEFAULT_TARGET_PORT: Device receives commands (9000)
    - DEFAULT_FEEDBACK_PORT: Bridge receives replies (9001)
    - CAPTURE_PORT: Capture tool listens here (9002)
    - NUM_INPUTS, NUM_OUTPUTS: Matrix size (8 x 8)
    - GAIN_MIN_DB, GAIN_MAX_DB, MUTED_GAIN_DB: Gain bounds in dB
    - MAX_FRAME_SIZE: Largest frame the scanner will wait for (65507)
"""

import socket
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Union

from pythonosc import osc_bundle, osc_message, osc_message_builder
from pythonosc.parsing import osc_types

from dbt44.log import get_logger

logger = get_logger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

# UDP port allocation (DBT-44 defaults)
DEFAULT_TARGET_PORT = 9000     # Device listens for commands
DEFAULT_FEEDBACK_PORT = 9001   # Device sends replies, bridge listens
CAPTURE_PORT = 9002            # Capture tool, so it can run next to a live bridge

# Matrix size: 1-4 Analog, 5-8 Dante on both sides
NUM_INPUTS = 8
NUM_OUTPUTS = 8

# Gain range in dB. -120 is the crosspoint "muted" sentinel.
GAIN_MIN_DB = -120.0
GAIN_MAX_DB = 10.0
GAIN_STEP_DB = 0.5
MUTED_GAIN_DB = GAIN_MIN_DB

# Logical paths (device name is appended on the wire)
OSC_PATH_PING = "/ping"
OSC_PATH_SYNC = "/sync"

# Port validation range
PORT_MIN = 1
PORT_MAX = 65535

# Largest UDP payload over IPv4; no frame from the device can be longer
MAX_FRAME_SIZE = 65507

_BUNDLE_PREFIX = b"#bundle\x00"
_BUNDLE_HEADER_SIZE = 16  # "#bundle\0" + 8-byte timetag
_ALIGN = 4

# Payload sizes for fixed-width argument types
_FIXED_ARG_SIZES = {
    'i': 4, 'f': 4, 'c': 4, 'r': 4, 'm': 4,
    'h': 8, 'd': 8, 't': 8,
}
_STRING_ARG_TYPES = frozenset('sS')
_EMPTY_ARG_TYPES = frozenset('TFNI[]')


# ============================================================================
# ERRORS AND DECODED PACKETS
# ============================================================================

class OscError(Exception):
    """Base class for OSC codec errors."""


class OscDecodeError(OscError):
    """Buffer does not start with a decodable OSC frame."""


class IncompleteFrameError(OscDecodeError):
    """Buffer holds the beginning of a frame; more bytes may complete it."""


class OscEncodeError(OscError):
    """Message could not be encoded (bad address or argument type)."""


@dataclass
class OscMessage:
    """A decoded OSC message."""
    address: str
    args: List[Any] = field(default_factory=list)


@dataclass
class OscBundle:
    """A decoded bundle. Only one level is supported; nested bundles are skipped."""
    messages: List[OscMessage] = field(default_factory=list)


OscPacket = Union[OscMessage, OscBundle]


# ============================================================================
# ENCODING
# ============================================================================

def encode_message(path: str, args: Sequence[Any] = ()) -> bytes:
    """Encode an OSC message.

    Numbers are sent as float32 ('f'). Booleans become the 'T'/'F' type tags,
    which carry no payload. With no arguments the type-tag string is just ','.

    Args:
        path: Full OSC address (e.g. "/gain/output/1/dbt44-device")
        args: Argument values (bool, int or float)

    Returns:
        Binary OSC message

    Raises:
        OscEncodeError: Empty address or unsupported argument type

    Examples:
        >>> encode_message("/sync/unit1")
        b'/sync/unit1\\x00,\\x00\\x00\\x00'
    """
    if not path or not path.startswith('/'):
        raise OscEncodeError(f"Invalid OSC address: {path!r}")

    builder = osc_message_builder.OscMessageBuilder(address=path)
    for arg in args:
        # bool first: bool is a subclass of int
        if isinstance(arg, bool):
            arg_type = builder.ARG_TYPE_TRUE if arg else builder.ARG_TYPE_FALSE
            builder.add_arg(arg, arg_type)
        elif isinstance(arg, (int, float)):
            builder.add_arg(float(arg), builder.ARG_TYPE_FLOAT)
        else:
            raise OscEncodeError(
                f"Unsupported OSC argument {arg!r} ({type(arg).__name__})"
            )

    try:
        return builder.build().dgram
    except osc_message_builder.BuildError as e:
        raise OscEncodeError(f"Failed to build {path}: {e}") from e


# ============================================================================
# FRAME SCANNING
# ============================================================================

def _pad4(length: int) -> int:
    """Round a byte length up to the next 4-byte boundary."""
    return (length + _ALIGN - 1) & ~(_ALIGN - 1)


def _read_string(data: bytes, index: int, end: int) -> tuple:
    """Read a padded, null-terminated OSC string starting at index.

    Returns:
        Tuple of (text, index after padding)
    """
    nul = data.find(b"\x00", index, end)
    if nul < 0:
        raise IncompleteFrameError("Unterminated OSC string")
    next_index = index + _pad4(nul - index + 1)
    if next_index > end:
        raise IncompleteFrameError("OSC string padding not yet received")
    try:
        text = bytes(data[index:nul]).decode("utf-8")
    except UnicodeDecodeError as e:
        raise OscDecodeError(f"OSC string is not valid UTF-8: {e}") from e
    return text, next_index


def _scan_message(data: bytes, start: int, end: int) -> int:
    """Return the index just past the message starting at start."""
    address, index = _read_string(data, start, end)
    if not address.startswith('/'):
        raise OscDecodeError(f"OSC address must start with '/': {address!r}")

    if index >= end:
        raise IncompleteFrameError("Type-tag section not yet received")
    if data[index:index + 1] != b",":
        raise OscDecodeError(f"Missing type-tag string after {address}")

    type_tags, index = _read_string(data, index, end)
    for tag in type_tags[1:]:
        if tag in _FIXED_ARG_SIZES:
            index += _FIXED_ARG_SIZES[tag]
        elif tag in _STRING_ARG_TYPES:
            _, index = _read_string(data, index, end)
        elif tag == 'b':
            if index + 4 > end:
                raise IncompleteFrameError("Blob size not yet received")
            size, index = osc_types.get_int(data, index)
            if size < 0 or index + size > MAX_FRAME_SIZE:
                raise OscDecodeError(f"Invalid blob size {size}")
            index += _pad4(size)
        elif tag in _EMPTY_ARG_TYPES:
            continue
        else:
            raise OscDecodeError(f"Unsupported type tag {tag!r} in {address}")
        if index > end:
            raise IncompleteFrameError(f"Arguments of {address} not yet received")
    return index


def _scan_bundle(data: bytes) -> int:
    """Return the length of the bundle at the front of data.

    A bundle has no overall length prefix, so its elements run to the end of
    the buffer. An element whose size runs past the buffer is still in flight.
    """
    header = bytes(data[:len(_BUNDLE_PREFIX)])
    if not _BUNDLE_PREFIX.startswith(header):
        raise OscDecodeError("Not an OSC bundle")
    if len(data) < _BUNDLE_HEADER_SIZE:
        raise IncompleteFrameError("Bundle header not yet received")

    index = _BUNDLE_HEADER_SIZE
    while index < len(data):
        if len(data) - index < 4:
            raise IncompleteFrameError("Bundle element size not yet received")
        size, index = osc_types.get_int(data, index)
        if size <= 0 or size % _ALIGN or index + size > MAX_FRAME_SIZE:
            raise OscDecodeError(f"Invalid bundle element size {size}")
        if index + size > len(data):
            raise IncompleteFrameError("Bundle element not yet received")
        index += size
    return index


def scan_frame(data: bytes) -> int:
    """Length of the standard OSC frame (message or bundle) at the front of data.

    Raises:
        IncompleteFrameError: data is a prefix of a frame
        OscDecodeError: data does not start with a standard frame
    """
    if not data:
        raise IncompleteFrameError("Empty buffer")
    if data[:1] == b"#":
        return _scan_bundle(data)
    if data[:1] == b"/":
        return _scan_message(data, 0, len(data))
    raise OscDecodeError(f"Unexpected leading byte 0x{data[0]:02x}")


def path_only_frame_length(data: bytes, streaming: bool = False) -> Optional[int]:
    """Length of a path-only frame at the front of data, or None.

    The DBT-44 answers /ping with just the padded address: it starts with '/',
    is printable ASCII, is null-terminated and has no type-tag section. The
    frame is ceil4(address length + null) bytes.

    With streaming=True a candidate that ends exactly at the end of data is
    rejected: the type-tag section of a standard message may still be on its
    way in the next datagram.

    Examples:
        >>> path_only_frame_length(b"/ping/unit1\\x00")
        12
        >>> path_only_frame_length(b"/gain/output/1/u\\x00\\x00\\x00\\x00,f\\x00\\x00") is None
        True
    """
    if len(data) < 2 or data[:1] != b"/":
        return None
    nul = data.find(b"\x00")
    if nul < 2:
        return None
    if any(byte < 0x20 or byte > 0x7e for byte in bytes(data[:nul])):
        return None
    length = _pad4(nul + 1)
    if length > len(data) or (streaming and length == len(data)):
        return None
    # A type-tag section right behind the address means a standard message
    if data[length:length + 1] == b",":
        return None
    return length


def frame_length(data: bytes, streaming: bool = False) -> int:
    """Length of the first complete frame in data.

    Tries the standard OSC layout first and falls back to the device's
    path-only framing (see path_only_frame_length for streaming).

    Raises:
        IncompleteFrameError: Wait for more data
        OscDecodeError: Leading bytes cannot start any frame
    """
    try:
        return scan_frame(data)
    except OscDecodeError:
        length = path_only_frame_length(data, streaming)
        if length is None:
            raise
        return length


def message_byte_length(data: bytes) -> int:
    """Byte length of the first complete frame, never raises.

    Returns len(data) + 1 when no complete frame can be found: the sentinel
    means "incomplete or unrecoverable".
    """
    try:
        return frame_length(data)
    except OscError:
        return len(data) + 1
    except Exception as e:
        logger.debug(f"Unexpected error measuring OSC frame: {e}")
        return len(data) + 1


# ============================================================================
# DECODING
# ============================================================================

def _decode_message(frame: bytes) -> OscMessage:
    """Decode one complete message frame with python-osc."""
    try:
        parsed = osc_message.OscMessage(frame)
    except osc_message.ParseError as e:
        raise OscDecodeError(f"Malformed OSC message: {e}") from e
    return OscMessage(address=parsed.address, args=list(parsed.params))


def _decode_bundle(frame: bytes) -> OscBundle:
    """Decode the elements of a one-level bundle frame.

    Elements that fail to decode are logged and skipped; nested bundles are
    not supported (the device never sends them).
    """
    bundle = OscBundle()
    index = _BUNDLE_HEADER_SIZE
    while index < len(frame):
        size, index = osc_types.get_int(frame, index)
        element = frame[index:index + size]
        index += size

        if is_bundle(element):
            logger.debug("Skipping nested OSC bundle")
            continue
        try:
            _scan_message(element, 0, len(element))
            bundle.messages.append(_decode_message(element))
        except OscDecodeError as e:
            logger.debug(f"Skipping bundle element ({size} bytes): {e}")
    return bundle


def is_bundle(data: bytes) -> bool:
    """True if data starts with the "#bundle" header."""
    return osc_bundle.OscBundle.dgram_is_bundle(bytes(data[:len(_BUNDLE_PREFIX)]))


def decode(data: bytes) -> OscPacket:
    """Decode the first frame in data.

    Args:
        data: Buffer starting with a message, a bundle or a path-only frame

    Returns:
        OscMessage or OscBundle

    Raises:
        IncompleteFrameError: data is only the beginning of a frame
        OscDecodeError: data does not start with a decodable frame

    Examples:
        >>> decode(b"/ping/unit1\\x00")
        OscMessage(address='/ping/unit1', args=[])
    """
    try:
        length = scan_frame(data)
    except OscDecodeError:
        length = path_only_frame_length(data)
        if length is None:
            raise
        address = bytes(data[:data.find(b"\x00")]).decode("ascii")
        return OscMessage(address=address, args=[])

    frame = bytes(data[:length])
    if is_bundle(frame):
        return _decode_bundle(frame)
    return _decode_message(frame)


# ============================================================================
# UDP SOCKETS
# ============================================================================

def bind_udp_socket(port: int, host: str = "0.0.0.0") -> socket.socket:
    """Create a non-blocking UDP socket bound to host:port with address reuse.

    SO_REUSEADDR (and SO_REUSEPORT where the platform has it) lets the bridge
    rebind its feedback port immediately after a reconfiguration, and lets the
    capture tool share a host with a running bridge.

    Raises:
        OSError: If the port cannot be bound
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, 'SO_REUSEPORT'):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        sock.bind((host, port))
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


# ============================================================================
# VALIDATION FUNCTIONS
# ============================================================================

def validate_port(port: int) -> None:
    """Validate UDP port number is in valid range.

    Raises:
        ValueError: If port is outside range 1-65535

    Examples:
        >>> validate_port(9000)  # OK
        >>> validate_port(0)  # Raises ValueError
    """
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError(f"Port must be an integer, got {port!r}")
    if port < PORT_MIN or port > PORT_MAX:
        raise ValueError(f"Port must be in range {PORT_MIN}-{PORT_MAX}, got {port}")
