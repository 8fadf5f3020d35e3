"""
Stream reassembly for inbound DBT-44 datagrams.

The device's replies can arrive split across datagrams, several to a
datagram, wrapped in a bundle, or as path-only frames (/ping echoes). Each
datagram is appended to one buffer and complete frames are cut from the
front until only an incomplete tail is left.

A path-only frame that ends exactly at the end of the buffer is held back
until the next byte arrives (or flush() is called): until then it cannot be
told apart from the address of a standard message whose type tags are still
in flight.

Recovery policy: when the front of the buffer cannot start any frame, exactly
one byte is dropped and scanning resumes. The same happens to an incomplete
frame once more than max_frame_size bytes are buffered: no UDP datagram is
that long, so it can never complete. Every pass through the loop either
cuts a frame, drops a byte or stops, so the loop always terminates.
"""

from typing import Callable

from dbt44 import osc
from dbt44.log import get_logger

logger = get_logger(__name__)

# Unparseable frames up to this size are hex-dumped at debug level
HEX_DUMP_LIMIT = 64

MessageHandler = Callable[[osc.OscMessage], None]


class StreamReassembler:
    """Cuts OSC frames out of a growing byte buffer.

    Args:
        on_message: Called once per decoded message, in stream order. Bundle
            elements are delivered one by one.
        max_frame_size: Buffered bytes after which an incomplete frame is
            treated as unparseable
    """

    def __init__(self, on_message: MessageHandler, max_frame_size: int = osc.MAX_FRAME_SIZE):
        self.on_message = on_message
        self.max_frame_size = max_frame_size
        self._buffer = bytearray()
        self.frames = 0
        self.dropped_bytes = 0

    @property
    def pending(self) -> int:
        """Bytes buffered but not yet part of a complete frame."""
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()

    def feed(self, data: bytes) -> int:
        """Append a datagram and dispatch every complete frame.

        Returns:
            Number of messages passed to on_message
        """
        self._buffer.extend(data)
        dispatched = 0

        while self._buffer:
            try:
                length = osc.frame_length(self._buffer, streaming=True)
            except osc.IncompleteFrameError as e:
                if len(self._buffer) <= self.max_frame_size:
                    break
                self._drop_unparseable_byte(e)
                continue
            except osc.OscDecodeError as e:
                self._drop_unparseable_byte(e)
                continue

            frame = bytes(self._buffer[:length])
            del self._buffer[:length]
            self.frames += 1

            try:
                packet = osc.decode(frame)
            except osc.OscDecodeError as e:
                self._log_unparsed(frame, e)
                continue

            if isinstance(packet, osc.OscBundle):
                logger.debug(f"OSC bundle with {len(packet.messages)} messages")
                for message in packet.messages:
                    dispatched += self._dispatch(message)
            else:
                dispatched += self._dispatch(packet)

        return dispatched

    def flush(self) -> int:
        """Dispatch a path-only frame left at the very end of the buffer.

        feed() holds such a frame back in case a type-tag section follows.
        Call this once no more data is expected.

        Returns:
            Number of messages passed to on_message (0 or 1)
        """
        length = osc.path_only_frame_length(self._buffer)
        if length is None:
            return 0
        frame = bytes(self._buffer[:length])
        del self._buffer[:length]
        self.frames += 1
        return self._dispatch(osc.decode(frame))

    def _dispatch(self, message: osc.OscMessage) -> int:
        try:
            self.on_message(message)
        except Exception as e:
            logger.error(f"Error handling OSC message {message.address}: {e}", exc_info=True)
        return 1

    def _drop_unparseable_byte(self, error: Exception) -> None:
        """Skip the first byte of an unparseable buffer (lossy recovery)."""
        self._log_unparsed(bytes(self._buffer[:HEX_DUMP_LIMIT]), error)
        del self._buffer[:1]
        self.dropped_bytes += 1

    def _log_unparsed(self, data: bytes, error: Exception) -> None:
        if len(data) <= HEX_DUMP_LIMIT:
            logger.debug(f"OSC unparsed ({len(data)} bytes): {data.hex()} ({error})")
        else:
            logger.debug(f"OSC unparsed ({len(data)} bytes): {error}")
