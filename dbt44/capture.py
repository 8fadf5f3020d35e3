#!/usr/bin/env python3
"""
Sync Capture - Dump everything a DBT-44 sends in reply to /ping and /sync.

Listens on port 9002 (so a bridge on 9001 can keep running), sends
/ping/<device_name>, then /sync/<device_name> half a second later, and prints
every decoded frame for ten seconds.

USAGE:
    python3 -m dbt44 capture 192.168.1.100 dbt44-device
    python3 -m dbt44 capture 192.168.1.100 dbt44-device --duration 20

OUTPUT:
    --- Received #1: 20 bytes from 192.168.1.100:9000 ---
    /ping/dbt44-device
    --- Received #2: 1480 bytes from 192.168.1.100:9000 ---
    (bundle)
      /gain/input/1/1/dbt44-device  [f]-6.0
      /mute/input/1/dbt44-device  [T]True
"""

import asyncio
from typing import Any, List, Optional, Tuple

from dbt44 import osc
from dbt44.addresses import osc_path
from dbt44.stream import StreamReassembler

PING_TO_SYNC_DELAY_S = 0.5
DEFAULT_DURATION_S = 10.0


def _type_tag(value: Any) -> str:
    if value is True:
        return 'T'
    if value is False:
        return 'F'
    if isinstance(value, float):
        return 'f'
    if isinstance(value, int):
        return 'i'
    if isinstance(value, str):
        return 's'
    if isinstance(value, bytes):
        return 'b'
    return '?'


def format_message(message: osc.OscMessage) -> str:
    """'/path  [f]-6.0, [T]True'"""
    args = ', '.join(f"[{_type_tag(arg)}]{arg}" for arg in message.args)
    return f"{message.address}  {args}".rstrip()


class SyncCapture(asyncio.DatagramProtocol):
    """Collects and prints everything received on the capture port."""

    def __init__(self, out=print):
        self.out = out
        self.received = 0
        self.messages: List[osc.OscMessage] = []
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.reassembler = StreamReassembler(self._on_message)
        self._indent = ''

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.received += 1
        self.out(f"\n--- Received #{self.received}: {len(data)} bytes from {addr[0]}:{addr[1]} ---")
        self.feed(data)

    def feed(self, data: bytes) -> int:
        """Decode and print one datagram. Returns the number of messages printed.

        Each datagram is printed as a whole, so a trailing ping echo is
        flushed right away instead of waiting for the next datagram.
        """
        self._indent = '  ' if osc.is_bundle(data) else ''
        if self._indent:
            self.out("(bundle)")
        return self.reassembler.feed(data) + self.reassembler.flush()

    def _on_message(self, message: osc.OscMessage) -> None:
        self.messages.append(message)
        self.out(f"{self._indent}{format_message(message)}")

    def error_received(self, exc: Exception) -> None:
        self.out(f"Socket error: {exc}")

    def send(self, host: str, port: int, path: str) -> None:
        if self.transport is None:
            return
        self.transport.sendto(osc.encode_message(path), (host, port))
        self.out(f"Sent {path}")


async def run_capture(host: str, device_name: str,
                      target_port: int = osc.DEFAULT_TARGET_PORT,
                      listen_port: int = osc.CAPTURE_PORT,
                      duration: float = DEFAULT_DURATION_S,
                      out=print) -> int:
    """Send /ping and /sync to the device and print the replies.

    Returns:
        Number of datagrams received
    """
    ping = osc_path(osc.OSC_PATH_PING, device_name)
    sync = osc_path(osc.OSC_PATH_SYNC, device_name)
    if not ping or not sync:
        raise ValueError("Device name is required")

    loop = asyncio.get_running_loop()
    sock = osc.bind_udp_socket(listen_port)
    transport, capture = await loop.create_datagram_endpoint(
        lambda: SyncCapture(out), sock=sock)
    try:
        local = transport.get_extra_info('sockname')
        out(f"Listening on {local[0]}:{local[1]}")
        out(f"Target: {host}:{target_port}  device: {device_name}\n")

        # /ping first in case the device expects it
        capture.send(host, target_port, ping)
        await asyncio.sleep(PING_TO_SYNC_DELAY_S)
        capture.send(host, target_port, sync)
        out(f"Waiting {duration:g}s for response...\n")
        await asyncio.sleep(duration)
    finally:
        transport.close()

    if capture.received == 0:
        out("No UDP response received. Check: device IP, firewall (incoming UDP), "
            "and that device name matches.")
    else:
        out(f"\nDone. Received {capture.received} packet(s).")
    return capture.received
