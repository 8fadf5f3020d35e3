#!/usr/bin/env python3
"""
DBT-44 Session - UDP session lifecycle, connection status and sync.

ARCHITECTURE:
- One asyncio UDP endpoint bound to the feedback port (default 9001)
- Commands go out from the same socket to <host>:<target_port> (default 9000)
- Inbound datagrams -> StreamReassembler -> variable ids -> DeviceState
- Everything runs on one event loop; no locks, no threads

CONNECTION STATUS:
    UNCONFIGURED  host, device name or a port missing
    CONNECTING    resolving the host / binding the socket
    CONNECTED     socket bound, or any datagram received from the device
    FAILED        DNS lookup or socket bind failed, or a socket error

    Reconfiguration from any status tears down the socket, clears all state
    and starts over. There is no automatic retry after FAILED.

SYNC:
    One /sync/<device_name> is sent SYNC_DELAY_S after connecting. The device
    answers with a burst of messages (often bundled) holding its whole state;
    after that it reports changes on its own, so no periodic re-sync runs.
    /ping/<device_name> can be sent on demand, or every ping_interval seconds
    when configured. Any inbound traffic counts as proof of life.
"""

import asyncio
import re
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple

from dbt44 import osc
from dbt44.addresses import osc_path, path_to_variable_id
from dbt44.config import ConfigError, DeviceConfig
from dbt44.log import get_logger
from dbt44.state import DeviceState
from dbt44.stream import StreamReassembler

logger = get_logger(__name__)

# Delay before the one-shot /sync after connecting (seconds)
SYNC_DELAY_S = 1.0

IPV4_PATTERN = re.compile(r'^(\d{1,3}\.){3}\d{1,3}$')


class ConnectionStatus(Enum):
    UNCONFIGURED = 'bad_config'
    CONNECTING = 'connecting'
    CONNECTED = 'ok'
    FAILED = 'connection_failure'


StatusListener = Callable[[ConnectionStatus, Optional[str]], None]


def is_ipv4_literal(host: str) -> bool:
    """True for dotted-quad hosts, which skip DNS resolution."""
    return bool(IPV4_PATTERN.match(host or ''))


async def resolve_ipv4(host: str) -> str:
    """Resolve host to an IPv4 address without blocking the loop.

    Raises:
        OSError: (socket.gaierror) if the lookup fails
    """
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, family=socket.AF_INET, type=socket.SOCK_DGRAM)
    if not infos:
        raise OSError(f"No IPv4 address for {host}")
    return infos[0][4][0]


@dataclass
class SessionContext:
    """Everything one session owns, reset on every (re)connection.

    Attributes:
        config: Connection settings
        state: Last-known device values and saved crosspoint gains
        reassembler: Inbound byte stream buffer
        target_host: Resolved IPv4 address of the device
        transport: asyncio UDP transport bound to the feedback port
        status, status_label: Current connection status
        sync_handle, ping_handle: Pending timers
    """
    config: DeviceConfig
    state: DeviceState
    reassembler: StreamReassembler
    target_host: Optional[str] = None
    transport: Optional[asyncio.DatagramTransport] = None
    status: ConnectionStatus = ConnectionStatus.UNCONFIGURED
    status_label: Optional[str] = None
    sync_handle: Optional[asyncio.TimerHandle] = None
    ping_handle: Optional[asyncio.TimerHandle] = None
    stored_in_batch: bool = False

    def cancel_timers(self) -> None:
        for handle in (self.sync_handle, self.ping_handle):
            if handle is not None:
                handle.cancel()
        self.sync_handle = None
        self.ping_handle = None

    def close_transport(self) -> None:
        if self.transport is not None:
            self.transport.close()
            self.transport = None

    def reset(self) -> None:
        """Tear down the socket and timers and forget all device state."""
        self.cancel_timers()
        self.close_transport()
        self.target_host = None
        self.state.clear()
        self.reassembler.reset()
        self.stored_in_batch = False


class _FeedbackProtocol(asyncio.DatagramProtocol):
    """Forwards socket events to the owning session."""

    def __init__(self, session: 'DeviceSession'):
        self._session = session

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self._session.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        self._session.handle_socket_error(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            self._session.handle_socket_error(exc)


class DeviceSession:
    """UDP session with one DBT-44.

    Example:
        session = DeviceSession(DeviceConfig(host='192.168.1.100', device_name='dbt44'))
        await session.start()
        session.send('/gain/output/1', [-6.0])
        ...
        session.close()
    """

    def __init__(self, config: Optional[DeviceConfig] = None,
                 state: Optional[DeviceState] = None):
        self.context = SessionContext(
            config=config or DeviceConfig(),
            state=state or DeviceState(),
            reassembler=StreamReassembler(self._handle_message),
        )
        self._status_listeners: List[StatusListener] = []

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> DeviceConfig:
        return self.context.config

    @property
    def state(self) -> DeviceState:
        return self.context.state

    @property
    def status(self) -> ConnectionStatus:
        return self.context.status

    @property
    def status_label(self) -> Optional[str]:
        return self.context.status_label

    @property
    def is_connected(self) -> bool:
        return self.context.status == ConnectionStatus.CONNECTED

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def variables(self):
        """Live variable feed (device_name plus every stored value)."""
        return self.state.variables(self.config.name)

    def _set_status(self, status: ConnectionStatus, label: Optional[str] = None) -> None:
        ctx = self.context
        if ctx.status == status and ctx.status_label == label:
            return
        ctx.status = status
        ctx.status_label = label
        logger.debug(f"Status: {status.value}{f' ({label})' if label else ''}")
        for listener in list(self._status_listeners):
            try:
                listener(status, label)
            except Exception as e:
                logger.warning(f"Status listener failed: {e}")

    def _connected_label(self, fallback: str = 'Connected') -> str:
        return self.config.name or fallback

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, config: Optional[DeviceConfig] = None) -> bool:
        """Validate config, resolve the host and open the UDP endpoint.

        Returns:
            True if the session is connected
        """
        if config is not None:
            self.context.config = config
        cfg = self.context.config

        try:
            cfg.validate()
        except ConfigError as e:
            logger.warning(str(e).replace('\n', ' - '))
            self._set_status(ConnectionStatus.UNCONFIGURED, 'Bad configuration')
            return False

        if is_ipv4_literal(cfg.host):
            target_host = cfg.host
        else:
            self._set_status(ConnectionStatus.CONNECTING)
            try:
                target_host = await resolve_ipv4(cfg.host)
            except OSError as e:
                logger.error(f"Cannot resolve hostname {cfg.host}: {e}")
                self._set_status(ConnectionStatus.FAILED, 'Cannot resolve host')
                return False
            logger.info(f"Resolved {cfg.host} to {target_host}")

        return await self._open(target_host)

    async def _open(self, target_host: str) -> bool:
        ctx = self.context
        ctx.cancel_timers()
        ctx.close_transport()
        # Every (re)connection rebuilds state from the device's sync reply
        ctx.reassembler.reset()
        ctx.state.clear()
        ctx.stored_in_batch = False
        self._set_status(ConnectionStatus.CONNECTING)

        loop = asyncio.get_running_loop()
        try:
            sock = osc.bind_udp_socket(ctx.config.feedback_port)
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _FeedbackProtocol(self), sock=sock)
        except OSError as e:
            logger.error(f"Cannot listen on UDP port {ctx.config.feedback_port}: {e}")
            self._set_status(ConnectionStatus.FAILED, 'Socket error')
            return False

        ctx.transport = transport
        ctx.target_host = target_host
        logger.info(
            f"Listening for OSC on port {ctx.config.feedback_port}, "
            f"device {ctx.config.name} at {target_host}:{ctx.config.target_port}"
        )
        self._set_status(ConnectionStatus.CONNECTED, self._connected_label('Ready'))
        self.state.notify()

        # Sync once on connect; the device reports changes by itself afterwards
        ctx.sync_handle = loop.call_later(SYNC_DELAY_S, self.send_sync)
        self._schedule_ping(loop)
        return True

    async def reconfigure(self, config: DeviceConfig) -> bool:
        """Apply new settings: full teardown, state cleared, then start()."""
        self.context.reset()
        self.state.notify()
        return await self.start(config)

    def close(self) -> None:
        """Release the socket and cancel pending probes."""
        self.context.cancel_timers()
        self.context.close_transport()
        logger.debug("Session closed")

    def _schedule_ping(self, loop: asyncio.AbstractEventLoop) -> None:
        interval = self.config.ping_interval
        if not interval or interval <= 0:
            return

        def _tick():
            self.send_ping()
            self.context.ping_handle = loop.call_later(interval, _tick)

        self.context.ping_handle = loop.call_later(interval, _tick)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send(self, logical_path: str, args: Sequence[Any] = ()) -> bool:
        """Send /<logical_path>/<device_name> with args. Fire and forget.

        Returns:
            True if the datagram was handed to the socket
        """
        ctx = self.context
        path = osc_path(logical_path, ctx.config.name)
        if not path or not ctx.target_host or ctx.transport is None:
            logger.debug(f"Not connected, dropping {logical_path}")
            return False
        try:
            dgram = osc.encode_message(path, args)
        except osc.OscEncodeError as e:
            logger.warning(f"Failed to encode {path}: {e}")
            return False
        try:
            ctx.transport.sendto(dgram, (ctx.target_host, ctx.config.target_port))
        except OSError as e:
            logger.warning(f"Send error for {path}: {e}")
            return False
        logger.debug(f"Sent {path} {list(args)}")
        return True

    def send_sync(self) -> bool:
        """Ask the device for a full state dump."""
        self.context.sync_handle = None
        return self.send(osc.OSC_PATH_SYNC)

    def send_ping(self) -> bool:
        """Liveness probe; the device echoes the path back."""
        return self.send(osc.OSC_PATH_PING)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_datagram(self, data: bytes, addr: Optional[Tuple[str, int]] = None) -> int:
        """Feed one datagram through reassembly into the state store.

        Returns:
            Number of OSC messages handled
        """
        if addr:
            logger.debug(f"Received UDP {len(data)} bytes from {addr[0]}:{addr[1]}")
        # Any reply from the device means we're connected
        self._set_status(ConnectionStatus.CONNECTED, self._connected_label())

        ctx = self.context
        ctx.stored_in_batch = False
        count = ctx.reassembler.feed(data)
        if ctx.stored_in_batch:
            ctx.stored_in_batch = False
            self.state.notify()
        return count

    def _is_ping(self, path: str) -> bool:
        return path == osc.OSC_PATH_PING or path == osc_path(osc.OSC_PATH_PING, self.config.name)

    def _handle_message(self, message: osc.OscMessage) -> None:
        path = message.address
        args = message.args
        variable_id = path_to_variable_id(path, self.config.name)
        store = bool(variable_id) and not self._is_ping(path)
        logger.debug(f"OSC {path} args={len(args)} -> var {variable_id} store={store}")

        if store:
            # Path-only replies carry no value; stored as '' (formats as '0')
            value = args[0] if args else ''
            self.state.store(variable_id, value)
            self.context.stored_in_batch = True

    def handle_socket_error(self, exc: Exception) -> None:
        logger.warning(f"Socket error: {exc}")
        self._set_status(ConnectionStatus.FAILED, 'Socket error')
