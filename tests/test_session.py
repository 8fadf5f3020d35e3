#!/usr/bin/env python3
"""Test suite for DeviceSession.

Tests for:
1. start() - config validation, DNS failure, socket bind failure, success
2. handle_datagram() - storing values, ping handling, status, notification
3. send() / send_sync() / send_ping()
4. reconfigure() and socket errors
"""

import asyncio
import socket
from unittest.mock import AsyncMock, Mock, patch

import pytest

from dbt44 import osc
from dbt44.config import DeviceConfig
from dbt44.session import ConnectionStatus, DeviceSession, is_ipv4_literal


def _loopback_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(('127.0.0.1', 0))
    sock.setblocking(False)
    return sock


class TestIsIpv4Literal:

    @pytest.mark.parametrize('host', ['192.168.1.50', '10.0.0.1', '127.0.0.1'])
    def test_literals(self, host):
        assert is_ipv4_literal(host)

    @pytest.mark.parametrize('host', ['dbt44.local', '', None, '::1', '1.2.3'])
    def test_not_literals(self, host):
        assert not is_ipv4_literal(host)


# =============================================================================
# Lifecycle
# =============================================================================

class TestStart:
    """Tests for start()."""

    def test_missing_device_name_is_unconfigured(self):
        session = DeviceSession(DeviceConfig(host='192.168.1.50'))
        listener = Mock()
        session.add_status_listener(listener)

        assert asyncio.run(session.start()) is False

        assert session.status == ConnectionStatus.UNCONFIGURED
        assert session.status_label == 'Bad configuration'
        listener.assert_called_once_with(ConnectionStatus.UNCONFIGURED, 'Bad configuration')

    def test_invalid_port_is_unconfigured(self):
        session = DeviceSession(DeviceConfig(host='192.168.1.50', device_name='unit1',
                                             target_port=70000))
        assert asyncio.run(session.start()) is False
        assert session.status == ConnectionStatus.UNCONFIGURED

    def test_dns_failure(self):
        session = DeviceSession(DeviceConfig(host='dbt44.invalid', device_name='unit1'))

        with patch('dbt44.session.resolve_ipv4',
                   new=AsyncMock(side_effect=socket.gaierror('no such host'))):
            assert asyncio.run(session.start()) is False

        assert session.status == ConnectionStatus.FAILED
        assert session.status_label == 'Cannot resolve host'

    def test_bind_failure(self, config):
        session = DeviceSession(config)

        with patch('dbt44.osc.bind_udp_socket', side_effect=OSError('in use')):
            assert asyncio.run(session.start()) is False

        assert session.status == ConnectionStatus.FAILED
        assert session.status_label == 'Socket error'
        assert session.context.transport is None

    def test_hostname_is_resolved(self, config):
        config.host = 'dbt44.local'
        session = DeviceSession(config)

        async def run():
            with patch('dbt44.session.resolve_ipv4', new=AsyncMock(return_value='10.0.0.7')), \
                 patch('dbt44.osc.bind_udp_socket', return_value=_loopback_socket()):
                connected = await session.start()
            session.close()
            await asyncio.sleep(0)
            return connected

        assert asyncio.run(run()) is True
        assert session.context.target_host == '10.0.0.7'

    def test_connects_and_syncs(self, config):
        """Connected right after binding; /sync goes out after the delay."""
        receiver = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        receiver.bind(('127.0.0.1', 0))
        receiver.settimeout(2.0)
        config.host = '127.0.0.1'
        config.target_port = receiver.getsockname()[1]
        session = DeviceSession(config)
        states = []
        session.state.subscribe(lambda state: states.append(dict(state.values)))

        async def run():
            with patch('dbt44.session.SYNC_DELAY_S', 0.01), \
                 patch('dbt44.osc.bind_udp_socket', return_value=_loopback_socket()):
                connected = await session.start()
            status = (session.status, session.status_label)
            await asyncio.sleep(0.2)
            session.close()
            await asyncio.sleep(0)
            return connected, status

        try:
            connected, status = asyncio.run(run())
            data = receiver.recv(1024)
        finally:
            receiver.close()

        assert connected is True
        assert status == (ConnectionStatus.CONNECTED, 'unit1')
        assert states == [{}]
        assert data == osc.encode_message('/sync/unit1')

    def test_restart_clears_state(self, config):
        """A second start() rebuilds state from scratch, like reconfigure()."""
        session = DeviceSession(config)

        async def run():
            with patch('dbt44.osc.bind_udp_socket', side_effect=lambda port: _loopback_socket()):
                await session.start()
                session.handle_datagram(osc.encode_message('/gain/output/1/unit1', [-6.0]))
                session.handle_datagram(osc.encode_message('/gain/input/1/2/unit1', [-9.0])[:10])
                session.state.saved_matrix_gain['1_1'] = -3.0
                connected = await session.start()
            session.close()
            await asyncio.sleep(0)
            return connected

        assert asyncio.run(run()) is True
        assert len(session.state) == 0
        assert session.state.saved_matrix_gain == {}
        assert session.context.reassembler.pending == 0

    def test_close_releases_transport(self, session):
        transport = session.context.transport

        session.close()

        transport.close.assert_called_once()
        assert session.context.transport is None


class TestReconfigure:
    """Tests for reconfigure()."""

    def test_clears_state_and_restarts(self, session):
        transport = session.context.transport
        session.state.store('gain_output_1', -6.0)
        session.state.saved_matrix_gain['1_1'] = -3.0
        observer = Mock()
        session.state.subscribe(observer)

        assert asyncio.run(session.reconfigure(DeviceConfig(host='192.168.1.60'))) is False

        transport.close.assert_called_once()
        assert len(session.state) == 0
        assert session.state.saved_matrix_gain == {}
        assert session.config.host == '192.168.1.60'
        assert session.status == ConnectionStatus.UNCONFIGURED
        observer.assert_called_once_with(session.state)

    def test_discards_partial_frame(self, session):
        session.handle_datagram(osc.encode_message('/gain/output/1/unit1', [-6.0])[:10])

        asyncio.run(session.reconfigure(DeviceConfig()))

        assert session.context.reassembler.pending == 0


# =============================================================================
# Inbound
# =============================================================================

class TestHandleDatagram:
    """Tests for handle_datagram()."""

    def test_stores_values(self, session):
        data = (osc.encode_message('/gain/input/2/5/unit1', [-6.0])
                + osc.encode_message('/mute/output/1/unit1', [True]))

        assert session.handle_datagram(data) == 2

        assert session.state.get('gain_input_2_5') == '-6.0'
        assert session.state.get('mute_output_1') == '1'

    def test_bundle(self, session, bundle):
        session.handle_datagram(bundle(
            osc.encode_message('/gain/output/3/unit1', [-3.456]),
            osc.encode_message('/mute/input/8/unit1', [False]),
        ))

        assert session.state.get('gain_output_3') == '-3.5'
        assert session.state.get('mute_input_8') == '0'

    def test_notifies_once_per_datagram(self, session):
        observer = Mock()
        session.state.subscribe(observer)

        session.handle_datagram(
            osc.encode_message('/gain/output/1/unit1', [1.0])
            + osc.encode_message('/gain/output/2/unit1', [2.0])
            + osc.encode_message('/gain/output/3/unit1', [3.0]))

        observer.assert_called_once_with(session.state)

    def test_no_notify_without_values(self, session):
        observer = Mock()
        session.state.subscribe(observer)

        session.handle_datagram(osc.encode_message('/ping/unit1'))

        observer.assert_not_called()

    def test_ping_not_stored(self, session):
        session.handle_datagram(b'/ping/unit1\x00' + osc.encode_message('/mute/input/1/unit1', [True]))

        assert 'ping' not in session.state
        assert session.state.get('mute_input_1') == '1'
        assert len(session.state) == 1

    def test_path_only_non_ping_stored_as_zero(self, session):
        session.handle_datagram(b'/levels/peak/unit1\x00\x00\x00')
        assert session.state.get('levels_peak') == '0'

    def test_no_args_stored_as_zero(self, session):
        session.handle_datagram(osc.encode_message('/eqenable/input/1/unit1'))
        assert session.state.get('eqenable_input_1') == '0'

    def test_any_datagram_marks_connected(self, session):
        listener = Mock()
        session.add_status_listener(listener)

        session.handle_datagram(b'\xff')
        session.handle_datagram(osc.encode_message('/gain/output/1/unit1', [0.0]))

        assert session.status == ConnectionStatus.CONNECTED
        assert session.status_label == 'unit1'
        listener.assert_called_once_with(ConnectionStatus.CONNECTED, 'unit1')

    def test_split_message(self, session):
        dgram = osc.encode_message('/gain/input/4/4/unit1', [-20.0])

        assert session.handle_datagram(dgram[:17]) == 0
        assert session.handle_datagram(dgram[17:]) == 1
        assert session.state.get('gain_input_4_4') == '-20.0'

    def test_variables_feed(self, session):
        session.handle_datagram(osc.encode_message('/mute/output/6/unit1', [True]))

        assert session.variables() == {'device_name': 'unit1', 'mute_output_6': '1'}


class TestSocketErrors:

    def test_socket_error_marks_failed(self, session):
        session.handle_socket_error(ConnectionRefusedError('refused'))

        assert session.status == ConnectionStatus.FAILED
        assert session.status_label == 'Socket error'

    def test_reply_after_error_recovers(self, session):
        session.handle_socket_error(OSError('unreachable'))
        session.handle_datagram(osc.encode_message('/sync/unit1'))
        assert session.is_connected


# =============================================================================
# Outbound
# =============================================================================

class TestSend:
    """Tests for send(), send_sync() and send_ping()."""

    def test_send_appends_device_name(self, session, sent):
        assert session.send('/gain/output/1', [-6.0]) is True

        assert sent(session.context.transport) == [
            osc.OscMessage('/gain/output/1/unit1', [-6.0])]
        assert session.context.transport.sendto.call_args[0][1] == ('192.168.1.50', 9000)

    def test_sync_and_ping(self, session, sent):
        session.send_sync()
        session.send_ping()

        assert sent(session.context.transport) == [
            osc.OscMessage('/sync/unit1', []),
            osc.OscMessage('/ping/unit1', []),
        ]

    def test_not_connected(self, session):
        session.context.transport = None
        assert session.send('/sync') is False

    def test_no_device_name(self, session):
        session.context.config.device_name = '  '
        assert session.send('/sync') is False
        session.context.transport.sendto.assert_not_called()

    def test_unencodable_argument(self, session):
        assert session.send('/gain/output/1', ['loud']) is False
        session.context.transport.sendto.assert_not_called()

    def test_send_error(self, session):
        session.context.transport.sendto.side_effect = OSError('network down')
        assert session.send('/sync') is False
