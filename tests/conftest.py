"""Shared fixtures for the dbt44 test suite."""

import struct
from unittest.mock import Mock

import pytest

from dbt44 import osc
from dbt44.config import DeviceConfig
from dbt44.mixer import MixerController
from dbt44.session import DeviceSession

DEVICE_NAME = 'unit1'
DEVICE_HOST = '192.168.1.50'


def make_bundle(*elements: bytes) -> bytes:
    """Wrap encoded messages in a bundle with an immediate timetag."""
    dgram = b"#bundle\x00" + b"\x00" * 7 + b"\x01"
    for element in elements:
        dgram += struct.pack('>i', len(element)) + element
    return dgram


@pytest.fixture
def config():
    return DeviceConfig(host=DEVICE_HOST, device_name=DEVICE_NAME,
                        target_port=9000, feedback_port=9001)


@pytest.fixture
def session(config):
    """Session wired to a mock transport, as if start() had connected."""
    session = DeviceSession(config)
    session.context.transport = Mock()
    session.context.target_host = DEVICE_HOST
    return session


@pytest.fixture
def mixer(session):
    return MixerController(session)


@pytest.fixture
def sent():
    """Decode every datagram a mock transport was asked to send."""
    def _sent(transport):
        return [osc.decode(c.args[0]) for c in transport.sendto.call_args_list]
    return _sent


@pytest.fixture
def bundle():
    return make_bundle
