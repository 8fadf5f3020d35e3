#!/usr/bin/env python3
"""Test suite for value formatting and the DeviceState store."""

from unittest.mock import Mock

import pytest

from dbt44.state import (
    DEVICE_NAME_LABEL,
    DEVICE_NAME_VARIABLE,
    DeviceState,
    format_value,
    is_truthy,
    parse_number,
)


class TestFormatValue:
    """Tests for format_value()."""

    @pytest.mark.parametrize('value,expected', [
        (True, '1'),
        (False, '0'),
        (0.0, '0'),
        (1.0, '1'),
        (0, '0'),
        (1, '1'),
        ('1.0', '1'),
        ('', '0'),
        (-3.456, '-3.5'),
        (-6.0, '-6.0'),
        (2.25, '2.3'),
        (-120, '-120.0'),
        (10, '10.0'),
        ('dbt44', 'dbt44'),
        (None, '0'),
    ])
    def test_format(self, value, expected):
        assert format_value(value) == expected

    def test_rounds_half_up(self):
        """Halves round toward +infinity, negative ones included."""
        assert format_value(0.25) == '0.3'
        assert format_value(-0.25) == '-0.2'


class TestParseNumber:
    """Tests for parse_number()."""

    @pytest.mark.parametrize('value,expected', [
        ('-2.0', -2.0),
        ('3.5dB', 3.5),
        ('.5', 0.5),
        (7, 7.0),
        (True, 1.0),
        (False, 0.0),
    ])
    def test_parses(self, value, expected):
        assert parse_number(value) == expected

    @pytest.mark.parametrize('value', ['true', '', 'abc', None, float('nan'), [1]])
    def test_unparseable(self, value):
        assert parse_number(value) is None


class TestIsTruthy:
    """Tests for is_truthy()."""

    @pytest.mark.parametrize('value', ['1', '1.0', 1, 1.0, True, 'true', 'TRUE', '-120.0'])
    def test_on(self, value):
        assert is_truthy(value) is True

    @pytest.mark.parametrize('value', ['0', '0.0', 0, 0.0, False, None, '', 'false', 'off'])
    def test_off(self, value):
        assert is_truthy(value) is False


class TestDeviceState:
    """Tests for DeviceState."""

    def test_store_formats_and_registers_label(self):
        state = DeviceState()

        state.store('gain_input_2_5', -3.456)

        assert state.get('gain_input_2_5') == '-3.5'
        assert state.label('gain_input_2_5') == 'Gain: Analog in 2 -> Dante out 1'
        assert 'gain_input_2_5' in state
        assert len(state) == 1

    def test_store_ignores_empty_id(self):
        state = DeviceState()
        state.store('', 1.0)
        state.store(None, 1.0)
        assert len(state) == 0

    def test_last_write_wins(self):
        state = DeviceState()
        state.store('gain_output_1', -3.0)
        state.store('gain_output_1', -6.0)
        assert state.get('gain_output_1') == '-6.0'

    def test_variables_feed_starts_with_device_name(self):
        state = DeviceState()
        state.store('mute_input_1', True)

        feed = state.variables(' unit1 ')

        assert list(feed) == [DEVICE_NAME_VARIABLE, 'mute_input_1']
        assert feed[DEVICE_NAME_VARIABLE] == 'unit1'
        assert feed['mute_input_1'] == '1'

    def test_definitions(self):
        state = DeviceState()
        state.store('mute_output_5', False)

        assert state.definitions() == [
            (DEVICE_NAME_VARIABLE, DEVICE_NAME_LABEL),
            ('mute_output_5', 'Mute: Dante out 1'),
        ]

    def test_mute_queries(self):
        state = DeviceState()
        state.store('mute_input_1', True)
        state.store('mute_output_2', 0)

        assert state.is_input_muted(1)
        assert not state.is_output_muted(2)
        assert not state.is_input_muted(3)

    def test_crosspoint_muted_at_minus_120(self):
        state = DeviceState()
        state.store('gain_input_1_1', -120)
        state.store('gain_input_1_2', -119.5)

        assert state.is_crosspoint_muted(1, 1)
        assert not state.is_crosspoint_muted(1, 2)
        assert not state.is_crosspoint_muted(1, 3)

    def test_notify_calls_observers(self):
        state = DeviceState()
        observer = Mock()
        state.subscribe(observer)
        state.subscribe(observer)

        state.notify()

        observer.assert_called_once_with(state)

    def test_observer_error_does_not_stop_others(self):
        state = DeviceState()
        failing = Mock(side_effect=RuntimeError('boom'))
        working = Mock()
        state.subscribe(failing)
        state.subscribe(working)

        state.notify()

        working.assert_called_once_with(state)

    def test_unsubscribe(self):
        state = DeviceState()
        observer = Mock()
        state.subscribe(observer)
        state.unsubscribe(observer)

        state.notify()

        observer.assert_not_called()

    def test_clear(self):
        state = DeviceState()
        state.store('gain_input_1_1', -120)
        state.saved_matrix_gain['1_1'] = -6.0

        state.clear()

        assert len(state) == 0
        assert state.saved_matrix_gain == {}
        assert state.labels() == {}
