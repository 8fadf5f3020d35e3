#!/usr/bin/env python3
"""
Mixer operations - gain and mute control for the DBT-44 matrix.

Every operation follows the same read-modify-write pattern:
1. Read the current value from DeviceState (missing gain = 0 dB, missing
   mute = unmuted)
2. Compute the new value
3. Send the OSC command immediately (UDP, no acknowledgement)
4. Store the new value before the device confirms it
5. Notify state observers

The device echoes its own value shortly after. Whichever of the local write
and the echo is processed last wins; the echo normally comes last, so state
converges on what the device reports.

Crosspoints have no mute flag: a crosspoint is muted when its gain is -120 dB.
Toggling one saves the previous gain in DeviceState.saved_matrix_gain and
restores it (or 0 dB if nothing was saved) on the way back.

REGISTRIES:
- ACTIONS: named operations with typed, bounded options (run via run_action)
- FEEDBACKS: named boolean queries (evaluated via check_feedback)
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from dbt44.addresses import input_choices, output_choices
from dbt44.log import get_logger
from dbt44.osc import (
    GAIN_MAX_DB,
    GAIN_MIN_DB,
    GAIN_STEP_DB,
    MUTED_GAIN_DB,
)
from dbt44.state import parse_number

logger = get_logger(__name__)

# Mute modes accepted by set_input_mute / set_output_mute
MUTE_OFF = 'off'
MUTE_ON = 'on'
MUTE_TOGGLE = 'toggle'

# Step presets accepted by the step actions
STEP_UP = '3'
STEP_DOWN = '-3'
STEP_CUSTOM = 'custom'
STEP_CUSTOM_MIN = -120.0
STEP_CUSTOM_MAX = 120.0


class ActionError(ValueError):
    """Unknown action/feedback or invalid option value."""


def clamp_gain(value: float) -> float:
    """Clamp a gain to the device range [-120, +10] dB.

    Raises:
        ActionError: If value is NaN or infinite
    """
    value = float(value)
    if not math.isfinite(value):
        raise ActionError(f"Gain must be a finite number of dB, got {value}")
    return max(GAIN_MIN_DB, min(GAIN_MAX_DB, value))


def step_amount(step_preset: Any, step_custom: Any = None) -> float:
    """Resolve a step preset ('3', '-3' or 'custom') to a dB amount.

    Unusable values count as a 0 dB step.
    """
    if str(step_preset) == STEP_CUSTOM:
        raw = step_custom
    else:
        raw = step_preset
    amount = parse_number(raw)
    return amount if amount is not None else 0.0


def mute_mode(value: Any) -> str:
    """Normalize a mute option to 'on', 'off' or 'toggle'.

    Raises:
        ActionError: If value is not a recognized mute mode
    """
    if value is True:
        return MUTE_ON
    if value is False:
        return MUTE_OFF
    text = str(value).strip().lower()
    if text in (MUTE_ON, 'true', 'mute', '1'):
        return MUTE_ON
    if text in (MUTE_OFF, 'false', 'unmute', '0'):
        return MUTE_OFF
    if text == MUTE_TOGGLE:
        return MUTE_TOGGLE
    raise ActionError(f"Invalid mute mode {value!r} (expected on, off or toggle)")


class MixerController:
    """Gain and mute operations against one DeviceSession.

    Args:
        session: DeviceSession used to send commands; its state is read and
            written by every operation
    """

    def __init__(self, session):
        self.session = session

    @property
    def state(self):
        return self.session.state

    def _apply(self, logical_path: str, variable_id: str, stored: Any, args: List[Any]) -> None:
        """Send, store optimistically, notify."""
        self.session.send(logical_path, args)
        self.state.store(variable_id, stored)
        self.state.notify()

    def _current_gain(self, variable_id: str) -> Optional[float]:
        return parse_number(self.state.get(variable_id))

    # ------------------------------------------------------------------
    # Gain
    # ------------------------------------------------------------------

    def set_crosspoint_gain(self, input_ch: int, output_ch: int, gain: float) -> float:
        """Set the gain of matrix point input -> output. Returns the value sent."""
        value = clamp_gain(gain)
        self._apply(f"/gain/input/{input_ch}/{output_ch}",
                    f"gain_input_{input_ch}_{output_ch}", value, [value])
        return value

    def set_output_gain(self, output_ch: int, gain: float) -> float:
        value = clamp_gain(gain)
        self._apply(f"/gain/output/{output_ch}", f"gain_output_{output_ch}", value, [value])
        return value

    def step_crosspoint_gain(self, input_ch: int, output_ch: int, step: float) -> float:
        """Add step dB to a crosspoint gain (unknown gain counts as 0 dB)."""
        variable_id = f"gain_input_{input_ch}_{output_ch}"
        value = clamp_gain((self._current_gain(variable_id) or 0.0) + step)
        self._apply(f"/gain/input/{input_ch}/{output_ch}", variable_id, value, [value])
        return value

    def step_output_gain(self, output_ch: int, step: float) -> float:
        variable_id = f"gain_output_{output_ch}"
        value = clamp_gain((self._current_gain(variable_id) or 0.0) + step)
        self._apply(f"/gain/output/{output_ch}", variable_id, value, [value])
        return value

    def toggle_crosspoint_mute(self, input_ch: int, output_ch: int) -> float:
        """Mute a crosspoint to -120 dB, or restore the gain saved when it was muted.

        Returns:
            The gain sent to the device
        """
        variable_id = f"gain_input_{input_ch}_{output_ch}"
        saved_key = f"{input_ch}_{output_ch}"
        saved = self.state.saved_matrix_gain
        current = self._current_gain(variable_id)

        if current is not None and current <= MUTED_GAIN_DB:
            restore = saved.pop(saved_key, None)
            value = float(restore) if restore is not None else 0.0
        else:
            saved[saved_key] = current if current is not None else 0.0
            value = MUTED_GAIN_DB

        self._apply(f"/gain/input/{input_ch}/{output_ch}", variable_id, value, [value])
        return value

    # ------------------------------------------------------------------
    # Mute
    # ------------------------------------------------------------------

    def _set_mute(self, direction: str, channel: int, mode: Any) -> bool:
        variable_id = f"mute_{direction}_{channel}"
        mode = mute_mode(mode)
        if mode == MUTE_TOGGLE:
            if direction == 'input':
                mute = not self.state.is_input_muted(channel)
            else:
                mute = not self.state.is_output_muted(channel)
        else:
            mute = mode == MUTE_ON
        self._apply(f"/mute/{direction}/{channel}", variable_id, 1 if mute else 0, [mute])
        return mute

    def set_input_mute(self, input_ch: int, mode: Any) -> bool:
        """Mute, unmute or toggle an input. Returns the new mute state."""
        return self._set_mute('input', input_ch, mode)

    def set_output_mute(self, output_ch: int, mode: Any) -> bool:
        """Mute, unmute or toggle an output. Returns the new mute state."""
        return self._set_mute('output', output_ch, mode)

    def refresh_sync(self) -> bool:
        """Ask the device for all of its settings again."""
        return self.session.send_sync()

    # ------------------------------------------------------------------
    # Registries
    # ------------------------------------------------------------------

    def run_action(self, name: str, options: Optional[Dict[str, Any]] = None) -> Any:
        """Run a registered action with raw option values (e.g. from a UI or CLI).

        Raises:
            ActionError: Unknown action or invalid option
        """
        action = ACTIONS.get(name)
        if action is None:
            raise ActionError(f"Unknown action: {name!r} (available: {', '.join(ACTIONS)})")
        values = action.coerce(options or {})
        logger.debug(f"Action {name} {values}")
        return action.handler(self, values)

    def check_feedback(self, name: str, options: Optional[Dict[str, Any]] = None) -> bool:
        """Evaluate a registered boolean feedback against current state."""
        feedback = FEEDBACKS.get(name)
        if feedback is None:
            raise ActionError(f"Unknown feedback: {name!r} (available: {', '.join(FEEDBACKS)})")
        values = feedback.coerce(options or {})
        return feedback.query(self.state, values)


# ============================================================================
# OPTION SPECS
# ============================================================================

@dataclass(frozen=True)
class OptionSpec:
    """One typed, bounded option of an action or feedback.

    kind is 'choice' (value must be one of choices), 'mute' (a choice that
    also accepts the spellings mute_mode() knows) or 'number' (bounded float).
    """
    id: str
    label: str
    kind: str
    default: Any
    choices: Tuple[Tuple[Any, str], ...] = ()
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    step: Optional[float] = None
    # Only used when another option has this value, e.g. step_preset=custom
    visible_when: Optional[Tuple[str, Any]] = None

    def coerce(self, raw: Any) -> Any:
        if raw is None:
            return self.default
        if self.kind == 'number':
            value = parse_number(raw)
            if value is None:
                raise ActionError(f"{self.label}: expected a number, got {raw!r}")
            if self.minimum is not None and value < self.minimum:
                raise ActionError(f"{self.label}: {value} is below {self.minimum}")
            if self.maximum is not None and value > self.maximum:
                raise ActionError(f"{self.label}: {value} is above {self.maximum}")
            return value
        if self.kind == 'mute':
            raw = mute_mode(raw)
        for choice_id, _ in self.choices:
            if str(choice_id) == str(raw).strip():
                return choice_id
        allowed = ', '.join(str(choice_id) for choice_id, _ in self.choices)
        raise ActionError(f"{self.label}: invalid value {raw!r} (allowed: {allowed})")


def _input_option() -> OptionSpec:
    return OptionSpec('input', 'Input', 'choice', 1, tuple(input_choices()))


def _output_option() -> OptionSpec:
    return OptionSpec('output', 'Output', 'choice', 1, tuple(output_choices()))


def _gain_option() -> OptionSpec:
    return OptionSpec('gain', 'Gain (dB)', 'number', 0.0,
                      minimum=GAIN_MIN_DB, maximum=GAIN_MAX_DB, step=GAIN_STEP_DB)


def _step_options() -> List[OptionSpec]:
    return [
        OptionSpec('step_preset', 'Step', 'choice', STEP_UP,
                   ((STEP_UP, '+3 dB'), (STEP_DOWN, '-3 dB'), (STEP_CUSTOM, 'Custom amount'))),
        OptionSpec('step_custom', 'Custom step (dB)', 'number', 3.0,
                   minimum=STEP_CUSTOM_MIN, maximum=STEP_CUSTOM_MAX, step=GAIN_STEP_DB,
                   visible_when=('step_preset', STEP_CUSTOM)),
    ]


def _mute_option() -> OptionSpec:
    return OptionSpec('mute', 'Mute', 'mute', MUTE_OFF,
                      ((MUTE_OFF, 'Unmute'), (MUTE_ON, 'Mute'), (MUTE_TOGGLE, 'Toggle')))


class _Definition:
    """Shared option handling for actions and feedbacks."""
    options: List[OptionSpec]

    def coerce(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        values = {}
        for option in self.options:
            values[option.id] = option.coerce(raw.get(option.id))
        return values


@dataclass
class ActionDefinition(_Definition):
    name: str
    label: str
    handler: Any
    options: List[OptionSpec] = field(default_factory=list)


@dataclass
class FeedbackDefinition(_Definition):
    name: str
    label: str
    description: str
    query: Any
    options: List[OptionSpec] = field(default_factory=list)


# ============================================================================
# ACTION REGISTRY
# ============================================================================

ACTIONS: Dict[str, ActionDefinition] = {
    'refresh_sync': ActionDefinition(
        'refresh_sync', 'Refresh sync (get all settings from device)',
        lambda mixer, o: mixer.refresh_sync()),
    'set_input_gain': ActionDefinition(
        'set_input_gain', 'Set input gain (matrix)',
        lambda mixer, o: mixer.set_crosspoint_gain(o['input'], o['output'], o['gain']),
        [_input_option(), _output_option(), _gain_option()]),
    'set_output_gain': ActionDefinition(
        'set_output_gain', 'Set output gain',
        lambda mixer, o: mixer.set_output_gain(o['output'], o['gain']),
        [_output_option(), _gain_option()]),
    'step_input_gain': ActionDefinition(
        'step_input_gain', 'Step input gain (matrix)',
        lambda mixer, o: mixer.step_crosspoint_gain(
            o['input'], o['output'], step_amount(o['step_preset'], o['step_custom'])),
        [_input_option(), _output_option()] + _step_options()),
    'step_output_gain': ActionDefinition(
        'step_output_gain', 'Step output gain',
        lambda mixer, o: mixer.step_output_gain(
            o['output'], step_amount(o['step_preset'], o['step_custom'])),
        [_output_option()] + _step_options()),
    'matrix_point_mute_toggle': ActionDefinition(
        'matrix_point_mute_toggle', 'Matrix point mute (toggle)',
        lambda mixer, o: mixer.toggle_crosspoint_mute(o['input'], o['output']),
        [_input_option(), _output_option()]),
    'set_input_mute': ActionDefinition(
        'set_input_mute', 'Set input mute',
        lambda mixer, o: mixer.set_input_mute(o['input'], o['mute']),
        [_input_option(), _mute_option()]),
    'set_output_mute': ActionDefinition(
        'set_output_mute', 'Set output mute',
        lambda mixer, o: mixer.set_output_mute(o['output'], o['mute']),
        [_output_option(), _mute_option()]),
}


# ============================================================================
# FEEDBACK REGISTRY
# ============================================================================

FEEDBACKS: Dict[str, FeedbackDefinition] = {
    'input_muted': FeedbackDefinition(
        'input_muted', 'Input muted',
        'True when the selected input is muted',
        lambda state, o: state.is_input_muted(o['input']),
        [_input_option()]),
    'output_muted': FeedbackDefinition(
        'output_muted', 'Output muted',
        'True when the selected output is muted',
        lambda state, o: state.is_output_muted(o['output']),
        [_output_option()]),
    'matrix_point_muted': FeedbackDefinition(
        'matrix_point_muted', 'Matrix point muted (gain at -120)',
        'True when this matrix point (input -> output) gain is at -120',
        lambda state, o: state.is_crosspoint_muted(o['input'], o['output']),
        [_input_option(), _output_option()]),
}
