"""
Address mapping between DBT-44 OSC paths and flat variable ids.

On the wire every path ends with /<device_name>:

    /gain/input/2/5/dbt44-device  <->  gain_input_2_5

Variable ids are parsed once into a VariableRef (a kind plus the channel
fields it carries) and labels are rendered from that, so
gain_input_2_5 reads "Gain: Analog in 2 -> Dante out 1".

Channel numbering: 1-4 are Analog 1-4, 5-8 are Dante 1-4, on both sides.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from dbt44.log import get_logger
from dbt44.osc import NUM_INPUTS, NUM_OUTPUTS

logger = get_logger(__name__)

INPUT = 'input'
OUTPUT = 'output'

# parseInt-style leading integer ("5", "5abc", "-3")
_LEADING_INT = re.compile(r'^\s*([+-]?\d+)')
_WORD_START = re.compile(r'\b\w')


# ============================================================================
# PATHS
# ============================================================================

def osc_path(logical_path: str, device_name: str) -> Optional[str]:
    """Build the wire path /<path>/<device_name>.

    Returns None when no device name is configured: the DBT-44 ignores
    messages that are not addressed to it.

    Examples:
        >>> osc_path("/gain/output/1", "unit1")
        '/gain/output/1/unit1'
        >>> osc_path("sync", " unit1 ")
        '/sync/unit1'
    """
    name = (device_name or '').strip()
    if not name:
        return None
    base = logical_path if logical_path.startswith('/') else f"/{logical_path}"
    return f"{base}/{name}"


def path_to_variable_id(path: str, device_name: str) -> Optional[str]:
    """Map an inbound OSC path to a variable id.

    Strips a trailing /<device_name> if present, then the leading slash, and
    joins the remaining segments with underscores.

    Examples:
        >>> path_to_variable_id("/gain/input/2/5/unit1", "unit1")
        'gain_input_2_5'
    """
    if not path or not isinstance(path, str):
        return None
    name = (device_name or '').strip()
    without_name = path
    if name and path.endswith('/' + name):
        without_name = path[:len(path) - len(name) - 1]
    if without_name.startswith('/'):
        without_name = without_name[1:]
    return without_name.replace('/', '_')


# ============================================================================
# CHANNELS
# ============================================================================

def channel_number(value) -> int:
    """Parse a channel number tolerantly; anything unusable is channel 1."""
    match = _LEADING_INT.match(str(value))
    number = int(match.group(1)) if match else 0
    return number or 1


def channel_kind(number: int) -> str:
    """'Analog' for channels 1-4, 'Dante' for 5-8."""
    return 'Analog' if number <= 4 else 'Dante'


def channel_display_number(number: int) -> int:
    """Numbering restarts at 1 within each kind."""
    return number if number <= 4 else number - 4


def channel_label(channel, direction: str) -> str:
    """Human label for a channel, e.g. "Analog in 2" or "Dante out 1"."""
    n = channel_number(channel)
    in_out = 'in' if direction == INPUT else 'out'
    return f"{channel_kind(n)} {in_out} {channel_display_number(n)}"


def input_choices() -> List[Tuple[int, str]]:
    """Dropdown choices for inputs: [(1, 'Analog in 1'), ..., (8, 'Dante in 4')]."""
    return [(n, channel_label(n, INPUT)) for n in range(1, NUM_INPUTS + 1)]


def output_choices() -> List[Tuple[int, str]]:
    """Dropdown choices for outputs: [(1, 'Analog out 1'), ..., (8, 'Dante out 4')]."""
    return [(n, channel_label(n, OUTPUT)) for n in range(1, NUM_OUTPUTS + 1)]


# ============================================================================
# VARIABLE IDS
# ============================================================================

class VariableKind(Enum):
    """Known variable id shapes reported by the DBT-44."""
    CROSSPOINT_GAIN = 'gain_input'     # gain_input_<in>_<out>
    OUTPUT_GAIN = 'gain_output'        # gain_output_<out>
    INPUT_MUTE = 'mute_input'          # mute_input_<in>
    OUTPUT_MUTE = 'mute_output'        # mute_output_<out>
    TRIM = 'trim'                      # trim_<in>
    DELAY = 'delay'                    # delay_<out>
    INPUT_PHASE = 'phase_input'        # phase_input_<in>
    OUTPUT_PHASE = 'phase_output'      # phase_output_<out>
    INPUT_EQ_ENABLE = 'eqenable_input'    # eqenable_input_<in>
    OUTPUT_EQ_ENABLE = 'eqenable_output'  # eqenable_output_<out>
    INPUT_COMP = 'comp_input'          # comp_<sub>_input_<in>
    OUTPUT_COMP = 'comp_output'        # comp_<sub>_output_<out>
    INPUT_EQ_GAIN = 'eq_gain_input'    # eq_gain_input_<in>[_<pt>]
    OUTPUT_EQ_GAIN = 'eq_gain_output'  # eq_gain_output_<out>[_<pt>]
    UNKNOWN = 'unknown'


@dataclass(frozen=True)
class VariableRef:
    """A parsed variable id.

    Channel fields hold the raw segment text; labels parse them tolerantly.
    """
    kind: VariableKind
    raw: str
    input: Optional[str] = None
    output: Optional[str] = None
    sub: Optional[str] = None
    point: Optional[str] = None


def _segment(parts: List[str], index: int) -> Optional[str]:
    return parts[index] if index < len(parts) else None


def parse_variable_id(variable_id: str) -> VariableRef:
    """Parse a variable id into a VariableRef.

    Matching is by leading segments only; trailing extra segments are
    ignored. Ids that match nothing come back as VariableKind.UNKNOWN.
    """
    parts = variable_id.split('_')
    first = parts[0]
    p1, p2, p3, p4 = (_segment(parts, i) for i in range(1, 5))

    if first == 'gain':
        if p1 == INPUT and p2 is not None and p3 is not None:
            return VariableRef(VariableKind.CROSSPOINT_GAIN, variable_id, input=p2, output=p3)
        if p1 == OUTPUT and p2 is not None:
            return VariableRef(VariableKind.OUTPUT_GAIN, variable_id, output=p2)
    elif first == 'mute':
        if p1 == INPUT and p2 is not None:
            return VariableRef(VariableKind.INPUT_MUTE, variable_id, input=p2)
        if p1 == OUTPUT and p2 is not None:
            return VariableRef(VariableKind.OUTPUT_MUTE, variable_id, output=p2)
    elif first == 'trim' and p1 is not None:
        return VariableRef(VariableKind.TRIM, variable_id, input=p1)
    elif first == 'delay' and p1 is not None:
        return VariableRef(VariableKind.DELAY, variable_id, output=p1)
    elif first == 'phase':
        if p1 == INPUT and p2 is not None:
            return VariableRef(VariableKind.INPUT_PHASE, variable_id, input=p2)
        if p1 == OUTPUT and p2 is not None:
            return VariableRef(VariableKind.OUTPUT_PHASE, variable_id, output=p2)
    elif first == 'eqenable':
        if p1 == INPUT and p2 is not None:
            return VariableRef(VariableKind.INPUT_EQ_ENABLE, variable_id, input=p2)
        if p1 == OUTPUT and p2 is not None:
            return VariableRef(VariableKind.OUTPUT_EQ_ENABLE, variable_id, output=p2)
    elif first == 'comp' and p1 is not None:
        if p2 == INPUT and p3 is not None:
            return VariableRef(VariableKind.INPUT_COMP, variable_id, input=p3, sub=p1)
        if p2 == OUTPUT and p3 is not None:
            return VariableRef(VariableKind.OUTPUT_COMP, variable_id, output=p3, sub=p1)
    elif first == 'eq' and p1 == 'gain':
        if p2 == INPUT and p3 is not None:
            return VariableRef(VariableKind.INPUT_EQ_GAIN, variable_id, input=p3, point=p4)
        if p2 == OUTPUT and p3 is not None:
            return VariableRef(VariableKind.OUTPUT_EQ_GAIN, variable_id, output=p3, point=p4)

    return VariableRef(VariableKind.UNKNOWN, variable_id)


# ============================================================================
# LABELS
# ============================================================================

def _capitalize(text: str) -> str:
    return text[:1].upper() + text[1:]


def _point_suffix(ref: VariableRef) -> str:
    return f" (pt {ref.point})" if ref.point is not None else ''


_LABELS: Dict[VariableKind, Callable[[VariableRef], str]] = {
    VariableKind.CROSSPOINT_GAIN: lambda r: (
        f"Gain: {channel_label(r.input, INPUT)} -> {channel_label(r.output, OUTPUT)}"),
    VariableKind.OUTPUT_GAIN: lambda r: f"Gain: {channel_label(r.output, OUTPUT)}",
    VariableKind.INPUT_MUTE: lambda r: f"Mute: {channel_label(r.input, INPUT)}",
    VariableKind.OUTPUT_MUTE: lambda r: f"Mute: {channel_label(r.output, OUTPUT)}",
    VariableKind.TRIM: lambda r: f"Trim: {channel_label(r.input, INPUT)}",
    VariableKind.DELAY: lambda r: f"Delay: {channel_label(r.output, OUTPUT)}",
    VariableKind.INPUT_PHASE: lambda r: f"Phase: {channel_label(r.input, INPUT)}",
    VariableKind.OUTPUT_PHASE: lambda r: f"Phase: {channel_label(r.output, OUTPUT)}",
    VariableKind.INPUT_EQ_ENABLE: lambda r: f"EQ enable: {channel_label(r.input, INPUT)}",
    VariableKind.OUTPUT_EQ_ENABLE: lambda r: f"EQ enable: {channel_label(r.output, OUTPUT)}",
    VariableKind.INPUT_COMP: lambda r: (
        f"Comp {_capitalize(r.sub)}: {channel_label(r.input, INPUT)}"),
    VariableKind.OUTPUT_COMP: lambda r: (
        f"Comp {_capitalize(r.sub)}: {channel_label(r.output, OUTPUT)}"),
    VariableKind.INPUT_EQ_GAIN: lambda r: (
        f"EQ gain: {channel_label(r.input, INPUT)}{_point_suffix(r)}"),
    VariableKind.OUTPUT_EQ_GAIN: lambda r: (
        f"EQ gain: {channel_label(r.output, OUTPUT)}{_point_suffix(r)}"),
}


def _title(variable_id: str) -> str:
    """'comp_attack_bus' -> 'Comp Attack Bus' (only word starts change)."""
    spaced = variable_id.replace('_', ' ')
    return _WORD_START.sub(lambda m: m.group(0).upper(), spaced)


def variable_id_to_label(variable_id) -> str:
    """Human-readable name for a variable id. Never raises.

    Examples:
        >>> variable_id_to_label("gain_input_2_5")
        'Gain: Analog in 2 -> Dante out 1'
        >>> variable_id_to_label("comp_threshold_output_6")
        'Comp Threshold: Dante out 2'
        >>> variable_id_to_label("levels_peak")
        'Levels Peak'
    """
    if not isinstance(variable_id, str) or not variable_id:
        return '?'
    try:
        ref = parse_variable_id(variable_id)
        render = _LABELS.get(ref.kind)
        if render is None:
            return _title(variable_id)
        return render(ref)
    except Exception as e:
        logger.debug(f"Label error for {variable_id!r}: {e}")
        return variable_id.replace('_', ' ')
