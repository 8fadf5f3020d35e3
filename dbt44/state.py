"""
Device state store - last-known DBT-44 values as formatted strings.

Every value the device reports (or the bridge writes optimistically) is kept
under its variable id as a display string:

    True / False          -> "1" / "0"
    None (OSC nil)        -> "0"
    exactly 0 or 1        -> "0" / "1"
    other finite numbers  -> one decimal, rounded half up ("-3.456" -> "-3.5")
    anything else         -> str(value)

Local writes and device echoes are not ordered against each other: whichever
is processed last wins. The device echo is authoritative and usually arrives
after the optimistic write, so the store converges on the device's value.
"""

import math
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from dbt44.addresses import variable_id_to_label
from dbt44.log import get_logger
from dbt44.osc import MUTED_GAIN_DB

logger = get_logger(__name__)

DEVICE_NAME_VARIABLE = 'device_name'
DEVICE_NAME_LABEL = 'Device name (configured)'

# parseFloat-style leading number ("1.0", "-3.5dB", ".5", "1e3")
_LEADING_NUMBER = re.compile(r'^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?')

Observer = Callable[['DeviceState'], None]


# ============================================================================
# VALUE PARSING AND FORMATTING
# ============================================================================

def _to_number(value: Any) -> Optional[float]:
    """Strict numeric coercion: whole value must be numeric, '' counts as 0."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return None
    return None


def parse_number(value: Any) -> Optional[float]:
    """Parse the leading number of a value, or None.

    Accepts stored strings ("-2.0"), raw numbers and booleans. NaN counts as
    unparseable.

    Examples:
        >>> parse_number("-2.0")
        -2.0
        >>> parse_number("true") is None
        True
    """
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        match = _LEADING_NUMBER.match(value)
        if not match:
            return None
        number = float(match.group(0))
    else:
        return None
    return None if math.isnan(number) else number


def format_value(value: Any) -> str:
    """Format a value for the state store.

    Examples:
        >>> format_value(True)
        '1'
        >>> format_value(0.0)
        '0'
        >>> format_value(-3.456)
        '-3.5'
        >>> format_value("dbt44")
        'dbt44'
    """
    if value is True:
        return '1'
    if value is False:
        return '0'
    if value is None:
        return '0'

    number = _to_number(value)
    if number is not None and math.isfinite(number):
        # Boolean-like values stay '0' / '1', not '0.0' / '1.0'
        if number == 0 or number == 1:
            return str(int(number))
        rounded = math.floor(number * 10 + 0.5) / 10
        return f"{rounded:.1f}"
    return str(value)


def is_truthy(value: Any) -> bool:
    """Canonical "is on" test for mute-style values.

    Numeric values ("1", "1.0", 1, "0.0") are on when non-zero; otherwise only
    True and the string "true" count as on.

    Examples:
        >>> [is_truthy(v) for v in ("1", "1.0", 1, True, "true")]
        [True, True, True, True, True]
        >>> [is_truthy(v) for v in ("0", "0.0", 0, False, None)]
        [False, False, False, False, False]
    """
    if value is True:
        return True
    number = parse_number(value)
    if number is not None:
        return number != 0
    return isinstance(value, str) and value.strip().lower() == 'true'


# ============================================================================
# STATE STORE
# ============================================================================

class DeviceState:
    """Flat variable id -> formatted value map for one DBT-44.

    Attributes:
        values (dict): variable id -> formatted string, in first-seen order
        saved_matrix_gain (dict): "<in>_<out>" -> gain (dB) before a
            crosspoint was muted, consumed when it is unmuted
    """

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.saved_matrix_gain: Dict[str, float] = {}
        self._labels: Dict[str, str] = {}
        self._observers: List[Observer] = []

    def __contains__(self, variable_id: str) -> bool:
        return variable_id in self.values

    def __len__(self) -> int:
        return len(self.values)

    def get(self, variable_id: str, default: Optional[str] = None) -> Optional[str]:
        return self.values.get(variable_id, default)

    def store(self, variable_id: Optional[str], value: Any) -> None:
        """Store one value. Call notify() after a batch."""
        if not variable_id:
            return
        self.values[variable_id] = format_value(value)
        if variable_id not in self._labels:
            self._labels[variable_id] = variable_id_to_label(variable_id)

    def label(self, variable_id: str) -> str:
        return self._labels.get(variable_id) or variable_id_to_label(variable_id)

    def labels(self) -> Dict[str, str]:
        """variable id -> human-readable label, in registration order."""
        return dict(self._labels)

    def definitions(self) -> List[Tuple[str, str]]:
        """(variable id, label) pairs including the device_name variable."""
        return [(DEVICE_NAME_VARIABLE, DEVICE_NAME_LABEL)] + list(self._labels.items())

    def variables(self, device_name: str = '') -> Dict[str, str]:
        """Variable feed: device_name first, then every stored value."""
        feed = {DEVICE_NAME_VARIABLE: (device_name or '').strip()}
        feed.update(self.values)
        return feed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_input_muted(self, input_ch: int) -> bool:
        return is_truthy(self.values.get(f"mute_input_{input_ch}"))

    def is_output_muted(self, output_ch: int) -> bool:
        return is_truthy(self.values.get(f"mute_output_{output_ch}"))

    def is_crosspoint_muted(self, input_ch: int, output_ch: int) -> bool:
        """A crosspoint is muted when its gain is at (or below) -120 dB."""
        gain = parse_number(self.values.get(f"gain_input_{input_ch}_{output_ch}"))
        return gain is not None and gain <= MUTED_GAIN_DB

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, observer: Observer) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def notify(self) -> None:
        """Run every observer synchronously. Observer errors are logged."""
        for observer in list(self._observers):
            try:
                observer(self)
            except Exception as e:
                logger.warning(f"State observer failed: {e}", exc_info=True)

    def clear(self) -> None:
        """Forget all values and saved gains (observers stay subscribed)."""
        self.values.clear()
        self.saved_matrix_gain.clear()
        self._labels.clear()
