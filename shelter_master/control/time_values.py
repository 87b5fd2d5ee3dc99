"""
Time value parsing for schedule commands
"""
import re
from typing import Tuple, Union

from shelter_master.errors import TimeValueParseError

_HH_MM = re.compile(r"^(\d{1,2}):(\d{1,2})$")
_HHMM = re.compile(r"^\d{1,4}$")


def parse_time_value(value: Union[str, int]) -> Tuple[int, int]:
    """
    Parse a schedule time into (hour, minute).

    Accepted forms:
        "07:30"      -> (7, 30)
        "0730", 730  -> (7, 30)

    Raises:
        TimeValueParseError: unparseable, or hour/minute out of range
    """
    if isinstance(value, bool) or value is None:
        raise TimeValueParseError(value)

    if isinstance(value, int):
        if value < 0:
            raise TimeValueParseError(value, "negative value")
        hour, minute = divmod(value, 100)
    else:
        text = str(value).strip()
        match = _HH_MM.match(text)
        if match:
            hour, minute = int(match.group(1)), int(match.group(2))
        elif _HHMM.match(text):
            hour, minute = divmod(int(text), 100)
        else:
            raise TimeValueParseError(value)

    if not 0 <= hour <= 23:
        raise TimeValueParseError(value, f"hour {hour} out of range 0-23")
    if not 0 <= minute <= 59:
        raise TimeValueParseError(value, f"minute {minute} out of range 0-59")
    return hour, minute
