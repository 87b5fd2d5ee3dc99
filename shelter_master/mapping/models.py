"""
Command model for the port mapping table.

A mapped command key is one of two kinds:
    PlainCommand          - exactly one register transaction
    TimeCompositeCommand  - an _HOUR/_MINUTE sub-command pair combined as "HH:MM"
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Union

from protocols.modbus.register_map import (
    decode_bool,
    decode_fixed_point,
    encode_bool,
    encode_fixed_point,
    is_read_function,
    is_write_function,
)

TIME_INTEGRATED = "TIME_INTEGRATED"
HOUR_SUFFIX = "_HOUR"
MINUTE_SUFFIX = "_MINUTE"


class ValueType(str, Enum):
    BOOLEAN = "boolean"
    NUMBER = "number"


class CommandIntent(str, Enum):
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class TransactionDescriptor:
    """Resolved physical target of one abstract command."""
    function_code: int
    address: int
    length: int = 1
    fixed_value: Optional[int] = None

    @property
    def intent(self) -> CommandIntent:
        return CommandIntent.WRITE if is_write_function(self.function_code) else CommandIntent.READ

    @property
    def is_read(self) -> bool:
        return is_read_function(self.function_code)

    @property
    def is_write(self) -> bool:
        return is_write_function(self.function_code)

    def to_dict(self) -> Dict:
        return {
            "functionCode": int(self.function_code),
            "address": self.address,
            "length": self.length,
            "fixedValue": self.fixed_value,
        }


@dataclass(frozen=True)
class PlainCommand:
    key: str
    descriptor: TransactionDescriptor
    field: str
    value_type: ValueType = ValueType.NUMBER
    collection: str = "data"
    scale: Optional[int] = None
    kind: str = field(default="plain", init=False)

    @property
    def is_get(self) -> bool:
        return self.key.startswith("GET_")

    def decode(self, raw):
        """Convert a raw register value into the semantic field value."""
        if self.value_type == ValueType.BOOLEAN:
            return decode_bool(raw)
        if self.scale and isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return decode_fixed_point(raw, self.scale)
        return raw

    def encode(self, value) -> int:
        """Convert a semantic value into the raw word written to the DDC."""
        if self.value_type == ValueType.BOOLEAN:
            return encode_bool(value)
        return encode_fixed_point(value, self.scale or 1)

    def semantic_value(self, value):
        """Normalize a requested write value to what the data record stores."""
        if self.value_type == ValueType.BOOLEAN:
            return self.encode(value) == 1
        if isinstance(value, str):
            number = float(value)
            return int(number) if number.is_integer() and not self.scale else number
        return value


@dataclass(frozen=True)
class TimeCompositeCommand:
    key: str
    hour_key: str
    minute_key: str
    field: str
    kind: str = field(default="time_composite", init=False)

    @property
    def is_get(self) -> bool:
        return self.key.startswith("GET_")


MappedCommand = Union[PlainCommand, TimeCompositeCommand]


def composite_field_name(command_key: str) -> str:
    """GET_START_TIME_1 -> start_time_1"""
    _, _, rest = command_key.partition("_")
    return rest.lower()


def parse_entry(command_key: str, entry) -> MappedCommand:
    """
    Parse one raw mapping table entry.

    Args:
        command_key: Abstract command key (e.g. "GET_POWER")
        entry: Either the TIME_INTEGRATED marker or a dict with port/field/type

    Returns:
        PlainCommand or TimeCompositeCommand

    Raises:
        ValueError: entry is malformed
    """
    if entry == TIME_INTEGRATED:
        return TimeCompositeCommand(
            key=command_key,
            hour_key=command_key + HOUR_SUFFIX,
            minute_key=command_key + MINUTE_SUFFIX,
            field=composite_field_name(command_key),
        )

    if not isinstance(entry, dict) or "port" not in entry:
        raise ValueError(f"{command_key}: entry must be '{TIME_INTEGRATED}' or define a port")

    port = entry["port"]
    if "functionCode" not in port or "address" not in port:
        raise ValueError(f"{command_key}: port requires functionCode and address")
    if not entry.get("field"):
        raise ValueError(f"{command_key}: field is required")

    descriptor = TransactionDescriptor(
        function_code=int(port["functionCode"]),
        address=int(port["address"]),
        length=int(port.get("length", 1)),
        fixed_value=port.get("value"),
    )
    return PlainCommand(
        key=command_key,
        descriptor=descriptor,
        field=entry["field"],
        value_type=ValueType(entry.get("type", ValueType.NUMBER.value)),
        collection=entry.get("collection", "data"),
        scale=entry.get("scale"),
    )
