"""
DDC Controller Register Map
===========================

Hardware port table of the shelter DDC controller.

Every controllable point on the controller is reached through a (function code,
address) pair. A port may expose a "set" side (write), a "get" side (read) or
both, and the two sides do not always share an address: DO manual control is
written at one coil and its live state is read back from another.

Address conventions (0-based, as sent in the Modbus frame):
    0x Coils            (FC01 read, FC05/FC15 write) - DO mode/manual, seasonal flags
    1x Discrete inputs  (FC02 read)                  - DI contact states
    3x Input registers  (FC04 read)                  - read-only analog inputs
    4x Holding registers(FC03 read, FC06/FC16 write) - schedules, HVAC setpoints, DDC clock

Fixed-point encoding:
    Temperatures and humidity are stored as value * 10 (e.g. 22.0 C -> 220).
"""

from enum import IntEnum
from typing import Dict, Optional


class FunctionCode(IntEnum):
    """Modbus function codes used by the DDC."""
    READ_COILS = 1
    READ_DISCRETE_INPUTS = 2
    READ_HOLDING_REGISTERS = 3
    READ_INPUT_REGISTERS = 4
    WRITE_SINGLE_COIL = 5
    WRITE_SINGLE_REGISTER = 6
    WRITE_MULTIPLE_COILS = 15
    WRITE_MULTIPLE_REGISTERS = 16


READ_FUNCTION_CODES = frozenset({
    FunctionCode.READ_COILS,
    FunctionCode.READ_DISCRETE_INPUTS,
    FunctionCode.READ_HOLDING_REGISTERS,
    FunctionCode.READ_INPUT_REGISTERS,
})

WRITE_FUNCTION_CODES = frozenset({
    FunctionCode.WRITE_SINGLE_COIL,
    FunctionCode.WRITE_SINGLE_REGISTER,
    FunctionCode.WRITE_MULTIPLE_COILS,
    FunctionCode.WRITE_MULTIPLE_REGISTERS,
})

COIL_FUNCTION_CODES = frozenset({
    FunctionCode.READ_COILS,
    FunctionCode.READ_DISCRETE_INPUTS,
    FunctionCode.WRITE_SINGLE_COIL,
    FunctionCode.WRITE_MULTIPLE_COILS,
})

TEMPERATURE_SCALE = 10


def is_read_function(function_code: int) -> bool:
    return function_code in READ_FUNCTION_CODES


def is_write_function(function_code: int) -> bool:
    return function_code in WRITE_FUNCTION_CODES


def _coil(address: int, read_address: Optional[int] = None) -> Dict:
    return {
        "set": {"functionCode": FunctionCode.WRITE_SINGLE_COIL, "address": address},
        "get": {"functionCode": FunctionCode.READ_COILS,
                "address": address if read_address is None else read_address},
    }


def _holding(address: int, read_address: Optional[int] = None) -> Dict:
    return {
        "set": {"functionCode": FunctionCode.WRITE_SINGLE_REGISTER, "address": address},
        "get": {"functionCode": FunctionCode.READ_HOLDING_REGISTERS,
                "address": address if read_address is None else read_address},
    }


def _read_only(address: int, function_code: int = FunctionCode.READ_HOLDING_REGISTERS) -> Dict:
    return {"get": {"functionCode": function_code, "address": address}}


def _digital_output(mode: int, manual: int, status: int, schedule_1, schedule_2=None) -> Dict:
    """
    Build the port group of one DO channel.

    Args:
        mode: Coil selecting manual (0) or schedule (1) operation
        manual: Coil driving the output in manual mode
        status: Coil reporting the live output state
        schedule_1: (start_hour, start_min, end_hour, end_min) holding registers
        schedule_2: Optional second schedule, same layout
    """
    group = {
        "AUTO": _coil(mode),
        "POWER": _coil(manual, read_address=status),
        "STATUS": _read_only(status, FunctionCode.READ_COILS),
    }
    schedules = [(1, schedule_1)]
    if schedule_2:
        schedules.append((2, schedule_2))
    for number, (start_hour, start_min, end_hour, end_min) in schedules:
        group[f"SCHED{number}_START_HOUR"] = _holding(start_hour)
        group[f"SCHED{number}_START_MIN"] = _holding(start_min)
        group[f"SCHED{number}_END_HOUR"] = _holding(end_hour)
        group[f"SCHED{number}_END_MIN"] = _holding(end_min)
    return group


# DO channels: mode / manual / status coils and schedule registers
HW_PORTS: Dict[str, Dict] = {
    "DO1": _digital_output(351, 367, 820, (41, 57, 73, 89), (145, 150, 155, 160)),
    "DO2": _digital_output(352, 368, 821, (42, 58, 74, 90), (146, 151, 156, 161)),
    "DO3": _digital_output(353, 369, 822, (43, 59, 75, 91), (147, 152, 157, 162)),
    "DO4": _digital_output(354, 370, 823, (44, 60, 76, 92), (148, 153, 158, 163)),
    "DO5": _digital_output(355, 371, 824, (45, 61, 77, 93)),
    "DO6": _digital_output(356, 372, 825, (46, 62, 78, 94)),
    "DO13": _digital_output(363, 382, 832, (53, 69, 85, 101)),

    "COOLER": {
        "AUTO": _coil(364),
        "POWER": {
            "set": {"functionCode": FunctionCode.WRITE_SINGLE_COIL, "address": 380},
            "get": {"functionCode": FunctionCode.READ_HOLDING_REGISTERS, "address": 142},
        },
        "MODE": _holding(128, read_address=115),
        "SPEED": _holding(129, read_address=116),
        "SUMMER_CONT_TEMP": _holding(125),
        "WINTER_CONT_TEMP": _holding(126),
        "CUR_TEMP": _read_only(120),
        "ALARM": _read_only(118),
        "SCHED1_START_HOUR": _holding(54),
        "SCHED1_START_MIN": _holding(70),
        "SCHED1_END_HOUR": _holding(86),
        "SCHED1_END_MIN": _holding(102),
    },

    "EXCHANGER": {
        "AUTO": _coil(365),
        "POWER": _coil(381),
        "MODE": _holding(112, read_address=110),
        "SPEED": _holding(111, read_address=109),
        "ALARM": _read_only(108),
        "SCHED1_START_HOUR": _holding(55),
        "SCHED1_START_MIN": _holding(71),
        "SCHED1_END_HOUR": _holding(87),
        "SCHED1_END_MIN": _holding(103),
    },

    "INTEGRATED_SENSOR": {
        "PM10": _read_only(133),
        "PM25": _read_only(134),
        "PM100": _read_only(135),
        "CO2": _read_only(136),
        "VOC": _read_only(137),
        "TEMP": _read_only(131),
        "HUM": _read_only(139),
        "ALARM": _read_only(140),
    },

    "DDC_TIME": {
        "YEAR": _holding(890),
        "MONTH": _holding(891),
        "DAY": _holding(892),
        "DOW": _holding(893),
        "HOUR": _holding(894),
        "MIN": _holding(895),
        "SECOND": _holding(896),
    },

    "SEASONAL": {
        "SEASON": _coil(326),
        # Monthly summer flags JAN..DEC occupy consecutive coils
        "MONTHLY_SUMMER": {
            month: _coil(327 + index)
            for index, month in enumerate(
                ["JAN", "FEB", "MAR", "APR", "MAY", "JUN",
                 "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"])
        },
    },
}


def encode_fixed_point(value: float, scale: int = TEMPERATURE_SCALE) -> int:
    """Encode a semantic value into a scaled 16-bit register value."""
    return int(round(float(value) * scale)) & 0xFFFF


def decode_fixed_point(register_value: int, scale: int = TEMPERATURE_SCALE) -> float:
    """Decode a scaled register value (e.g. 220 -> 22.0)."""
    return register_value / scale


def encode_bool(value) -> int:
    """Encode a boolean-like value as a coil/register word (1 or 0)."""
    if isinstance(value, str):
        return 1 if value.strip().lower() in ("1", "true", "on") else 0
    return 1 if value else 0


def decode_bool(register_value) -> bool:
    return register_value == 1 or register_value is True
