"""
Modbus Protocol Implementation
===============================

Modbus TCP client and DDC register map used by the shelter master.

This package provides:
    - ModbusClient: Blocking Modbus TCP client (FC01-06, FC15, FC16)
    - Register map: DDC hardware port table and function code sets
    - Fixed-point and boolean encoding helpers

Usage:
    from protocols.modbus import ModbusClient
    from protocols.modbus.register_map import HW_PORTS

    client = ModbusClient("192.168.0.10", port=502, unit_id=1)
    values = client.read_holding_registers(120, 1)
"""

from protocols.modbus.client import ModbusClient, ModbusProtocolError, ModbusExceptionCode
from protocols.modbus.register_map import (
    FunctionCode,
    HW_PORTS,
    READ_FUNCTION_CODES,
    WRITE_FUNCTION_CODES,
    COIL_FUNCTION_CODES,
    is_read_function,
    is_write_function,
    encode_fixed_point,
    decode_fixed_point,
    encode_bool,
    decode_bool,
)

__all__ = [
    # Client
    'ModbusClient',
    'ModbusProtocolError',
    'ModbusExceptionCode',

    # Register map
    'FunctionCode',
    'HW_PORTS',
    'READ_FUNCTION_CODES',
    'WRITE_FUNCTION_CODES',
    'COIL_FUNCTION_CODES',
    'is_read_function',
    'is_write_function',

    # Encoding functions
    'encode_fixed_point',
    'decode_fixed_point',
    'encode_bool',
    'decode_bool',
]
