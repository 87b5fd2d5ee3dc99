"""
Modbus TCP Client Wrapper
=========================

Blocking Modbus TCP client used by the shelter master to reach the DDC.

Features:
    - Connection management with reconnect on next request
    - Read operations (FC01/02/03/04)
    - Write operations (FC05/06/15/16)
    - Exception response detection
    - Per-client statistics

The client is not thread-safe; the command queue guarantees that only one
request is outstanding at a time.
"""

import socket
import struct
import logging
from enum import IntEnum
from typing import List, Optional, Sequence
from datetime import datetime


logger = logging.getLogger(__name__)


class ModbusExceptionCode(IntEnum):
    """Modbus exception codes."""
    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03
    SLAVE_DEVICE_FAILURE = 0x04
    SLAVE_DEVICE_BUSY = 0x06


class ModbusProtocolError(Exception):
    """Exception response or malformed frame received from the slave."""

    def __init__(self, message: str, exception_code: Optional[int] = None):
        super().__init__(message)
        self.exception_code = exception_code


class ModbusClient:
    """
    Modbus TCP client for communication with the shelter DDC.

    Implements Modbus protocol framing:
    - MBAP (Modbus Application Protocol) header
    - Reads return a list of register words (or coil states as 0/1), None on error
    - Writes return True/False; the failure reason is kept in last_error
    """

    def __init__(self, host: str, port: int = 502, unit_id: int = 1, timeout_s: float = 2.0):
        """
        Initialize Modbus client.

        Args:
            host: DDC IP address or hostname
            port: Modbus TCP port (default 502)
            unit_id: Modbus slave id placed in the MBAP header
            timeout_s: Socket timeout in seconds
        """
        self.host = host
        self.port = port
        self.unit_id = unit_id
        self.timeout_s = timeout_s
        self.socket: Optional[socket.socket] = None
        self.transaction_id = 0
        self.connected = False
        self.last_error: Optional[str] = None
        self.last_rx_time: datetime = datetime.now()

        # Connection statistics
        self.stats = {
            'connections': 0,
            'disconnections': 0,
            'reads': 0,
            'writes': 0,
            'errors': 0,
        }

    def connect(self) -> bool:
        """
        Connect to the DDC via Modbus TCP.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            self.socket = socket.create_connection((self.host, self.port), timeout=self.timeout_s)
            self.socket.settimeout(self.timeout_s)
            self.connected = True
            self.stats['connections'] += 1
            logger.info(f"Modbus connected to {self.host}:{self.port}")
            return True

        except OSError as e:
            self.last_error = str(e)
            self.connected = False
            logger.error(f"Modbus connection failed to {self.host}: {e}")
            return False

    def disconnect(self):
        """Disconnect from the DDC."""
        if self.socket:
            try:
                self.socket.close()
            except OSError as e:
                logger.debug(f"Error closing Modbus socket: {e}")
            self.socket = None
        if self.connected:
            self.stats['disconnections'] += 1
            logger.info(f"Modbus disconnected from {self.host}:{self.port}")
        self.connected = False

    def abort(self):
        """
        Unblock a request in progress on another thread.

        Only shuts the socket down; the blocked call sees the closed
        connection and disconnects itself.
        """
        sock = self.socket
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Error shutting down Modbus socket: {e}")
        logger.warning(f"Modbus request to {self.host}:{self.port} aborted")

    def _get_transaction_id(self) -> int:
        """Get next transaction ID (1-65535)."""
        self.transaction_id = (self.transaction_id % 65535) + 1
        return self.transaction_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_coils(self, address: int, count: int = 1) -> Optional[List[int]]:
        """Read coils (FC01). Returns coil states as 0/1."""
        return self._read_bits(1, address, count)

    def read_discrete_inputs(self, address: int, count: int = 1) -> Optional[List[int]]:
        """Read discrete inputs (FC02). Returns input states as 0/1."""
        return self._read_bits(2, address, count)

    def read_holding_registers(self, address: int, count: int = 1) -> Optional[List[int]]:
        """
        Read holding registers (FC03).

        Args:
            address: Starting register address (0-65535)
            count: Number of registers to read (1-125)

        Returns:
            List of register values, or None on error
        """
        return self._read_words(3, address, count)

    def read_input_registers(self, address: int, count: int = 1) -> Optional[List[int]]:
        """Read input registers (FC04)."""
        return self._read_words(4, address, count)

    def _read_words(self, fc: int, address: int, count: int) -> Optional[List[int]]:
        response = self._transact(self._build_request(fc, address, count), "Read")
        if response is None:
            return None
        try:
            self.stats['reads'] += 1
            return self._parse_register_response(response, count)
        except ModbusProtocolError as e:
            self._record_error(f"Read FC{fc:02d} @{address} failed: {e}")
            return None

    def _read_bits(self, fc: int, address: int, count: int) -> Optional[List[int]]:
        response = self._transact(self._build_request(fc, address, count), "Read")
        if response is None:
            return None
        try:
            self.stats['reads'] += 1
            return self._parse_bit_response(response, count)
        except ModbusProtocolError as e:
            self._record_error(f"Read FC{fc:02d} @{address} failed: {e}")
            return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write_coil(self, address: int, value: bool) -> bool:
        """
        Write single coil (FC05).

        Args:
            address: Coil address
            value: True (ON) or False (OFF)
        """
        payload_value = 0xFF00 if value else 0x0000
        return self._write(5, address, struct.pack('>HH', address, payload_value))

    def write_register(self, address: int, value: int) -> bool:
        """
        Write single register (FC06).

        Args:
            address: Register address
            value: Value to write (0-65535)
        """
        return self._write(6, address, struct.pack('>HH', address, value & 0xFFFF))

    def write_coils(self, address: int, values: Sequence[bool]) -> bool:
        """Write multiple coils (FC15)."""
        packed = bytearray((len(values) + 7) // 8)
        for i, value in enumerate(values):
            if value:
                packed[i // 8] |= 1 << (i % 8)
        body = struct.pack('>HHB', address, len(values), len(packed)) + bytes(packed)
        return self._write(15, address, body)

    def write_registers(self, address: int, values: Sequence[int]) -> bool:
        """Write multiple registers (FC16)."""
        body = struct.pack('>HHB', address, len(values), len(values) * 2)
        body += b''.join(struct.pack('>H', v & 0xFFFF) for v in values)
        return self._write(16, address, body)

    def _write(self, fc: int, address: int, body: bytes) -> bool:
        response = self._transact(self._build_frame(fc, body), "Write")
        if response is None:
            return False
        try:
            self._check_exception(response)
            self.stats['writes'] += 1
            return True
        except ModbusProtocolError as e:
            self._record_error(f"Write FC{fc:02d} @{address} failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Framing
    # ------------------------------------------------------------------

    def _transact(self, request: bytes, operation: str) -> Optional[bytes]:
        """Send one request frame and return the raw response, None on I/O error."""
        if not self.connected:
            if not self.connect():
                return None

        try:
            self.socket.sendall(request)
            response = self.socket.recv(260)
            self.last_rx_time = datetime.now()
            if not response:
                raise ConnectionError("Connection closed by peer")
            return response

        except OSError as e:
            self._record_error(f"{operation} failed for {self.host}: {e}")
            self.disconnect()
            return None

    def _record_error(self, message: str):
        self.last_error = message
        self.stats['errors'] += 1
        logger.error(message)

    def _build_frame(self, fc: int, body: bytes) -> bytes:
        """Build a Modbus TCP frame: MBAP header + function code + body."""
        txn_id = self._get_transaction_id()
        frame = bytearray()
        frame.extend(struct.pack('>HHH', txn_id, 0, len(body) + 2))  # Transaction, protocol, length
        frame.append(self.unit_id)
        frame.append(fc)
        frame.extend(body)
        return bytes(frame)

    def _build_request(self, fc: int, address: int, count: int) -> bytes:
        """Build a read request (FC01-04)."""
        return self._build_frame(fc, struct.pack('>HH', address, count))

    @staticmethod
    def _check_exception(response: bytes):
        if len(response) < 9:
            raise ModbusProtocolError("Response too short")
        if response[7] & 0x80:
            code = response[8]
            try:
                name = ModbusExceptionCode(code).name
            except ValueError:
                name = "UNKNOWN"
            raise ModbusProtocolError(f"Modbus exception {code} ({name})", exception_code=code)

    def _parse_register_response(self, response: bytes, count: int) -> List[int]:
        """Parse FC03/FC04 response words."""
        self._check_exception(response)
        byte_count = response[8]
        payload = response[9:9 + byte_count]
        if len(payload) < count * 2:
            raise ModbusProtocolError(f"Expected {count * 2} data bytes, got {len(payload)}")
        return [struct.unpack('>H', payload[i * 2:i * 2 + 2])[0] for i in range(count)]

    def _parse_bit_response(self, response: bytes, count: int) -> List[int]:
        """Parse FC01/FC02 response bits."""
        self._check_exception(response)
        byte_count = response[8]
        payload = response[9:9 + byte_count]
        if len(payload) * 8 < count:
            raise ModbusProtocolError(f"Expected {count} bits, got {len(payload) * 8}")
        return [(payload[i // 8] >> (i % 8)) & 1 for i in range(count)]

    def is_healthy(self) -> bool:
        """Check if connection is healthy."""
        if not self.connected:
            return False

        # Check for timeout
        if (datetime.now() - self.last_rx_time).total_seconds() > 10 * self.timeout_s:
            return False

        return True
