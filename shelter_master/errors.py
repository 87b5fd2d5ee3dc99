"""
Shelter Master Errors
=====================

Typed error hierarchy shared by the resolver, queue, scheduler and executor.

    ShelterError
    ├── MappingError            - unknown site/device type/unit/command (terminal)
    ├── CommandValidationError  - unsupported unit type, missing value, bad time value (terminal)
    ├── TransactionError        - transport failure or timeout (retryable)
    ├── PersistenceError        - data store failure (retryable)
    ├── LogAlreadyFinalizedError
    └── QueueClosedError

Only errors flagged ``retryable`` are retried by RetryPolicy.
"""

from typing import Dict, Optional


class ShelterError(Exception):
    """Base class for all engine errors."""

    code = "shelter_error"
    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> Dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# ==================== MAPPING ====================

class MappingError(ShelterError):
    code = "mapping_error"


class UnknownSiteError(MappingError):
    code = "unknown_site"

    def __init__(self, site_id: str):
        super().__init__(f"No port mapping for site '{site_id}'", site_id=site_id)


class UnknownDeviceTypeError(MappingError):
    code = "unknown_device_type"

    def __init__(self, site_id: str, device_type: str, suggestion: Optional[str] = None):
        message = f"Device type '{device_type}' is not mapped for site '{site_id}'"
        if suggestion:
            message += f" (did you mean '{suggestion}'?)"
        super().__init__(message, site_id=site_id, device_type=device_type, suggestion=suggestion)
        self.suggestion = suggestion


class UnknownUnitError(MappingError):
    code = "unknown_unit"

    def __init__(self, site_id: str, device_type: str, unit_id: str):
        super().__init__(
            f"Unit '{unit_id}' is not mapped for {device_type} at site '{site_id}'",
            site_id=site_id, device_type=device_type, unit_id=unit_id,
        )


class UnsupportedCommandError(MappingError):
    code = "unsupported_command"

    def __init__(self, site_id: str, device_type: str, unit_id: Optional[str], command_key: str,
                 hint: Optional[str] = None):
        message = f"Command '{command_key}' is not supported by {device_type}/{unit_id} at site '{site_id}'"
        if hint:
            message += f". {hint}"
        super().__init__(message, site_id=site_id, device_type=device_type,
                         unit_id=unit_id, command_key=command_key)


class TimeCompositeCommandError(MappingError):
    code = "time_composite_command"

    def __init__(self, command_key: str):
        super().__init__(
            f"'{command_key}' is a time-composite command; resolve its _HOUR/_MINUTE pair instead",
            command_key=command_key,
        )


# ==================== VALIDATION ====================

class CommandValidationError(ShelterError):
    code = "validation_error"


class UnitTypeNotSupportedError(CommandValidationError):
    code = "unit_type_not_supported"

    def __init__(self, device_type: str):
        super().__init__(f"Unsupported unit type for protocol control: {device_type}",
                         device_type=device_type)


class MissingValueError(CommandValidationError):
    code = "missing_value"

    def __init__(self, command_key: str):
        super().__init__(f"Command '{command_key}' requires a value", command_key=command_key)


class TimeValueParseError(CommandValidationError):
    code = "time_value_parse_error"

    def __init__(self, value, reason: str = ""):
        message = f"Invalid time value {value!r}. Expected format: \"HH:MM\" or HHMM"
        if reason:
            message += f" ({reason})"
        super().__init__(message, value=str(value))


class InvalidCommandError(CommandValidationError):
    code = "invalid_command"


# ==================== TRANSACTIONS ====================

class TransactionError(ShelterError):
    code = "transaction_error"
    retryable = True


class NoConnectionError(TransactionError):
    code = "no_connection"


class TransportTimeoutError(TransactionError):
    code = "transport_timeout"


class CommunicationError(TransactionError):
    code = "communication_error"


class UnsupportedFunctionCodeError(TransactionError):
    code = "unsupported_function_code"
    retryable = False

    def __init__(self, function_code: int):
        super().__init__(f"Unsupported function code: {function_code}", function_code=function_code)


class CompositeCommandError(TransactionError):
    """One half of a time-composite command failed."""

    code = "composite_command_failed"
    retryable = False

    def __init__(self, command_key: str, failed_part: str, completed_parts, cause: str):
        super().__init__(
            f"Time command '{command_key}' failed at {failed_part}: {cause}",
            command_key=command_key, failed_part=failed_part,
            completed_parts=list(completed_parts),
        )


def command_execution_error(command_key: str, reason: str, error_code: Optional[str] = None) -> TransactionError:
    """Typed error for a failed transaction, picked by the queue's error code."""
    error_class = {
        NoConnectionError.code: NoConnectionError,
        TransportTimeoutError.code: TransportTimeoutError,
    }.get(error_code, CommunicationError)
    return error_class(f"Command '{command_key}' failed: {reason}", command_key=command_key)


# ==================== INFRASTRUCTURE ====================

class PersistenceError(ShelterError):
    code = "persistence_error"
    retryable = True


class LogAlreadyFinalizedError(ShelterError):
    code = "log_already_finalized"

    def __init__(self, request_id: str, status: str):
        super().__init__(f"Command log {request_id} already finalized as {status}",
                         request_id=request_id, status=status)


class CommandLogNotFoundError(ShelterError):
    code = "command_log_not_found"

    def __init__(self, request_id: str):
        super().__init__(f"Command log {request_id} not found", request_id=request_id)


class QueueClosedError(ShelterError):
    code = "queue_closed"
