from typing import Any, Optional

# Error codes reported by the controller in an "error: <code> <message>" reply
ERROR_CODES = [
    "Other",
    "Malformed request",
    "Out of range",
    "Invalid joint",
    "Not initialized",
    "Not calibrated",
    "Cancelled",
    "Invalid firmware version",
]


class CobotError(Exception):
    """Base exception for cobot_control."""
    pass


class SessionStateError(CobotError, RuntimeError):
    """Raised when an operation is invoked in a session state that does not allow it."""
    pass


class ConnectError(CobotError):
    """Raised when the serial port cannot be opened or the parameters are rejected."""
    pass


class InitError(CobotError):
    """Raised when controller bring-up fails after all configured attempts."""
    pass


class DisconnectError(CobotError):
    """Raised when closing the link failed. The session is disconnected regardless."""
    pass


class PollError(CobotError):
    """Raised when a telemetry fetch fails or returns a malformed joint vector."""
    pass


class TransportError(CobotError):
    """Base class for errors raised by the serial transport."""
    pass


class CommandTimeoutError(TransportError):
    """Raised when a command times out."""
    pass


class LinkClosedError(TransportError):
    """Raised when a command is sent over a link that is not open."""
    pass


class ProtocolError(TransportError):
    """Raised when a reply from the device cannot be parsed."""
    pass


class DeviceError(TransportError):
    """Raised when the controller replies with an error for a command."""

    def __init__(self, code: int, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"COBOT ERROR {code} ({self.code_name}): {reason}")

    @property
    def code_name(self) -> str:
        if 0 <= self.code < len(ERROR_CODES):
            return ERROR_CODES[self.code]
        return "Unknown error"

    @classmethod
    def from_reply(cls, error_msg: str) -> "DeviceError":
        """
        Builds the error from the text following 'error:' in a reply line.
        A leading integer is taken as the error code, otherwise code 0 (Other) is used.
        """
        parts = error_msg.strip().split(None, 1)
        if parts and parts[0].lstrip('-').isdigit():
            return cls(int(parts[0]), parts[1] if len(parts) > 1 else "")
        return cls(0, error_msg.strip())


class CommandError(CobotError):
    """Raised when a command fails, either locally or at the controller."""

    def __init__(self, command: str, message: str):
        self.command = command
        super().__init__(f"{command}: {message}")


class ValidationError(CommandError):
    """Raised when a command fails local validation. The controller is never contacted."""

    def __init__(self, command: str, field: str, value: Any, message: str):
        self.field = field
        self.value = value
        super().__init__(command, message)


class CommandRejectedError(CommandError):
    """Raised when the controller or the transport fails a command that was sent."""

    def __init__(self, command: str, error: TransportError):
        self.code: Optional[int] = getattr(error, "code", None)
        self.reason: str = getattr(error, "reason", str(error))
        super().__init__(command, str(error))


class StaleResultError(CommandError):
    """Raised when the session left Ready before the command was acknowledged."""
    pass
