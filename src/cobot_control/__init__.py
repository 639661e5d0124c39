from .config import CobotConfig, JointConfig
from .dispatcher import CommandDispatcher
from .exceptions import (CobotError, CommandError, CommandRejectedError, ConnectError, DisconnectError,
                         InitError, PollError, SessionStateError, StaleResultError, ValidationError)
from .interface import CobotInterface
from .joints import JointStateStore
from .session import LinkSession
from .telemetry import TelemetryPoller
from .types import JointSnapshot, LogLevel, SessionState

__version__ = "0.1.0"
