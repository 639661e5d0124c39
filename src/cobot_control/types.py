from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SessionState(Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    INITIALIZING = 'initializing'
    READY = 'ready'
    FAILED = 'failed'


class ReplyStatus(Enum):
    OK = 'ok'
    ERROR = 'error'
    BUSY = 'busy'


class LogLevel(Enum):
    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3


@dataclass(frozen=True)
class JointSnapshot:
    index: int
    name: str
    min_angle: float
    max_angle: float
    min_speed: float
    max_speed: float
    measured_angle: float
    commanded_angle: float
    commanded_speed: float
    moving: bool


@dataclass(frozen=True)
class SessionSnapshot:
    state: SessionState
    port_name: Optional[str]
    baud_rate: Optional[int]
    generation: int
