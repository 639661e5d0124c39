from dataclasses import dataclass, field, replace
from typing import Tuple

DEFAULT_PORT = "/dev/ttyUSB0"
DEFAULT_BAUD_RATE = 115200
DEFAULT_JOINT_NAMES = ("Base", "Shoulder", "Elbow", "Wrist pitch", "Wrist yaw", "Wrist roll")


@dataclass(frozen=True)
class JointConfig:
    name: str
    min_angle: float = -180.0
    max_angle: float = 180.0
    min_speed: float = 0.0
    max_speed: float = 180.0

    def __post_init__(self):
        if self.min_angle > self.max_angle:
            raise ValueError(f"Joint '{self.name}': min_angle {self.min_angle} > max_angle {self.max_angle}")
        if self.min_speed > self.max_speed:
            raise ValueError(f"Joint '{self.name}': min_speed {self.min_speed} > max_speed {self.max_speed}")


def default_joints() -> Tuple[JointConfig, ...]:
    return tuple(JointConfig(name) for name in DEFAULT_JOINT_NAMES)


@dataclass(frozen=True)
class CobotConfig:
    """
    Constants for one control session. Not reconfigurable while a session is open.
    :param port: Default serial port name used when connect() is called without one.
    :param baud_rate: Default serial baud rate.
    :param poll_interval_s: Telemetry period in seconds.
    :param command_timeout_s: Reply timeout for ordinary requests.
    :param calibrate_timeout_s: Reply timeout for calibration and homing, which only reply when done.
    :param firmware_version: Firmware version announced to the controller on init.
    :param init_max_attempts: Number of init attempts before the session gives up and disconnects.
    :param init_retry_delay_s: Delay between init attempts.
    :param joints: Static joint metadata, one entry per joint, index order.
    """
    port: str = DEFAULT_PORT
    baud_rate: int = DEFAULT_BAUD_RATE
    poll_interval_s: float = 0.1
    command_timeout_s: float = 1.0
    calibrate_timeout_s: float = 60.0
    firmware_version: int = 1
    init_max_attempts: int = 1
    init_retry_delay_s: float = 1.0
    joints: Tuple[JointConfig, ...] = field(default_factory=default_joints)
    show_communication: bool = False
    show_log_messages: bool = True

    def __post_init__(self):
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be positive")
        if self.command_timeout_s <= 0 or self.calibrate_timeout_s <= 0:
            raise ValueError("Timeouts must be positive")
        if self.init_max_attempts < 1:
            raise ValueError("init_max_attempts must be at least 1")
        if self.init_retry_delay_s < 0:
            raise ValueError("init_retry_delay_s must not be negative")
        if len(self.joints) == 0:
            raise ValueError("At least one joint must be configured")
        # normalise lists passed by callers so the config stays hashable
        object.__setattr__(self, 'joints', tuple(self.joints))

    @property
    def joint_count(self) -> int:
        return len(self.joints)

    @property
    def all_joints_mask(self) -> int:
        return (1 << self.joint_count) - 1

    def with_overrides(self, **changes) -> "CobotConfig":
        return replace(self, **changes)
