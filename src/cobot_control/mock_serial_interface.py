import re
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple
from .exceptions import CommandTimeoutError, ConnectError, DeviceError, LinkClosedError
from .types import LogLevel, ReplyStatus

SUPPORTED_BAUD_RATES = (9600, 19200, 38400, 57600, 115200, 230400, 460800, 921600)
HARDWARE_ANGLE_LIMIT = 180.0

_NUMBER = r"[-+]?\d*\.?\d+"
_MOVE_TARGET = re.compile(rf"J(\d+)\s+A({_NUMBER})(?:\s+S({_NUMBER}))?")


class MockSerialInterface:
    """
    In-process stand-in for a controller on the end of a SerialInterface.
    Moves complete instantly; the knobs below inject the failures a real arm produces.
    """

    def __init__(self, port: str = "mock", baud_rate: int = 115200,
                 command_msg_callback: Optional[Callable] = None,
                 log_msg_callback: Optional[Callable] = None,
                 unsolicited_msg_callback: Optional[Callable] = None,
                 link_lost_callback: Optional[Callable] = None,
                 joint_count: int = 6,
                 firmware_version: int = 1,
                 response_delay: float = 0.0):
        self.port = port
        self.baud_rate = baud_rate
        self.command_msg_callback = command_msg_callback
        self.log_message_callback = log_msg_callback
        self.unsolicited_msg_callback = unsolicited_msg_callback
        self.link_lost_callback = link_lost_callback
        self.firmware_version = firmware_version
        self.response_delay = response_delay
        self.is_open = False

        self.angles: List[float] = [0.0] * joint_count
        self.speeds: List[float] = [0.0] * joint_count
        self.initialized = False
        self.calibrated_mask = 0
        self.log_level = LogLevel.INFO.value

        # fault injection
        self.init_failures = 0
        self.reported_joint_count: Optional[int] = None
        self.rejections: Dict[str, Tuple[int, str]] = {}
        self.silent_prefixes: List[str] = []
        self.commands: List[str] = []
        self.read_started = threading.Event()
        self._reads_released = threading.Event()
        self._reads_released.set()
        self._active_reads = 0
        self.max_concurrent_reads = 0

        self._lock = threading.Lock()
        self._request_lock = threading.Lock()
        self.connect()

    def connect(self) -> None:
        if not self.port or self.port.lower().startswith("invalid"):
            raise ConnectError(f"Could not connect to port {self.port}")
        if self.baud_rate not in SUPPORTED_BAUD_RATES:
            raise ConnectError(f"Baud rate {self.baud_rate} rejected by {self.port}")
        # Simulate connection
        self.is_open = True

    def close(self):
        self.is_open = False

    # --- fault injection -------------------------------------------------

    def reject(self, prefix: str, code: int, reason: str = "") -> None:
        self.rejections[prefix] = (code, reason)

    def hold_reads(self) -> None:
        """Makes joint reads (M51) block until release_reads() is called."""
        self.read_started.clear()
        self._reads_released.clear()

    def release_reads(self) -> None:
        self._reads_released.set()

    def simulate_link_loss(self, error: Optional[Exception] = None) -> None:
        self.is_open = False
        if self.link_lost_callback:
            self.link_lost_callback(error or OSError("device disconnected"))

    def emit_log(self, level: LogLevel, msg: str) -> None:
        if self.log_message_callback:
            self.log_message_callback(level, msg)

    def count(self, prefix: str) -> int:
        return sum(1 for cmd in self.commands if cmd.startswith(prefix))

    # ---------------------------------------------------------------------

    def send_command(self, cmd: str, timeout: float = 2) -> Tuple[ReplyStatus, str]:
        if not self._request_lock.acquire(timeout=timeout):
            raise CommandTimeoutError(f"Serial line still in use by another command: {cmd.strip()}")
        try:
            return self._round_trip(cmd)
        finally:
            self._request_lock.release()

    def _round_trip(self, cmd: str) -> Tuple[ReplyStatus, str]:
        if not self.is_open:
            raise LinkClosedError("Serial not open")

        cmd = cmd.strip()
        with self._lock:
            self.commands.append(cmd)
        if self.command_msg_callback:
            self.command_msg_callback(cmd + "\n", None, '')

        # Simulate small delay
        if self.response_delay:
            time.sleep(self.response_delay)

        if any(cmd.startswith(prefix) for prefix in self.silent_prefixes):
            raise CommandTimeoutError(f"Command timeout, device didn't reply in time: {cmd}")

        try:
            response_content = self._execute(cmd)
        except DeviceError as e:
            if self.command_msg_callback:
                self.command_msg_callback("", ReplyStatus.ERROR, f"{e.code} {e.reason}")
            raise

        if self.command_msg_callback:
            self.command_msg_callback(response_content, ReplyStatus.OK, '')

        return ReplyStatus.OK, response_content

    def _execute(self, cmd: str) -> str:
        for prefix, (code, reason) in self.rejections.items():
            if cmd.startswith(prefix):
                raise DeviceError(code, reason)

        if cmd.startswith("M100"):
            return self._init(cmd)
        if cmd.startswith("M51"):
            return self._read_joints()
        if cmd.startswith("M111"):
            self.log_level = int(_field(cmd, "L", 1))
            return ""

        if not self.initialized:
            raise DeviceError(4, "Init required")

        if cmd.startswith("G0"):
            targets = [(int(j), float(a), float(s) if s else None) for j, a, s in _MOVE_TARGET.findall(cmd)]
            if not targets:
                raise DeviceError(1, f"No joint targets in '{cmd}'")
            # the whole request is checked before any joint moves
            for joint_id, angle, speed in targets:
                if not 0 <= joint_id < len(self.angles):
                    raise DeviceError(3, f"No joint {joint_id}")
                if abs(angle) > HARDWARE_ANGLE_LIMIT:
                    raise DeviceError(2, f"Angle {angle} outside hardware range")
            with self._lock:
                for joint_id, angle, speed in targets:
                    self.angles[joint_id] = angle
                    self.speeds[joint_id] = 0.0
            for joint_id, angle, speed in targets:
                speed_text = "default speed" if speed is None else f"{speed:.3f}"
                self.emit_log(LogLevel.DEBUG, f"Joint {joint_id} moving to {angle:.3f} at {speed_text}")
        elif cmd.startswith("M0"):
            mask = int(_field(cmd, "J"))
            with self._lock:
                for i in self._mask_indices(mask):
                    self.speeds[i] = 0.0
        elif cmd.startswith("M56"):
            mask = int(_field(cmd, "J"))
            self.calibrated_mask |= mask
        elif cmd.startswith("G28"):
            mask = int(_field(cmd, "J"))
            with self._lock:
                for i in self._mask_indices(mask):
                    self.angles[i] = 0.0
        elif cmd.startswith("M999"):
            self.initialized = False
            self.calibrated_mask = 0
        else:
            raise DeviceError(1, f"Unknown command '{cmd}'")
        return ""

    def _init(self, cmd: str) -> str:
        if self.init_failures > 0:
            self.init_failures -= 1
            raise DeviceError(0, "Bring-up failed")
        version = int(_field(cmd, "V"))
        if version != self.firmware_version:
            raise DeviceError(7, f"Controller runs firmware {self.firmware_version}, client expects {version}")
        self.initialized = True
        self.emit_log(LogLevel.INFO, "Controller initialised")
        return ""

    def _read_joints(self) -> str:
        with self._lock:
            self._active_reads += 1
            self.max_concurrent_reads = max(self.max_concurrent_reads, self._active_reads)
        try:
            self.read_started.set()
            self._reads_released.wait()
            with self._lock:
                count = len(self.angles) if self.reported_joint_count is None else self.reported_joint_count
                lines = []
                for i in range(count):
                    angle = self.angles[i] if i < len(self.angles) else 0.0
                    speed = self.speeds[i] if i < len(self.speeds) else 0.0
                    lines.append(f"J{i} A{angle:.3f} S{speed:.3f}")
            return "\n".join(lines)
        finally:
            with self._lock:
                self._active_reads -= 1

    def _mask_indices(self, mask: int) -> List[int]:
        return [i for i in range(len(self.angles)) if mask & (1 << i)]


def _field(cmd: str, letter: str, default=None) -> float:
    match = re.search(rf"\b{letter}([-+]?\d*\.?\d+)", cmd)
    if match:
        return float(match.group(1))
    if default is None:
        raise DeviceError(1, f"Missing {letter} field in '{cmd}'")
    return default
