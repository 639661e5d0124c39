"""
Controller request layer.

Every request is a single ASCII line; the controller answers with zero or more data
lines followed by 'ok', 'busy' or 'error: <code> <message>'. Lines prefixed with
'D)', 'I)', 'W)' or 'E)' are controller log output and may arrive at any time.

    M100 V<firmware>             initialise, announcing the expected firmware version
    M51                          read joints, one 'J<i> A<angle> S<speed>' line per joint
    G0 J<id> A<angle> [S<speed>] move joints (degrees, degrees/second); the J/A/S group repeats
                                 for each joint, a missing S means the default speed
    M0 J<mask> I<0|1>            stop the joints in mask, immediately or decelerating
    M56 J<mask>                  calibrate the joints in mask, replies when done
    G28 J<mask>                  home the joints in mask, replies when done
    M999                         reset the controller
    M111 L<level>                set controller log level (0-3, 4 silences it)
"""
import re
import time
import logging
from typing import Callable, List, Optional, Sequence, Tuple

from .config import CobotConfig
from .exceptions import CommandTimeoutError, ProtocolError
from .types import LogLevel, ReplyStatus

logger = logging.getLogger(__name__)
device_logger = logging.getLogger("cobot_control.device")

LOG_LEVEL_NONE = 4

_JOINT_LINE = re.compile(r"^J(\d+)\s+A(\S+)")

# joint id, angle, speed (None for the controller's default)
MoveTarget = Tuple[int, float, Optional[float]]


def wire_value(value: float) -> float:
    """Angles and speeds travel with three decimals."""
    return float(f"{value:.3f}")


class CobotLink:
    def __init__(self, config: CobotConfig):
        self.config = config
        self.interface = None

    @classmethod
    def open(cls, interface_factory: Callable, port: str, baud_rate: int, config: CobotConfig,
             link_lost_callback: Optional[Callable] = None) -> "CobotLink":
        """
        Opens a line interface (SerialInterface, MockSerialInterface or compatible) wired to this link's callbacks.
        :raises ConnectError: if the interface cannot open the port.
        """
        link = cls(config)
        link.interface = interface_factory(port, baud_rate,
                                           command_msg_callback=link.command_msg_callback,
                                           log_msg_callback=link.log_msg_callback,
                                           unsolicited_msg_callback=link.unsolicited_msg_callback,
                                           link_lost_callback=link_lost_callback)
        return link

    def close(self) -> None:
        if self.interface is not None:
            self.interface.close()

    def log_msg_callback(self, log_level: LogLevel, msg: str) -> None:
        if not self.config.show_log_messages:
            return

        level = logging.INFO
        if log_level == LogLevel.DEBUG: level = logging.DEBUG
        elif log_level == LogLevel.WARNING: level = logging.WARNING
        elif log_level == LogLevel.ERROR: level = logging.ERROR

        device_logger.log(level, msg.strip())

    def command_msg_callback(self, msg: str, reply_status: Optional[ReplyStatus], error_msg: str) -> None:
        if not self.config.show_communication:
            return

        if reply_status is not None:
            if msg:
                for line in msg.splitlines():
                    logger.debug(f"< {line}")
            if error_msg:
                logger.debug(f"{reply_status.name}: {error_msg}")
            else:
                logger.debug(f"{reply_status.name}")
        else:
            logger.debug(f"> {msg.strip()}")

    def unsolicited_msg_callback(self, msg: str) -> None:
        logger.info(msg)

    def init(self) -> None:
        self._request(f"M100 V{self.config.firmware_version}")

    def read_joint_angles(self) -> List[float]:
        """
        Reads the measured angle of every joint the controller reports.
        :return: Angles in degrees, index order.
        :raises ProtocolError: if the joint lines are out of order or unparseable.
        """
        response = self._request("M51")
        angles = []
        for line in response.splitlines():
            match = _JOINT_LINE.match(line.strip())
            if not match:
                continue  # skip anything that is not a joint line
            index = int(match.group(1))
            if index != len(angles):
                raise ProtocolError(f"Unexpected joint index {index} in reply, expected {len(angles)}")
            try:
                angles.append(float(match.group(2)))
            except ValueError:
                raise ProtocolError(f"Invalid angle in reply: {line.strip()}") from None
        return angles

    def move_to(self, joint_id: int, angle: float, speed: float) -> Tuple[float, float]:
        """
        :return: The angle and speed as the controller received them.
        """
        _, angle, speed = self.move_joints([(joint_id, angle, speed)])[0]
        return angle, speed

    def move_joints(self, targets: Sequence[MoveTarget]) -> List[MoveTarget]:
        """
        Moves several joints with one request. A speed of None leaves the controller's default speed.
        :return: The targets as the controller received them.
        """
        sent = [(joint_id, wire_value(angle), None if speed is None else wire_value(speed))
                for joint_id, angle, speed in targets]
        fields = []
        for joint_id, angle, speed in sent:
            fields.append(f"J{joint_id} A{angle:.3f}")
            if speed is not None:
                fields.append(f"S{speed:.3f}")
        self._request("G0 " + " ".join(fields))
        return sent

    def stop(self, joint_mask: int, immediately: bool = True) -> None:
        self._request(f"M0 J{joint_mask} I{1 if immediately else 0}")

    def calibrate(self, joint_mask: int) -> None:
        self._request(f"M56 J{joint_mask}", timeout=self.config.calibrate_timeout_s)

    def go_home(self, joint_mask: int) -> None:
        self._request(f"G28 J{joint_mask}", timeout=self.config.calibrate_timeout_s)

    def reset(self) -> None:
        self._request("M999", timeout=self.config.calibrate_timeout_s)

    def set_log_level(self, level: Optional[LogLevel]) -> None:
        value = LOG_LEVEL_NONE if level is None else level.value
        self._request(f"M111 L{value}")

    def _request(self, cmd: str, timeout: Optional[float] = None) -> str:
        if timeout is None:
            timeout = self.config.command_timeout_s
        deadline = time.monotonic() + timeout

        # resend while the controller's queue is full
        while True:
            res, msg = self.interface.send_command(cmd, timeout)
            if res != ReplyStatus.BUSY:
                return msg
            if time.monotonic() >= deadline:
                raise CommandTimeoutError(f"Controller stayed busy: {cmd}")
            time.sleep(0.01)
