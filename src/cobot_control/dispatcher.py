import math
import numbers
import threading
import logging
from typing import Any, Callable, List, Optional, Sequence

from .exceptions import CommandRejectedError, StaleResultError, TransportError, ValidationError
from .joints import Guard, JointStateStore, angle_in_range, speed_in_range
from .link import CobotLink, MoveTarget
from .config import JointConfig
from .session import LinkSession
from .types import LogLevel

logger = logging.getLogger(__name__)


class CommandDispatcher:
    """
    Validates and sends joint commands over the session's link.

    Commands are sent one at a time in submission order. Joint state changes only after
    the controller acknowledges, and only if the session that carried the command is
    still READY at that point. Commanded values are recorded as the controller received
    them, not as the caller passed them.
    """

    def __init__(self, session: LinkSession, joints: JointStateStore):
        self._session = session
        self._joints = joints
        self._command_lock = threading.Lock()

    def move_to(self, joint_id: int, angle: float, speed: float) -> None:
        """
        Moves one joint to an absolute angle.
        :param joint_id: Joint index.
        :param angle: Target angle in degrees, within the joint's bounds (inclusive).
        :param speed: Speed in degrees/second, within the joint's bounds (inclusive).
        :raises ValidationError: if any argument is out of range. The controller is not contacted.
        :raises CommandRejectedError: if the controller refused the command or did not reply.
        :raises StaleResultError: if the session ended before the acknowledgment.
        :raises SessionStateError: if the session is not READY.
        """
        config, angle, speed = self._validate_target("move_to", joint_id, angle, speed)

        def commit(sent, guard):
            sent_angle, sent_speed = sent
            return self._joints.set_commanded(joint_id, sent_angle, sent_speed, guard=guard)

        self._submit("move_to", lambda link: link.move_to(joint_id, angle, speed), commit)
        logger.info(f"Joint {joint_id} ({config.name}) -> {angle:.3f} deg at {speed:.3f} deg/s")

    def move_joints(self, targets: Sequence[Sequence]) -> None:
        """
        Moves several joints with a single request.
        :param targets: (joint_id, angle) or (joint_id, angle, speed) per joint. A missing or None
            speed leaves the controller's default speed and is recorded as commanded speed 0.
        :raises ValidationError: if the list is empty, names a joint twice or any target is out of
            range. Nothing is sent unless every target is valid.
        """
        if isinstance(targets, (str, bytes)) or not isinstance(targets, Sequence) or not targets:
            raise ValidationError("move_joints", "targets", targets, "At least one joint target is required")

        checked: List[MoveTarget] = []
        for target in targets:
            if isinstance(target, (str, bytes)) or not isinstance(target, Sequence) or len(target) not in (2, 3):
                raise ValidationError("move_joints", "targets", target,
                                      f"Expected (joint_id, angle[, speed]), got {target!r}")
            joint_id, angle = target[0], target[1]
            speed = target[2] if len(target) == 3 else None
            _, angle, speed = self._validate_target("move_joints", joint_id, angle, speed, speed_optional=True)
            if any(joint_id == other for other, _, _ in checked):
                raise ValidationError("move_joints", "joint_id", joint_id, f"Joint {joint_id} targeted twice")
            checked.append((joint_id, angle, speed))

        def commit(sent, guard):
            return self._joints.set_commanded_many(
                [(joint_id, angle, 0.0 if speed is None else speed) for joint_id, angle, speed in sent],
                guard=guard)

        self._submit("move_joints", lambda link: link.move_joints(checked), commit)
        logger.info(f"Moving joints {[joint_id for joint_id, _, _ in checked]}")

    def stop(self, joint_id: int, immediately: bool = True) -> None:
        """
        Stops one joint and clears its commanded angle and speed. Allowed whether or not the joint is moving.
        """
        self._validate_joint("stop", joint_id)
        self._submit("stop",
                     lambda link: link.stop(1 << joint_id, immediately),
                     lambda _, guard: self._joints.reset_commanded([joint_id], guard=guard))
        logger.info(f"Joint {joint_id} stopped")

    def stop_all(self, immediately: bool = True) -> None:
        indices = list(range(self._joints.joint_count))
        mask = (1 << len(indices)) - 1
        self._submit("stop_all",
                     lambda link: link.stop(mask, immediately),
                     lambda _, guard: self._joints.reset_commanded(indices, guard=guard))
        logger.info("All joints stopped")

    def calibrate(self, joint_mask: int) -> None:
        """
        Sends one calibration request covering every joint selected in the bitmask.
        :raises ValidationError: if the mask selects nothing or names a joint that does not exist.
        """
        indices = self._validate_mask("calibrate", joint_mask)
        self._submit("calibrate",
                     lambda link: link.calibrate(joint_mask),
                     lambda _, guard: guard())
        logger.info(f"Calibrated joints {indices}")

    def go_home(self, joint_mask: int) -> None:
        indices = self._validate_mask("go_home", joint_mask)
        self._submit("go_home",
                     lambda link: link.go_home(joint_mask),
                     lambda _, guard: self._joints.reset_commanded(indices, guard=guard))
        logger.info(f"Homed joints {indices}")

    def reset(self) -> None:
        """
        Resets the controller. Once acknowledged, every joint's commanded state is cleared and the
        session drops back to CONNECTED; initialize() must run again before further commands.
        """
        indices = list(range(self._joints.joint_count))
        self._submit("reset",
                     lambda link: link.reset(),
                     lambda _, guard: self._joints.reset_commanded(indices, guard=guard),
                     after=self._session.controller_reset)
        logger.info("Controller reset, initialization required")

    def set_device_log_level(self, level: Optional[LogLevel]) -> None:
        if level is not None and not isinstance(level, LogLevel):
            raise ValidationError("set_device_log_level", "level", level, f"Unknown log level {level!r}")
        self._submit("set_device_log_level", lambda link: link.set_log_level(level), lambda _, guard: guard())

    def _submit(self, command: str, send: Callable[[CobotLink], Any], commit: Callable[[Any, Guard], bool],
                after: Optional[Callable[[int], bool]] = None) -> None:
        """
        Sends one command and hands the link's result to commit once acknowledged.
        :param after: Called with the command's generation once committed, before the next command may start.
        """
        with self._command_lock:
            link, generation = self._session.acquire_link()

            def guard() -> bool:
                return self._session.is_current(generation)

            try:
                sent = send(link)
            except TransportError as e:
                if not guard():
                    raise StaleResultError(command, "session ended before the command completed") from e
                logger.warning(f"{command} rejected: {e}")
                raise CommandRejectedError(command, e) from e

            if not commit(sent, guard) or (after is not None and not after(generation)):
                logger.debug(f"Discarding acknowledgment of {command} from ended session")
                raise StaleResultError(command, "session ended before the acknowledgment was applied")

    def _validate_target(self, command: str, joint_id: int, angle: float, speed: Optional[float],
                         speed_optional: bool = False):
        config = self._validate_joint(command, joint_id)
        angle = self._validate_number(command, "angle", angle)
        if not angle_in_range(config, angle):
            raise ValidationError(command, "angle", angle,
                                  f"Angle {angle} outside [{config.min_angle}, {config.max_angle}] for joint {joint_id} ({config.name})")
        if speed is not None or not speed_optional:
            speed = self._validate_number(command, "speed", speed)
            if not speed_in_range(config, speed):
                raise ValidationError(command, "speed", speed,
                                      f"Speed {speed} outside [{config.min_speed}, {config.max_speed}] for joint {joint_id} ({config.name})")
        return config, angle, speed

    def _validate_joint(self, command: str, joint_id: int) -> JointConfig:
        if not self._joints.has_joint(joint_id):
            raise ValidationError(command, "joint_id", joint_id, f"Unknown joint {joint_id!r}")
        return self._joints.config(joint_id)

    @staticmethod
    def _validate_number(command: str, field: str, value) -> float:
        if isinstance(value, bool) or not isinstance(value, numbers.Real) or not math.isfinite(value):
            raise ValidationError(command, field, value, f"{field} must be a finite number, got {value!r}")
        return float(value)

    def _validate_mask(self, command: str, joint_mask: int) -> List[int]:
        if isinstance(joint_mask, bool) or not isinstance(joint_mask, numbers.Integral):
            raise ValidationError(command, "joint_mask", joint_mask, f"Joint mask must be an integer, got {joint_mask!r}")
        if joint_mask == 0:
            raise ValidationError(command, "joint_mask", joint_mask, "Joint mask selects no joints")
        if joint_mask < 0 or joint_mask >> self._joints.joint_count:
            raise ValidationError(command, "joint_mask", joint_mask,
                                  f"Joint mask {joint_mask:#x} references joints beyond {self._joints.joint_count - 1}")
        return [i for i in range(self._joints.joint_count) if joint_mask & (1 << i)]
