import logging
import numbers
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .config import JointConfig
from .types import JointSnapshot

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[Tuple[JointSnapshot, ...]], None]
Guard = Callable[[], bool]


@dataclass
class Joint:
    config: JointConfig
    measured_angle: float = 0.0
    commanded_angle: float = 0.0
    commanded_speed: float = 0.0

    @property
    def moving(self) -> bool:
        return is_moving(self)


def is_moving(joint: Joint) -> bool:
    return joint.commanded_angle != joint.measured_angle


def angle_in_range(config: JointConfig, angle: float) -> bool:
    return config.min_angle <= angle <= config.max_angle


def speed_in_range(config: JointConfig, speed: float) -> bool:
    return config.min_speed <= speed <= config.max_speed


class JointStateStore:
    """
    Owns the joint collection for the lifetime of the process.

    Measured angles are written only as a complete batch (apply_measured), commanded
    values only per joint after an acknowledged command. Readers get immutable
    snapshots, never references to the live joints.
    """

    def __init__(self, joint_configs: Sequence[JointConfig]):
        self._joints: List[Joint] = [Joint(config) for config in joint_configs]
        self._lock = threading.Lock()
        self._listeners: List[SnapshotCallback] = []

    def __len__(self) -> int:
        return len(self._joints)

    @property
    def joint_count(self) -> int:
        return len(self._joints)

    def has_joint(self, index: int) -> bool:
        return isinstance(index, numbers.Integral) and not isinstance(index, bool) and 0 <= index < len(self._joints)

    def config(self, index: int) -> JointConfig:
        if not self.has_joint(index):
            raise IndexError(f"Joint index {index} out of range")
        return self._joints[index].config

    def snapshot(self) -> Tuple[JointSnapshot, ...]:
        with self._lock:
            return self._snapshot_locked()

    def measured_angles(self) -> np.ndarray:
        with self._lock:
            return np.array([joint.measured_angle for joint in self._joints], dtype=float)

    def apply_measured(self, angles: Sequence[float], guard: Optional[Guard] = None) -> bool:
        """
        Replaces every measured angle in one step.
        :param angles: One finite angle per joint, index order.
        :param guard: Checked under the store lock; when it returns False nothing is written.
        :return: True if the batch was applied.
        :raises ValueError: if the vector has the wrong length or contains non-finite values.
        """
        values = np.asarray(angles, dtype=float)
        if values.shape != (len(self._joints),):
            raise ValueError(f"Expected {len(self._joints)} angles, got shape {values.shape}")
        if not np.all(np.isfinite(values)):
            raise ValueError("Angle vector contains non-finite values")

        with self._lock:
            if guard is not None and not guard():
                return False
            for joint, value in zip(self._joints, values):
                joint.measured_angle = float(value)
            snapshot = self._snapshot_locked()
        self._notify(snapshot)
        return True

    def set_commanded(self, index: int, angle: float, speed: float, guard: Optional[Guard] = None) -> bool:
        return self.set_commanded_many([(index, angle, speed)], guard=guard)

    def set_commanded_many(self, targets: Iterable[Tuple[int, float, float]], guard: Optional[Guard] = None) -> bool:
        """
        Records the commanded angle and speed of several joints in one step.
        :param targets: (index, angle, speed) per joint.
        :param guard: Checked under the store lock; when it returns False nothing is written.
        """
        with self._lock:
            if guard is not None and not guard():
                return False
            for index, angle, speed in targets:
                joint = self._joints[index]
                joint.commanded_angle = float(angle)
                joint.commanded_speed = float(speed)
            snapshot = self._snapshot_locked()
        self._notify(snapshot)
        return True

    def reset_commanded(self, indices: Iterable[int], guard: Optional[Guard] = None) -> bool:
        with self._lock:
            if guard is not None and not guard():
                return False
            for index in indices:
                joint = self._joints[index]
                joint.commanded_angle = 0.0
                joint.commanded_speed = 0.0
            snapshot = self._snapshot_locked()
        self._notify(snapshot)
        return True

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Registers a change listener and returns a function that removes it."""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return unsubscribe

    def _snapshot_locked(self) -> Tuple[JointSnapshot, ...]:
        return tuple(
            JointSnapshot(
                index=i,
                name=joint.config.name,
                min_angle=joint.config.min_angle,
                max_angle=joint.config.max_angle,
                min_speed=joint.config.min_speed,
                max_speed=joint.config.max_speed,
                measured_angle=joint.measured_angle,
                commanded_angle=joint.commanded_angle,
                commanded_speed=joint.commanded_speed,
                moving=is_moving(joint),
            )
            for i, joint in enumerate(self._joints)
        )

    def _notify(self, snapshot: Tuple[JointSnapshot, ...]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Joint state listener failed")
