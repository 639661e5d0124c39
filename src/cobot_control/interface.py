import logging
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .config import CobotConfig
from .dispatcher import CommandDispatcher
from .joints import JointStateStore, SnapshotCallback
from .mock_serial_interface import MockSerialInterface
from .serial_interface import SerialInterface
from .session import LinkSession, StateListener
from .telemetry import TelemetryPoller
from .types import JointSnapshot, LogLevel, SessionState

logger = logging.getLogger(__name__)


class CobotInterface:
    """
    Entry point for a presentation layer: one object holding the joint read model,
    the link session, the telemetry poller and the command dispatcher.

    Telemetry starts when the session becomes READY and stops when it leaves READY.
    """

    def __init__(self, config: Optional[CobotConfig] = None, mock: bool = False,
                 interface_factory: Optional[Callable] = None):
        self.config = config or CobotConfig()
        self.mock = mock
        if interface_factory is None:
            interface_factory = MockSerialInterface if mock else SerialInterface

        self.joint_state = JointStateStore(self.config.joints)
        self.session = LinkSession(self.config, interface_factory)
        self.poller = TelemetryPoller(self.session, self.joint_state, self.config.poll_interval_s)
        self.dispatcher = CommandDispatcher(self.session, self.joint_state)
        self.session.add_state_listener(self._on_state_change)

    def __enter__(self) -> "CobotInterface":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.disconnect()

    # --- session ---------------------------------------------------------

    def connect(self, port: Optional[str] = None, baud_rate: Optional[int] = None, initialize: bool = False) -> None:
        """
        Opens the link, optionally bringing the controller up straight away.
        :param port: Serial port, defaults to config.port.
        :param baud_rate: Baud rate, defaults to config.baud_rate.
        :param initialize: If True, initialize() is called once connected.
        """
        self.session.connect(self.config.port if port is None else port,
                             self.config.baud_rate if baud_rate is None else baud_rate)
        if initialize:
            self.initialize()

    def initialize(self) -> None:
        self.session.initialize()

    def disconnect(self) -> None:
        self.session.disconnect()

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def is_ready(self) -> bool:
        return self.session.is_ready

    def add_state_listener(self, callback: StateListener) -> Callable[[], None]:
        return self.session.add_state_listener(callback)

    # --- read model ------------------------------------------------------

    @property
    def joint_count(self) -> int:
        return self.joint_state.joint_count

    @property
    def joints(self) -> Tuple[JointSnapshot, ...]:
        return self.joint_state.snapshot()

    @property
    def measured_angles(self) -> np.ndarray:
        return self.joint_state.measured_angles()

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        return self.joint_state.subscribe(callback)

    def poll_once(self) -> Optional[List[float]]:
        return self.poller.poll_once()

    # --- commands --------------------------------------------------------

    def move_to(self, joint_id: int, angle: float, speed: float) -> None:
        self.dispatcher.move_to(joint_id, angle, speed)

    def move_joints(self, targets: Sequence[Sequence]) -> None:
        self.dispatcher.move_joints(targets)

    def stop(self, joint_id: int, immediately: bool = True) -> None:
        self.dispatcher.stop(joint_id, immediately)

    def stop_all(self, immediately: bool = True) -> None:
        self.dispatcher.stop_all(immediately)

    def calibrate(self, joint_mask: int) -> None:
        self.dispatcher.calibrate(joint_mask)

    def go_home(self, joint_mask: int) -> None:
        self.dispatcher.go_home(joint_mask)

    def reset(self) -> None:
        self.dispatcher.reset()

    def set_device_log_level(self, level: Optional[LogLevel]) -> None:
        self.dispatcher.set_device_log_level(level)

    def _on_state_change(self, old_state: SessionState, new_state: SessionState) -> None:
        if new_state == SessionState.READY:
            self.poller.start()
        elif old_state == SessionState.READY:
            self.poller.stop()
