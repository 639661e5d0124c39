import functools
import threading
import logging
from typing import Callable, List, Optional, Tuple

from .config import CobotConfig
from .exceptions import (ConnectError, DisconnectError, InitError, SessionStateError,
                         TransportError)
from .link import CobotLink
from .serial_interface import SerialInterface
from .types import SessionSnapshot, SessionState

logger = logging.getLogger(__name__)

StateListener = Callable[[SessionState, SessionState], None]

# states in which a link is open and can be lost
_LINKED_STATES = (SessionState.CONNECTED, SessionState.INITIALIZING, SessionState.READY)


class LinkSession:
    """
    Connection and bring-up state machine for one controller link.

    DISCONNECTED -> CONNECTING -> CONNECTED -> INITIALIZING -> READY, back to DISCONNECTED
    on disconnect() or failed bring-up, and to FAILED when the transport reports the link
    lost. The session owns the link exclusively; the telemetry poller and the command
    dispatcher borrow it through acquire_link() while READY.

    Every time the session leaves READY or ends (DISCONNECTED or FAILED) the generation
    counter advances. A result fetched under an older generation is stale and must not be
    applied. An acknowledged controller reset returns the session from READY to CONNECTED.

    State listeners are called outside the session lock, in the thread that made the
    transition (for link loss, the transport's reader thread).
    """

    def __init__(self, config: Optional[CobotConfig] = None, interface_factory: Callable = SerialInterface):
        self.config = config or CobotConfig()
        self._interface_factory = interface_factory
        self._lock = threading.RLock()
        self._state = SessionState.DISCONNECTED
        self._link: Optional[CobotLink] = None
        self._port_name: Optional[str] = None
        self._baud_rate: Optional[int] = None
        self._generation = 0
        self._connection = 0
        self._cancel = threading.Event()
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def port_name(self) -> Optional[str]:
        return self._port_name

    @property
    def baud_rate(self) -> Optional[int]:
        return self._baud_rate

    @property
    def link(self) -> Optional[CobotLink]:
        return self._link

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_ready(self) -> bool:
        return self._state == SessionState.READY

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(self._state, self._port_name, self._baud_rate, self._generation)

    def add_state_listener(self, callback: StateListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def remove():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return remove

    def connect(self, port_name: str, baud_rate: int) -> None:
        """
        Opens the link. Only valid from DISCONNECTED.
        :raises ConnectError: if the port cannot be opened or the parameters are rejected.
        :raises SessionStateError: if the session is not DISCONNECTED.
        """
        with self._lock:
            if self._state != SessionState.DISCONNECTED:
                raise SessionStateError(f"connect() requires a disconnected session, state is {self._state.name}")
            self._port_name = port_name
            self._baud_rate = baud_rate
            self._cancel.clear()
            self._connection += 1
            connection = self._connection
            generation = self._generation
            changes = [self._set_state_locked(SessionState.CONNECTING)]
        self._notify(changes)

        if not isinstance(baud_rate, int) or isinstance(baud_rate, bool) or baud_rate <= 0:
            self._abort_connect(generation)
            raise ConnectError(f"Invalid baud rate {baud_rate!r}")

        try:
            link = CobotLink.open(self._interface_factory, port_name, baud_rate, self.config,
                                  link_lost_callback=functools.partial(self._on_link_lost, connection))
        except ConnectError:
            self._abort_connect(generation)
            raise
        except (TransportError, OSError, ValueError) as e:
            self._abort_connect(generation)
            raise ConnectError(f"Could not connect to port {port_name}: {e}") from e

        with self._lock:
            current = self._state == SessionState.CONNECTING and self._generation == generation
            if current:
                self._link = link
                changes = [self._set_state_locked(SessionState.CONNECTED)]
        if not current:
            self._close_quietly(link)
            raise ConnectError(f"Connection to {port_name} cancelled by disconnect")
        self._notify(changes)

    def initialize(self) -> None:
        """
        Brings the controller up. Only valid from CONNECTED.

        Makes up to config.init_max_attempts attempts, init_retry_delay_s apart. When all
        fail, the link is closed, the session returns to DISCONNECTED and InitError is raised
        with the last failure as its cause.
        :raises InitError: if bring-up failed or the session ended while initializing.
        :raises SessionStateError: if the session is not CONNECTED.
        """
        with self._lock:
            if self._state != SessionState.CONNECTED:
                raise SessionStateError(f"initialize() requires a connected session, state is {self._state.name}")
            link = self._link
            generation = self._generation
            changes = [self._set_state_locked(SessionState.INITIALIZING)]
        self._notify(changes)

        attempts = self.config.init_max_attempts
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                link.init()
            except TransportError as e:
                last_error = e
                logger.warning(f"Initialization attempt {attempt}/{attempts} failed: {e}")
                if not self._is_session(generation, SessionState.INITIALIZING):
                    raise InitError("Initialization cancelled: session ended") from e
                if attempt < attempts and self._cancel.wait(self.config.init_retry_delay_s):
                    raise InitError("Initialization cancelled by disconnect") from e
                continue

            with self._lock:
                current = self._state == SessionState.INITIALIZING and self._generation == generation
                if current:
                    changes = [self._set_state_locked(SessionState.READY)]
            if not current:
                raise InitError("Initialization cancelled: session ended")
            self._notify(changes)
            return

        with self._lock:
            current = self._state == SessionState.INITIALIZING and self._generation == generation
            if current:
                self._link = None
                changes = [self._end_session_locked(SessionState.DISCONNECTED)]
        if current:
            self._close_quietly(link)
            self._notify(changes)
        raise InitError(f"Initialization failed after {attempts} attempt(s): {last_error}") from last_error

    def disconnect(self) -> None:
        """
        Tears the link down from any state. The session always ends DISCONNECTED.
        :raises DisconnectError: if closing the port failed.
        """
        with self._lock:
            link = self._link
            self._link = None
            self._cancel.set()
            changes = []
            if self._state != SessionState.DISCONNECTED:
                changes.append(self._end_session_locked(SessionState.DISCONNECTED))

        try:
            if link is not None:
                link.close()
        except (TransportError, OSError) as e:
            raise DisconnectError(f"Error while closing link: {e}") from e
        finally:
            self._notify(changes)

    def acquire_link(self) -> Tuple[CobotLink, int]:
        """
        Borrows the link for one round trip.
        :return: The link and the generation to pass to is_current() once the reply arrives.
        :raises SessionStateError: if the session is not READY.
        """
        with self._lock:
            if self._state != SessionState.READY:
                raise SessionStateError(f"Session is not ready (state {self._state.name})")
            return self._link, self._generation

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return self._state == SessionState.READY and self._generation == generation

    def _is_session(self, generation: int, state: SessionState) -> bool:
        with self._lock:
            return self._state == state and self._generation == generation

    def _abort_connect(self, generation: int) -> None:
        with self._lock:
            changes = []
            if self._state == SessionState.CONNECTING and self._generation == generation:
                changes.append(self._end_session_locked(SessionState.DISCONNECTED))
        self._notify(changes)

    def controller_reset(self, generation: int) -> bool:
        """
        Records an acknowledged controller reset. The link stays open, but the session drops
        back to CONNECTED and initialize() is needed before the next command.
        :param generation: Generation the reset was sent under.
        :return: False if that session is no longer READY.
        """
        with self._lock:
            changes = []
            if self._state == SessionState.READY and self._generation == generation:
                self._generation += 1
                changes.append(self._set_state_locked(SessionState.CONNECTED))
        self._notify(changes)
        return bool(changes)

    def _on_link_lost(self, connection: int, error: Exception) -> None:
        with self._lock:
            changes = []
            if self._state in _LINKED_STATES and self._connection == connection:
                logger.error(f"Link to {self._port_name} lost: {error}")
                self._cancel.set()
                changes.append(self._end_session_locked(SessionState.FAILED))
        self._notify(changes)

    def _set_state_locked(self, new_state: SessionState) -> Tuple[SessionState, SessionState]:
        old_state = self._state
        self._state = new_state
        logger.info(f"Session {old_state.name} -> {new_state.name}")
        return old_state, new_state

    def _end_session_locked(self, new_state: SessionState) -> Tuple[SessionState, SessionState]:
        self._generation += 1
        return self._set_state_locked(new_state)

    def _notify(self, changes: List[Tuple[SessionState, SessionState]]) -> None:
        if not changes:
            return
        with self._lock:
            listeners = list(self._listeners)
        for old_state, new_state in changes:
            for callback in listeners:
                try:
                    callback(old_state, new_state)
                except Exception:
                    logger.exception("Session state listener failed")

    @staticmethod
    def _close_quietly(link: CobotLink) -> None:
        try:
            link.close()
        except (TransportError, OSError) as e:
            logger.warning(f"Error closing abandoned link: {e}")
