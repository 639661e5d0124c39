import threading
import time
import logging
from typing import List, Optional

from .exceptions import PollError, SessionStateError, TransportError
from .joints import JointStateStore
from .session import LinkSession

logger = logging.getLogger(__name__)


class TelemetryPoller:
    """
    Reads the joint angle vector on a fixed period while the session is READY.

    At most one fetch is in flight: a poll_once() issued while another is outstanding
    returns None without touching the link, and timer ticks that fall due during a slow
    fetch are skipped rather than queued. Failed fetches are counted and logged; they
    never stop the timer or change the session state.
    """

    def __init__(self, session: LinkSession, joints: JointStateStore, interval_s: float):
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._session = session
        self._joints = joints
        self.interval_s = interval_s

        self._fetch_lock = threading.Lock()
        self._control_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.poll_count = 0
        self.failure_count = 0
        self.skipped_count = 0
        self.last_error: Optional[PollError] = None
        self._failure_streak = 0

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        with self._control_lock:
            if self.running:
                return
            # each run gets its own event so a lingering thread from a previous run stays stopped
            self._stop_event = threading.Event()
            self._thread = threading.Thread(target=self._run, args=(self._stop_event,),
                                            name="cobot-telemetry", daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        with self._control_lock:
            thread = self._thread
            self._thread = None
            self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Telemetry thread did not stop in time, its result will be discarded")

    def poll_once(self) -> Optional[List[float]]:
        """
        Fetches the joint angle vector and applies it to the joint state as one batch.
        :return: The applied angles, or None if the fetch was skipped (another one is
                 outstanding) or discarded (the session left READY meanwhile).
        :raises PollError: if the fetch failed or the vector is malformed.
        :raises SessionStateError: if the session is not READY.
        """
        link, generation = self._session.acquire_link()
        if not self._fetch_lock.acquire(blocking=False):
            with self._stats_lock:
                self.skipped_count += 1
            logger.debug("Telemetry fetch still outstanding, skipping")
            return None

        try:
            try:
                angles = link.read_joint_angles()
            except TransportError as e:
                if not self._session.is_current(generation):
                    logger.debug(f"Discarding telemetry failure from ended session: {e}")
                    return None
                raise self._failed(f"Telemetry fetch failed: {e}") from e

            if len(angles) != self._joints.joint_count:
                raise self._failed(f"Telemetry returned {len(angles)} angles, expected {self._joints.joint_count}")

            try:
                applied = self._joints.apply_measured(angles, guard=lambda: self._session.is_current(generation))
            except ValueError as e:
                raise self._failed(f"Malformed telemetry: {e}") from e
        finally:
            self._fetch_lock.release()

        if not applied:
            logger.debug("Discarding telemetry from ended session")
            return None

        with self._stats_lock:
            self.poll_count += 1
            recovered = self._failure_streak > 0
            self._failure_streak = 0
        if recovered:
            logger.info("Telemetry recovered")
        return list(angles)

    def _failed(self, message: str) -> PollError:
        error = PollError(message)
        with self._stats_lock:
            self.failure_count += 1
            self.last_error = error
            self._failure_streak += 1
            first = self._failure_streak == 1
        if first:
            logger.warning(message)
        else:
            logger.debug(message)
        return error

    def _run(self, stop_event: threading.Event) -> None:
        logger.info(f"Telemetry started, polling every {self.interval_s * 1000:.0f} ms")
        next_tick = time.monotonic()
        while not stop_event.wait(max(0.0, next_tick - time.monotonic())):
            try:
                self.poll_once()
            except SessionStateError:
                break
            except PollError:
                pass  # counted and logged by poll_once

            next_tick += self.interval_s
            now = time.monotonic()
            if next_tick <= now:
                missed = int((now - next_tick) // self.interval_s) + 1
                with self._stats_lock:
                    self.skipped_count += missed
                next_tick += missed * self.interval_s
        logger.info("Telemetry stopped")
