"""
Background job that runs a callable at a fixed interval.
"""
import threading
from typing import Callable, Optional

from ..utils import get_logger

logger = get_logger(__name__)


class PeriodicJob:
    """
    Daemon thread looping "run once, wait interval".

    The first run happens immediately on :meth:`start`. Exceptions from the
    job body go to ``on_error`` (or the log) and never stop the loop.
    """

    def __init__(self, name: str, interval: float, target: Callable[[], None],
                 on_error: Optional[Callable[[str, Exception], None]] = None):
        if interval <= 0:
            raise ValueError(f"Interval for job '{name}' must be positive.")
        self.name = name
        self.interval = interval
        self.target = target
        self.on_error = on_error
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.run_count = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Starts the job thread; no-op when already running."""
        with self._lock:
            if self.is_running:
                logger.debug(f"Job '{self.name}' already running.")
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(target=self._loop, args=(self._stop_event,),
                                            name=f"Job-{self.name}", daemon=True)
            self._thread.start()
        logger.info(f"Job '{self.name}' started (interval {self.interval}s).")

    def stop(self, timeout: float = 5.0) -> None:
        """
        Signals the loop to exit and waits for it.

        Safe to call from the job's own thread; the join is skipped there.
        """
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop_event.set()

        if thread is None:
            return
        if thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"Job '{self.name}' did not stop within {timeout}s.")
        logger.info(f"Job '{self.name}' stopped.")

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.target()
            except Exception as e:
                if self.on_error is not None:
                    self.on_error(self.name, e)
                else:
                    logger.error(f"Job '{self.name}' failed: {e}", exc_info=True)
            finally:
                self.run_count += 1
            stop_event.wait(self.interval)
