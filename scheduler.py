import logging
import threading
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)


class PeriodicSweeper:
    """Runs ``job(session)`` every ``interval`` seconds on a daemon thread.

    ``run_once`` executes the job synchronously on the caller's thread; errors
    from scheduled runs are logged and the loop carries on.
    """

    def __init__(self, name: str, interval: float, session_factory: sessionmaker, job: Callable):
        self.name = name
        self.interval = interval
        self.session_factory = session_factory
        self.job = job
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self):
        session = self.session_factory()
        try:
            return self.job(session)
        finally:
            session.close()

    def _loop(self) -> None:
        logger.info("%s started (every %ss)", self.name, self.interval)
        while not self._stop.wait(self.interval):
            try:
                result = self.run_once()
                logger.debug("%s finished: %s", self.name, result)
            except Exception:
                logger.exception("%s failed", self.name)
        logger.info("%s stopped", self.name)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 10) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
