"""
Periodic recompute of contribution scores, pressure and free-rider cases.
"""
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional

from .config import config
from .engine import ContributionEngine
from .models import PressureStatus

logger = logging.getLogger(__name__)


class RecomputeScheduler:
    """Runs a full scoring cycle over all projects at a fixed interval."""

    def __init__(self, engine: ContributionEngine,
                 project_ids: Optional[Callable[[], Iterable[int]]] = None,
                 interval_seconds: Optional[int] = None):
        self.engine = engine
        self.project_ids = project_ids or engine.store.project_ids
        self.interval_seconds = interval_seconds or config.engine.recompute_interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_project(self, project_id: int, now: Optional[datetime] = None) -> Dict:
        """Recompute scores, then evaluate pressure and free-riders for one project."""
        now = now or datetime.now()
        result = self.engine.recompute_project(project_id, cutoff=now)
        pressure = self.engine.evaluate_pressure(project_id, today=now.date())
        cases = self.engine.detect_free_riders(project_id, now=now)
        return {
            "scores": len(result.scores),
            "failures": len(result.failures),
            "overloaded": sum(1 for p in pressure if p.status == PressureStatus.OVERLOADED),
            "new_cases": len(cases),
        }

    def run_once(self, now: Optional[datetime] = None) -> Dict[int, Dict]:
        """One cycle over every project. A failing project does not stop the others."""
        summary = {}
        for project_id in self.project_ids():
            try:
                summary[project_id] = self.run_project(project_id, now=now)
                logger.info(f"Project {project_id}: {summary[project_id]}")
            except Exception as e:
                logger.error(f"Scheduled run failed for project {project_id}: {e}")
                summary[project_id] = {"error": str(e)}
        return summary

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Scheduled recompute cycle failed: {e}")
            self._stop.wait(self.interval_seconds)

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="recompute-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Recompute scheduler started (every {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("Recompute scheduler stopped")
