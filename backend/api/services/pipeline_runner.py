"""
Pipeline runner service.

Runs the catalog pipeline steps one after another as child processes on a
single worker thread. Every line a step prints is appended to the progress
log, which the API streams to the browser.

Run state lives on PipelineRun objects owned by the PipelineCoordinator;
nothing is kept in module globals.
"""

import queue
import subprocess
import sys
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence


# Backend directory path (scripts run from here)
BACKEND_DIR = Path(__file__).parent.parent.parent


@dataclass(frozen=True)
class PipelineStep:
    """One child process of the pipeline."""
    name: str
    message: str
    command: Sequence[str]


def python_step(message: str, script: str, *args: str) -> PipelineStep:
    """A step that runs a backend script with the current interpreter."""
    name = " ".join([script, *args])
    return PipelineStep(name, message, (sys.executable, str(BACKEND_DIR / script), *args))


# Scraper steps are external commands; prepend them to this list when
# building a coordinator for the full scrape-and-upload pipeline.
DEFAULT_STEPS: List[PipelineStep] = [
    python_step("Starting price updates...", "update_prices.py"),
    python_step("Starting category upload to database...", "catalog_sync.py", "categories"),
    python_step("Starting brand upload to database...", "catalog_sync.py", "brands"),
    python_step("Starting carousel upload to database...", "catalog_sync.py", "carousel"),
    python_step("Starting product upload to database...", "catalog_sync.py", "products"),
]

COMPLETED_MESSAGE = "All operations completed successfully!"


class RunStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class PipelineAlreadyRunning(Exception):
    """A run is already queued or in progress."""


class PipelineNotRunning(Exception):
    """There is no run to stop."""


@dataclass
class PipelineRun:
    """State of one pipeline run."""
    run_id: str
    steps: List[PipelineStep]
    status: RunStatus = RunStatus.QUEUED
    current_step: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    stop_requested: bool = False
    process: Optional[subprocess.Popen] = field(default=None, repr=False)
    done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def is_active(self) -> bool:
        return self.status in (RunStatus.QUEUED, RunStatus.RUNNING)

    @property
    def current_step_name(self) -> Optional[str]:
        if self.current_step is None:
            return None
        return self.steps[self.current_step].name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "current_step": self.current_step,
            "current_step_name": self.current_step_name,
            "steps": [step.name for step in self.steps],
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
        }


@dataclass(frozen=True)
class ProgressEntry:
    index: int
    message: str
    timestamp: datetime


class ProgressLog:
    """Append-only, thread-safe log of progress messages."""

    def __init__(self):
        self._entries: List[ProgressEntry] = []
        self._lock = threading.Lock()

    def append(self, message: str) -> int:
        """Add a message. Returns its index."""
        with self._lock:
            index = len(self._entries)
            self._entries.append(ProgressEntry(index, message, datetime.now()))
            return index

    def since(self, index: int = 0) -> List[ProgressEntry]:
        """Entries with index >= `index`, oldest first."""
        with self._lock:
            return self._entries[max(index, 0):]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PipelineCoordinator:
    """
    Owns the pipeline's run queue, its single worker thread, and the
    progress log. At most one run is queued or running at any time.
    """

    def __init__(self, steps: Optional[Sequence[PipelineStep]] = None,
                 cwd: Optional[Path] = None):
        self.steps = list(steps) if steps is not None else list(DEFAULT_STEPS)
        self.cwd = cwd or BACKEND_DIR
        self.progress = ProgressLog()
        self.history: List[PipelineRun] = []
        self._queue: "queue.Queue[Optional[PipelineRun]]" = queue.Queue()
        self._lock = threading.Lock()
        self._current: Optional[PipelineRun] = None
        self._worker: Optional[threading.Thread] = None

    @property
    def current_run(self) -> Optional[PipelineRun]:
        """The active run, or the most recent one."""
        return self._current

    @property
    def is_running(self) -> bool:
        run = self._current
        return run is not None and run.is_active

    def start_worker(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._work, name="pipeline-worker", daemon=True)
        self._worker.start()

    def shutdown(self, timeout: float = 10.0) -> None:
        """Stop any active run and end the worker thread."""
        if self.is_running:
            try:
                self.stop()
            except PipelineNotRunning:
                pass
        if self._worker is not None:
            self._queue.put(None)
            self._worker.join(timeout)
            self._worker = None

    def submit(self) -> PipelineRun:
        """Queue a new run of all steps."""
        with self._lock:
            if self._current is not None and self._current.is_active:
                raise PipelineAlreadyRunning(
                    f"Pipeline run {self._current.run_id} is already {self._current.status.value}"
                )
            run = PipelineRun(run_id=uuid.uuid4().hex[:12], steps=list(self.steps))
            self._current = run
            self.history.append(run)
        self.start_worker()
        self._queue.put(run)
        return run

    def stop(self) -> PipelineRun:
        """Stop the active run, terminating its current child process."""
        with self._lock:
            run = self._current
            if run is None or not run.is_active:
                raise PipelineNotRunning("No pipeline run in progress")
            run.stop_requested = True
            process = run.process
        self.progress.append("Stop requested")
        if process is not None and process.poll() is None:
            process.terminate()
        return run

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the current run finishes. Returns False on timeout."""
        run = self._current
        if run is None:
            return True
        return run.done.wait(timeout)

    # -- worker --------------------------------------------------------------

    def _work(self) -> None:
        while True:
            run = self._queue.get()
            try:
                if run is None:
                    return
                self._execute(run)
            except Exception as e:
                run.status = RunStatus.FAILED
                run.error = str(e)
                self.progress.append(f"Error: {e}")
            finally:
                if run is not None:
                    if run.finished_at is None:
                        run.finished_at = datetime.now()
                    run.done.set()

    def _execute(self, run: PipelineRun) -> None:
        run.started_at = datetime.now()
        run.status = RunStatus.RUNNING

        for index, step in enumerate(run.steps):
            if run.stop_requested:
                break
            run.current_step = index
            self.progress.append(step.message)

            exit_code = self._run_step(run, step)
            if run.stop_requested:
                break
            if exit_code != 0:
                run.error = f"Error in {step.name}"
                run.status = RunStatus.FAILED
                self.progress.append(run.error)
                return

        if run.stop_requested:
            run.status = RunStatus.STOPPED
            self.progress.append("Pipeline stopped")
            return

        run.status = RunStatus.COMPLETED
        self.progress.append(COMPLETED_MESSAGE)

    def _run_step(self, run: PipelineRun, step: PipelineStep) -> int:
        try:
            process = subprocess.Popen(
                list(step.command),
                cwd=str(self.cwd),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            self.progress.append(f"Error: could not start {step.name}: {e}")
            return -1

        with self._lock:
            run.process = process
            stop_now = run.stop_requested
        if stop_now:
            process.terminate()

        with process.stdout:
            for line in process.stdout:
                line = line.rstrip()
                if line:
                    self.progress.append(line)
        exit_code = process.wait()

        with self._lock:
            run.process = None
        return exit_code
