from __future__ import annotations

import logging
import subprocess
import threading
from typing import Any, Sequence

from .errors import CancellationError

logger = logging.getLogger(__name__)


class ProcessTable:
    """Live child processes per job, kept only so that jobs can be cancelled."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[str, set[subprocess.Popen]] = {}
        self._cancelled: set[str] = set()

    def runner(self, job_id: str) -> "ProcessRunner":
        return ProcessRunner(self, job_id)

    def spawn(self, job_id: str, cmd: Sequence[str], **popen_kwargs: Any) -> subprocess.Popen:
        with self._lock:
            if job_id in self._cancelled:
                raise CancellationError("Cancelled by user")
            proc = subprocess.Popen(list(cmd), **popen_kwargs)
            self._handles.setdefault(job_id, set()).add(proc)
            return proc

    def release(self, job_id: str, proc: subprocess.Popen) -> None:
        with self._lock:
            handles = self._handles.get(job_id)
            if handles is None:
                return
            handles.discard(proc)
            if not handles:
                self._handles.pop(job_id, None)

    def handles(self, job_id: str) -> list[subprocess.Popen]:
        with self._lock:
            return list(self._handles.get(job_id, ()))

    def is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._cancelled

    def kill(self, job_id: str) -> bool:
        """Mark the job cancelled and kill its live processes.

        Returns True when at least one running process was found and killed.
        """
        with self._lock:
            self._cancelled.add(job_id)
            handles = self._handles.pop(job_id, set())

        killed = False
        for proc in handles:
            if proc.poll() is not None:
                continue
            try:
                proc.kill()
                killed = True
            except OSError:
                logger.exception("Error killing process %s for job %s", proc.pid, job_id)
        return killed

    def forget(self, job_id: str) -> None:
        with self._lock:
            self._handles.pop(job_id, None)
            self._cancelled.discard(job_id)

    def kill_all(self) -> int:
        with self._lock:
            job_ids = list(self._handles)
        return sum(1 for job_id in job_ids if self.kill(job_id))


class ProcessRunner:
    """Spawns external tools on behalf of one job."""

    def __init__(self, table: ProcessTable, job_id: str):
        self.table = table
        self.job_id = job_id

    @classmethod
    def detached(cls, name: str = "adhoc") -> "ProcessRunner":
        return cls(ProcessTable(), name)

    @property
    def cancelled(self) -> bool:
        return self.table.is_cancelled(self.job_id)

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError("Cancelled by user")

    def spawn(self, cmd: Sequence[str], **popen_kwargs: Any) -> subprocess.Popen:
        return self.table.spawn(self.job_id, cmd, **popen_kwargs)

    def release(self, proc: subprocess.Popen) -> None:
        self.table.release(self.job_id, proc)

    def run(self, cmd: Sequence[str], timeout: float | None = None, cwd=None) -> subprocess.CompletedProcess:
        proc = self.spawn(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            cwd=cwd,
        )
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
            raise
        finally:
            self.release(proc)

        self.check_cancelled()
        return subprocess.CompletedProcess(list(cmd), proc.returncode, stdout, stderr)
