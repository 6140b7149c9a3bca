"""Remote job execution.

Each submitted job runs the engine for one project path in a worker
thread. Jobs for the same path queue behind each other; jobs for
different paths run concurrently as independent processes.
"""

import logging
import os
import subprocess
import sys
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional

from common import EXIT_TIMEOUT, terminate_process_group
from server.db import JobStateError, JobStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_DURATION = 1800
DEFAULT_PROFILE = 'standard'

ENGINE_ENTRY = Path(__file__).resolve().parent.parent / 'cli.py'


class JobServiceError(Exception):
    """Rejected job request."""


class LogBuffer:
    """Thread-safe accumulating output buffer."""

    def __init__(self):
        self._lock = threading.Lock()
        self._chunks: list[str] = []

    def write(self, text: str) -> None:
        with self._lock:
            self._chunks.append(text)

    def text(self) -> str:
        with self._lock:
            return ''.join(self._chunks)


# runner(path, profile, buffer, max_duration) -> (exit_code, error)
JobRunner = Callable[[str, str, LogBuffer, float], tuple[int, Optional[str]]]


class SubprocessRunner:
    """Runs the engine CLI as a child process for one job."""

    def __init__(self, manifest_file: Optional[str] = None, python: str = sys.executable):
        self.manifest_file = manifest_file
        self.python = python

    def build_command(self, path: str, profile: str) -> list[str]:
        cmd = [self.python, str(ENGINE_ENTRY), 'run', '--profile', profile,
               '--target', path, '--yes']
        if self.manifest_file:
            cmd.extend(['--manifest-file', self.manifest_file])
        return cmd

    def build_env(self) -> dict[str, str]:
        """Child environment; project settings always resolve inside the target."""
        env = dict(os.environ, BOOTSTRAP_YES='true', PYTHONUNBUFFERED='1')
        env.pop('BOOTSTRAP_CONFIG', None)
        return env

    def __call__(self, path: str, profile: str, buffer: LogBuffer,
                 max_duration: float) -> tuple[int, Optional[str]]:
        cmd = self.build_command(path, profile)
        logger.info(f"Launching: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=path,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=self.build_env(),
                start_new_session=True,
            )
        except OSError as e:
            buffer.write(f"Cannot start engine: {e}\n")
            return 1, f"cannot start engine: {e}"

        timed_out = threading.Event()

        def on_timeout() -> None:
            timed_out.set()
            logger.warning(f"Job for {path} exceeded {max_duration:g}s, terminating")
            terminate_process_group(proc)

        timer = threading.Timer(max_duration, on_timeout)
        timer.daemon = True
        timer.start()
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                buffer.write(line)
            rc = proc.wait()
        finally:
            timer.cancel()

        if timed_out.is_set():
            buffer.write(f"[TIMEOUT] job exceeded {max_duration:g}s\n")
            return EXIT_TIMEOUT, f"timeout after {max_duration:g}s"
        return rc, None


class JobService:
    """Submits, tracks and persists bootstrap jobs."""

    def __init__(
        self,
        store: JobStore,
        profiles: Iterable[str],
        runner: Optional[JobRunner] = None,
        max_duration: float = DEFAULT_MAX_DURATION,
        default_profile: str = DEFAULT_PROFILE,
    ):
        self.store = store
        self.profiles = sorted(profiles)
        self.runner = runner or SubprocessRunner()
        self.max_duration = max_duration
        self.default_profile = default_profile
        self._guard = threading.Lock()
        self._path_locks: dict[str, threading.Lock] = {}
        self._buffers: dict[int, LogBuffer] = {}
        self._threads: dict[int, threading.Thread] = {}

    def _lock_for(self, path: str) -> threading.Lock:
        with self._guard:
            return self._path_locks.setdefault(path, threading.Lock())

    def submit(self, path: str, profile: Optional[str] = None) -> int:
        """Create a job and start it; returns the job id without waiting.

        Raises:
            JobServiceError: On an unknown profile or a missing target directory
        """
        if not path:
            raise JobServiceError("Missing required field: path")
        profile = profile or self.default_profile
        if profile not in self.profiles:
            raise JobServiceError(
                f"Unknown profile '{profile}'. Available: {', '.join(self.profiles) or 'none'}"
            )
        target = Path(path).expanduser()
        if not target.is_absolute():
            raise JobServiceError(f"Target path must be absolute: {path}")
        if not target.is_dir():
            raise JobServiceError(f"Target directory does not exist: {path}")
        path = str(target.resolve())

        project = self.store.upsert_project(path, profile=profile)
        job_id = self.store.create_job(project['id'], profile=profile)
        buffer = LogBuffer()

        thread = threading.Thread(
            target=self._run_job, args=(job_id, path, profile, buffer),
            name=f'job-{job_id}', daemon=True,
        )
        with self._guard:
            self._buffers[job_id] = buffer
            self._threads[job_id] = thread
        thread.start()
        logger.info(f"Job {job_id} submitted: {path} (profile {profile})")
        return job_id

    def _run_job(self, job_id: int, path: str, profile: str, buffer: LogBuffer) -> None:
        lock = self._lock_for(path)
        if lock.locked():
            buffer.write(f"[QUEUED] waiting for running job on {path}\n")
        with lock:
            logger.info(f"Job {job_id} started")
            try:
                exit_code, error = self.runner(path, profile, buffer, self.max_duration)
            except Exception as e:  # pylint: disable=broad-except
                logger.exception(f"Job {job_id} runner raised")
                exit_code, error = 1, f"{type(e).__name__}: {e}"
                buffer.write(f"{error}\n")

            try:
                job = self.store.complete_job(job_id, exit_code, buffer.text(), error=error)
                logger.info(f"Job {job_id} {job.get('status')} (exit {exit_code})")
            except JobStateError as e:
                logger.error(str(e))
            finally:
                with self._guard:
                    self._buffers.pop(job_id, None)
                    self._threads.pop(job_id, None)

    def wait(self, job_id: int, timeout: Optional[float] = None) -> bool:
        """Block until a job's worker finishes; True when it has."""
        with self._guard:
            thread = self._threads.get(job_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def get_job(self, job_id: int) -> Optional[dict]:
        job = self.store.get_job(job_id)
        if job is not None:
            job.pop('log', None)
        return job

    def get_job_log(self, job_id: int) -> Optional[str]:
        """Captured output; live while the job is running."""
        with self._guard:
            buffer = self._buffers.get(job_id)
        if buffer is not None:
            return buffer.text()
        job = self.store.get_job(job_id)
        return job['log'] if job is not None else None

    def list_jobs(self, limit: int = 20) -> list[dict]:
        return self.store.list_jobs(limit)

    def list_projects(self) -> list[dict]:
        return self.store.list_projects()
