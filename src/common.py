"""Common utilities and types for setup orchestration."""

import logging
import os
import signal
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Exit code used when a command or job exceeds its time budget (matches timeout(1))
EXIT_TIMEOUT = 124

# Seconds between SIGTERM and SIGKILL when stopping a process group
TERMINATE_GRACE = 5


class OperationStatus:
    """Per-operation lifecycle states."""
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    SKIPPED = 'skipped'
    FAILED = 'failed'
    NOT_RUN = 'not_run'
    PLANNED = 'planned'  # dry-run only: would run

    TERMINAL = (SUCCEEDED, SKIPPED, FAILED, NOT_RUN, PLANNED)
    OK = (SUCCEEDED, SKIPPED, PLANNED)


@dataclass
class RunResult:
    """Result returned by a single operation invocation.

    Attributes:
        status: One of OperationStatus values
        created: Artifact paths created (relative to the target dir)
        skipped: Artifact paths left alone because they were already present
        warnings: Non-fatal problems noticed while running
        duration: Elapsed seconds
        exit_code: Procedure exit code (0 on success, None when not applicable)
        message: Short human-readable outcome
        backups: Backup files written before artifacts were replaced
    """
    status: str
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    duration: float = 0.0
    exit_code: Optional[int] = None
    message: str = ''
    backups: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status in OperationStatus.OK

    def to_dict(self) -> dict:
        d: dict = {
            'status': self.status,
            'created': list(self.created),
            'skipped': list(self.skipped),
            'warnings': list(self.warnings),
            'duration': round(self.duration, 3),
        }
        if self.exit_code is not None:
            d['exit_code'] = self.exit_code
        if self.message:
            d['message'] = self.message
        if self.backups:
            d['backups'] = list(self.backups)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'RunResult':
        return cls(
            status=data['status'],
            created=list(data.get('created', [])),
            skipped=list(data.get('skipped', [])),
            warnings=list(data.get('warnings', [])),
            duration=data.get('duration', 0.0),
            exit_code=data.get('exit_code'),
            message=data.get('message', ''),
            backups=list(data.get('backups', [])),
        )


def terminate_process_group(proc: subprocess.Popen, grace: float = TERMINATE_GRACE) -> None:
    """Stop a child started with start_new_session and everything it spawned.

    SIGTERM goes to the whole process group; whatever is still alive after
    the grace period gets SIGKILL.
    """
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process group {proc.pid} ignored SIGTERM, killing")
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass  # group already gone
    proc.wait()


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = 600,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    The command runs in its own session so a timeout or interrupt stops its
    whole process tree. A timeout returns EXIT_TIMEOUT; a command that
    cannot be started returns -1.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    pipe = subprocess.PIPE if capture else None
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            stdout=pipe,
            stderr=pipe,
            text=True,
            env=env,
            start_new_session=True,
        )
    except (OSError, ValueError) as e:
        return -1, '', str(e)

    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        terminate_process_group(proc)
        proc.communicate()
        return EXIT_TIMEOUT, '', f'Command timed out after {timeout:g}s'
    except BaseException:
        # Interrupted (Ctrl+C, or SIGTERM from the job service)
        terminate_process_group(proc)
        raise
    return proc.returncode, stdout or '', stderr or ''
