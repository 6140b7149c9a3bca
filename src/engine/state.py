"""Per-operation execution state and the run summary.

Each operation moves Pending -> Running -> {Succeeded, Skipped, Failed};
operations never started after a halt end as NotRun. The summary is saved
to <target>/.bootstrap/state/last-run.json.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from common import OperationStatus, RunResult
from config import get_state_dir

logger = logging.getLogger(__name__)

LAST_RUN_FILENAME = 'last-run.json'


class StateTransitionError(Exception):
    """Illegal operation state transition."""


@dataclass
class OperationState:
    """Execution state of one operation in a run.

    Attributes:
        op_id: Operation id
        phase: Operation phase
        status: One of OperationStatus values
        result: Result reported by the procedure (or synthesized by the engine)
        started_at: Timestamp when the procedure started
        completed_at: Timestamp when the operation reached a terminal state
        reason: Why the operation was skipped, failed or not run
    """
    op_id: str
    phase: int
    status: str = OperationStatus.PENDING
    result: Optional[RunResult] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    reason: str = ''

    def _require(self, *allowed: str) -> None:
        if self.status not in allowed:
            raise StateTransitionError(
                f"Operation '{self.op_id}' cannot leave state '{self.status}'"
            )

    def start(self) -> None:
        self._require(OperationStatus.PENDING)
        self.status = OperationStatus.RUNNING
        self.started_at = time.time()

    def finish(self, result: RunResult) -> None:
        """Record the procedure's result (succeeded or failed)."""
        self._require(OperationStatus.RUNNING)
        self.result = result
        self.status = OperationStatus.SUCCEEDED if result.success else OperationStatus.FAILED
        if not result.success:
            self.reason = result.message
        self.completed_at = time.time()

    def skip(self, result: RunResult, reason: str = 'already satisfied') -> None:
        self._require(OperationStatus.PENDING)
        self.result = result
        self.status = OperationStatus.SKIPPED
        self.reason = reason
        self.completed_at = time.time()

    def plan(self) -> None:
        """Dry run: the operation would run."""
        self._require(OperationStatus.PENDING)
        self.status = OperationStatus.PLANNED
        self.completed_at = time.time()

    def not_run(self, reason: str) -> None:
        self._require(OperationStatus.PENDING)
        self.status = OperationStatus.NOT_RUN
        self.reason = reason
        self.completed_at = time.time()

    @property
    def duration(self) -> float:
        if self.result is not None:
            return self.result.duration
        return 0.0

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.op_id,
            'phase': self.phase,
            'status': self.status,
        }
        if self.result is not None:
            d['result'] = self.result.to_dict()
        if self.started_at is not None:
            d['started_at'] = self.started_at
        if self.completed_at is not None:
            d['completed_at'] = self.completed_at
        if self.reason:
            d['reason'] = self.reason
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'OperationState':
        result = data.get('result')
        return cls(
            op_id=data['id'],
            phase=data.get('phase', 0),
            status=data.get('status', OperationStatus.PENDING),
            result=RunResult.from_dict(result) if result else None,
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
            reason=data.get('reason', ''),
        )


@dataclass
class RunSummary:
    """Outcome of one plan execution, in plan order."""
    target_dir: str
    operations: list[OperationState] = field(default_factory=list)
    dry_run: bool = False
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    preflight: Optional[dict] = None

    def add(self, op_id: str, phase: int) -> OperationState:
        state = OperationState(op_id=op_id, phase=phase)
        self.operations.append(state)
        return state

    def get(self, op_id: str) -> OperationState:
        """Get operation state by id.

        Raises:
            KeyError: If the operation is not part of this run
        """
        for state in self.operations:
            if state.op_id == op_id:
                return state
        raise KeyError(op_id)

    def with_status(self, status: str) -> list[OperationState]:
        return [s for s in self.operations if s.status == status]

    def retry_ids(self) -> list[str]:
        """Operations that failed or never ran, in plan order."""
        return [s.op_id for s in self.operations
                if s.status in (OperationStatus.FAILED, OperationStatus.NOT_RUN)]

    @property
    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for state in self.operations:
            counts[state.status] = counts.get(state.status, 0) + 1
        return counts

    @property
    def success(self) -> bool:
        return all(s.status in OperationStatus.OK for s in self.operations)

    @property
    def exit_code(self) -> int:
        """0 on success, else the first failed operation's exit code (or 1)."""
        if self.success:
            return 0
        for state in self.operations:
            if state.status == OperationStatus.FAILED:
                code = state.result.exit_code if state.result else None
                if code is not None and code > 0:
                    return code
                return 1
        return 1

    @property
    def duration(self) -> float:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return 0.0

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'target_dir': self.target_dir,
            'dry_run': self.dry_run,
            'success': self.success,
            'exit_code': self.exit_code,
            'counts': self.counts,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'duration': round(self.duration, 3),
            'operations': [s.to_dict() for s in self.operations],
        }
        if self.preflight is not None:
            d['preflight'] = self.preflight
        return d

    @staticmethod
    def default_path(target_dir: Path) -> Path:
        return get_state_dir(target_dir) / 'state' / LAST_RUN_FILENAME

    def save(self, path: Optional[Path] = None) -> Path:
        """Save summary to JSON file.

        Args:
            path: Optional override path. Default: <target>/.bootstrap/state/last-run.json

        Returns:
            Path where the summary was saved
        """
        if path is None:
            path = self.default_path(Path(self.target_dir))
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Saved run summary to {path}")
        return path

    @classmethod
    def load(cls, path: Path) -> 'RunSummary':
        """Load a saved summary.

        Raises:
            FileNotFoundError: If the file doesn't exist
        """
        with open(path, encoding='utf-8') as f:
            data = json.load(f)
        summary = cls(
            target_dir=data['target_dir'],
            operations=[OperationState.from_dict(o) for o in data.get('operations', [])],
            dry_run=data.get('dry_run', False),
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
            preflight=data.get('preflight'),
        )
        logger.debug(f"Loaded run summary from {path}")
        return summary


def load_last_run(target_dir: Path) -> Optional[RunSummary]:
    """Saved summary of the most recent real run against a target, if any.

    Raises:
        ValueError: If the saved summary is unreadable
    """
    path = RunSummary.default_path(Path(target_dir))
    if not path.exists():
        return None
    try:
        return RunSummary.load(path)
    except (OSError, KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Cannot read last run {path}: {e}") from e
