"""Task interface and the context injected into every task."""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from common import OperationStatus, RunResult
from config import ConfigStore
from manifest import Operation

from actions.file import FileOps

logger = logging.getLogger(__name__)

DEFAULT_OPERATION_TIMEOUT = 600


class OperationLogger(logging.LoggerAdapter):
    """Prefixes every record with the operation id."""

    def process(self, msg, kwargs):
        return f"[{self.extra['op_id']}] {msg}", kwargs


@dataclass
class TaskContext:
    """Everything a task may touch while it runs.

    Attributes:
        operation: The operation being executed
        target_dir: Project directory the operation acts on
        config: Project config store
        files: File capability confined to target_dir
        tools: Tool probe (validator capability)
        assume_yes: Auto-confirm destructive prompts
        timeout: Time budget in seconds
        env: Extra environment variables for child processes
    """
    operation: Operation
    target_dir: Path
    config: ConfigStore
    files: FileOps
    tools: Optional[object] = None
    assume_yes: bool = False
    timeout: float = DEFAULT_OPERATION_TIMEOUT
    env: dict[str, str] = field(default_factory=dict)
    logger: logging.LoggerAdapter = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.target_dir = Path(self.target_dir)
        self.logger = OperationLogger(logging.getLogger('bootstrap.operation'),
                                      {'op_id': self.operation.id})


@runtime_checkable
class Task(Protocol):
    """Protocol for operation procedures."""

    def run(self, context: TaskContext) -> RunResult:
        """Execute the procedure and report its result."""


class NoopTask:
    """Marker operation without a procedure; groups dependencies."""

    def run(self, context: TaskContext) -> RunResult:
        start = time.time()
        context.logger.info("No procedure declared, nothing to do")
        return RunResult(
            status=OperationStatus.SUCCEEDED,
            message='no-op',
            duration=time.time() - start,
        )
