"""Operation procedures and the capabilities injected into them."""

from actions.base import NoopTask, OperationLogger, Task, TaskContext
from actions.file import CopyTask, FileChange, FileOps
from actions.script import ScriptTask
from manifest import Operation


def build_task(operation: Operation) -> Task:
    """Pick the procedure implementation for an operation."""
    if operation.run is not None:
        return ScriptTask()
    if operation.files:
        return CopyTask()
    return NoopTask()


__all__ = [
    'Task',
    'TaskContext',
    'OperationLogger',
    'NoopTask',
    'FileOps',
    'FileChange',
    'CopyTask',
    'ScriptTask',
    'build_task',
]
