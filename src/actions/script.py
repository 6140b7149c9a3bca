"""External command task."""

import logging
import os
import shlex
import time
from pathlib import Path
from typing import TYPE_CHECKING

from common import EXIT_TIMEOUT, OperationStatus, RunResult, run_command

if TYPE_CHECKING:
    from actions.base import TaskContext

logger = logging.getLogger(__name__)


class ScriptTask:
    """Runs an operation's command inside the target directory.

    Output is not captured: it streams to the engine's own stdout/stderr,
    so whoever runs the engine (a terminal or the job service) sees it.
    """

    def build_command(self, context: 'TaskContext') -> list[str]:
        run = context.operation.run
        if isinstance(run, str):
            return ['/bin/sh', '-c', run]
        argv = list(run or ())
        if not argv:
            raise ValueError(f"Operation '{context.operation.id}' has an empty command")
        # Script paths are relative to the manifest directory
        source_dir = context.operation.source_dir
        if source_dir and '/' in argv[0] and not os.path.isabs(argv[0]):
            script = Path(source_dir) / argv[0]
            if script.exists():
                argv[0] = str(script)
        return argv

    def build_env(self, context: 'TaskContext') -> dict[str, str]:
        env = dict(os.environ)
        env.update({
            'PROJECT_ROOT': str(context.target_dir.resolve()),
            'BOOTSTRAP_YES': 'true' if context.assume_yes else 'false',
            'BOOTSTRAP_CONFIG': str(context.config.path),
            'BOOTSTRAP_OPERATION': context.operation.id,
        })
        env.update(context.env)
        return env

    def run(self, context: 'TaskContext') -> RunResult:
        start = time.time()
        op = context.operation
        result = RunResult(status=OperationStatus.RUNNING)

        # Existing file artifacts may be overwritten by the command
        present_before = set()
        for artifact in op.creates:
            if context.files.exists(artifact):
                present_before.add(artifact)
                if not artifact.endswith('/') and context.files.resolve(artifact).is_file():
                    backup = context.files.backup(artifact)
                    if backup:
                        result.backups.append(backup)

        cmd = self.build_command(context)
        context.logger.info(f"Running: {shlex.join(cmd)}")
        rc, _, err = run_command(
            cmd,
            cwd=context.target_dir,
            timeout=context.timeout,
            capture=False,
            env=self.build_env(context),
        )
        result.exit_code = rc
        result.duration = time.time() - start

        if rc == EXIT_TIMEOUT and err:
            result.status = OperationStatus.FAILED
            result.message = f"timed out after {context.timeout:g}s"
        elif rc != 0:
            result.status = OperationStatus.FAILED
            result.message = err.strip() if rc < 0 and err else f"{op.id} exited with {rc}"
        else:
            result.status = OperationStatus.SUCCEEDED
            result.message = 'ok'

        for artifact in op.creates:
            if artifact in present_before:
                continue
            if context.files.exists(artifact):
                result.created.append(artifact)

        if result.status == OperationStatus.FAILED:
            context.logger.error(result.message)
        return result
