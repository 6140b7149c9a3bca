"""Plan executor for setup operations.

Runs a resolved plan strictly one operation at a time: operations share a
single target directory and config file. Already-completed operations are
never rolled back when a later one fails.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from actions import FileOps, Task, TaskContext, build_task
from common import OperationStatus, RunResult
from config import ConfigIOError, ConfigStore
from engine.detect import DEFAULT_PROBE_TIMEOUT, DetectionEvaluator
from engine.graph import ExecutionPlan
from engine.state import OperationState, RunSummary
from manifest import Operation, OperationRegistry
from validation import PreflightError, PreflightValidator, ToolProbe

logger = logging.getLogger(__name__)

COMPLETED_SECTION = 'completed'


class OperationFailure(Exception):
    """An operation's procedure failed.

    Tasks may raise this to fail with an explicit exit code.
    """

    def __init__(self, message: str, op_id: str = '', phase: Optional[int] = None,
                 stage: str = 'run', exit_code: int = 1):
        self.op_id = op_id
        self.phase = phase
        self.stage = stage
        self.exit_code = exit_code
        super().__init__(message)

    def __str__(self) -> str:
        where = f"[{self.op_id}, phase {self.phase}, {self.stage}] " if self.op_id else ''
        return f"{where}{self.args[0]} (exit {self.exit_code})"


@dataclass
class ExecutionOptions:
    """Knobs for one plan execution.

    Attributes:
        dry_run: Report what would run without invoking procedures
        continue_on_failure: Keep going after a failure (dependents become not_run)
        assume_yes: Auto-confirm destructive prompts
        skip_preflight: Do not run pre-flight validation
        operation_timeout: Default per-operation time budget in seconds
        probe_timeout: Time budget for tool and detection probes
        save_state: Persist last-run.json after a real run
        markers: Print per-operation progress markers to stdout
    """
    dry_run: bool = False
    continue_on_failure: bool = False
    assume_yes: bool = False
    skip_preflight: bool = False
    operation_timeout: float = 600
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    save_state: bool = True
    markers: bool = True


class PlanExecutor:
    """Executes an ExecutionPlan against one target directory."""

    def __init__(
        self,
        registry: OperationRegistry,
        target_dir: Path,
        config: ConfigStore,
        options: Optional[ExecutionOptions] = None,
        task_factory: Callable[[Operation], Task] = build_task,
        probe: Optional[ToolProbe] = None,
        confirm: Optional[Callable[[str], bool]] = None,
    ):
        self.registry = registry
        self.target_dir = Path(target_dir)
        self.config = config
        self.options = options or ExecutionOptions()
        self.task_factory = task_factory
        self.probe = probe or ToolProbe(timeout=self.options.probe_timeout)
        self.files = FileOps(self.target_dir, assume_yes=self.options.assume_yes, confirm=confirm)
        self.detector = DetectionEvaluator(self.target_dir, config,
                                           probe_timeout=self.options.probe_timeout)

    def execute(self, plan: ExecutionPlan) -> RunSummary:
        """Run the plan and return its summary."""
        summary = RunSummary(target_dir=str(self.target_dir), dry_run=self.options.dry_run)
        for op in plan:
            summary.add(op.id, op.phase)
        summary.start()

        if not self.options.skip_preflight and not self._preflight(plan, summary):
            return self._finish(summary)

        unsuccessful: set[str] = set()
        halted_by: Optional[str] = None

        for op in plan:
            state = summary.get(op.id)

            if halted_by:
                state.not_run(f"run halted after '{halted_by}' failed")
                continue

            blocked = [d for d in op.depends if d in unsuccessful]
            if blocked:
                state.not_run(f"dependency '{blocked[0]}' did not succeed")
                unsuccessful.add(op.id)
                logger.warning(f"[{op.id}] Not run: dependency '{blocked[0]}' did not succeed")
                continue

            try:
                satisfied = self.detector.is_satisfied(op)
            except ConfigIOError as e:
                self._fail_detection(op, state, e)
            else:
                if satisfied:
                    state.skip(RunResult(
                        status=OperationStatus.SKIPPED,
                        skipped=list(op.artifacts),
                        message='already satisfied',
                    ))
                    logger.info(f"[{op.id}] Skipped: already satisfied")
                    self._marker(f"[SKIP] {op.id} already satisfied")
                    continue

                if self.options.dry_run:
                    state.plan()
                    logger.info(f"[{op.id}] Would run (phase {op.phase}, {op.category})")
                    continue

                self._run_operation(op, state)

            if state.status == OperationStatus.FAILED:
                unsuccessful.add(op.id)
                if not self.options.continue_on_failure:
                    halted_by = op.id

        return self._finish(summary)

    def _fail_detection(self, op: Operation, state: OperationState, error: ConfigIOError) -> None:
        """A detection check could not read the config store: fail only this operation."""
        failure = OperationFailure(str(error), op_id=op.id, phase=op.phase, stage='detect')
        state.start()
        state.finish(RunResult(status=OperationStatus.FAILED, exit_code=failure.exit_code,
                               message=str(failure)))
        logger.error(f"Failed {failure}")
        self._marker(f"[FAILED] {op.id} detection error")

    def _preflight(self, plan: ExecutionPlan, summary: RunSummary) -> bool:
        """Run pre-flight validation; on blocking failures mark everything not_run."""
        validator = PreflightValidator(
            self.registry, self.target_dir, self.config,
            probe=self.probe, probe_timeout=self.options.probe_timeout,
        )
        report = validator.validate(plan)
        summary.preflight = report.to_dict()
        try:
            report.raise_if_blocking()
        except PreflightError as e:
            logger.error(str(e))
            for state in summary.operations:
                state.not_run('pre-flight validation failed')
            return False
        return True

    def _run_operation(self, op: Operation, state: OperationState) -> None:
        context = TaskContext(
            operation=op,
            target_dir=self.target_dir,
            config=self.config,
            files=self.files,
            tools=self.probe,
            assume_yes=self.options.assume_yes,
            timeout=op.timeout or self.options.operation_timeout,
        )
        task = self.task_factory(op)

        self._marker(f"=== {op.id} ===")
        state.start()
        start = time.time()
        try:
            result = task.run(context)
        except OperationFailure as e:
            result = RunResult(status=OperationStatus.FAILED, exit_code=e.exit_code,
                               message=str(e.args[0]))
        except Exception as e:  # pylint: disable=broad-except
            logger.exception(f"[{op.id}] Procedure raised")
            result = RunResult(status=OperationStatus.FAILED, exit_code=1,
                               message=f"{type(e).__name__}: {e}")
        if not result.duration:
            result.duration = time.time() - start

        # Procedures may rewrite the config file
        self.config.reload()

        if result.success:
            self._after_success(op, result)
            self._marker("[OK]")
            logger.info(f"[{op.id}] Succeeded in {result.duration:.1f}s")
        else:
            self._marker(f"[FAILED] {op.id} exited with {result.exit_code}")
            logger.error(f"[{op.id}] Failed (phase {op.phase}, stage run): {result.message}")
        state.finish(result)

    def _after_success(self, op: Operation, result: RunResult) -> None:
        for missing in self.detector.missing_artifacts(op):
            result.warnings.append(f"declared artifact missing after run: {missing}")
            logger.warning(f"[{op.id}] Declared artifact missing after run: {missing}")
        try:
            self.config.set(COMPLETED_SECTION, op.id, datetime.now().isoformat(timespec='seconds'))
        except ConfigIOError as e:
            result.warnings.append(f"could not record completion: {e}")
            logger.warning(f"[{op.id}] Could not record completion: {e}")

    def _finish(self, summary: RunSummary) -> RunSummary:
        summary.finish()
        if self.options.save_state and not self.options.dry_run and self.target_dir.is_dir():
            try:
                summary.save()
            except OSError as e:
                logger.warning(f"Could not save run summary: {e}")
        return summary

    def _marker(self, line: str) -> None:
        if self.options.markers:
            print(line, flush=True)
