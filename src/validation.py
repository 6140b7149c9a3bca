"""Pre-flight validation for execution plans.

Runs before any operation executes and catches missing tools, an unusable
target directory and unmet dependencies early, with actionable messages.
All failures are collected; nothing here mutates the target or the config.
"""

import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from common import EXIT_TIMEOUT, run_command
from config import ConfigIOError, ConfigStore
from engine.detect import DEFAULT_PROBE_TIMEOUT, DetectionEvaluator
from manifest import Operation, OperationRegistry

if TYPE_CHECKING:
    from engine.graph import ExecutionPlan

logger = logging.getLogger(__name__)

# "node>=18.2" -> ("node", "18.2")
_REQUIREMENT_RE = re.compile(r'^\s*([A-Za-z0-9_.+-]+?)\s*(?:>=\s*([0-9][0-9.]*))?\s*$')
_VERSION_RE = re.compile(r'(\d+(?:\.\d+)*)')


class ValidationFailure(Exception):
    """A single pre-flight finding.

    Attributes:
        op_id: Operation the finding belongs to ('' for plan-wide checks)
        phase: Phase of that operation (None for plan-wide checks)
        stage: Which check produced it (tools, target, dependencies, templates)
        message: Actionable description
    """
    severity = 'failure'

    def __init__(self, message: str, op_id: str = '', phase: Optional[int] = None,
                 stage: str = ''):
        self.message = message
        self.op_id = op_id
        self.phase = phase
        self.stage = stage
        super().__init__(message)

    def __str__(self) -> str:
        where = []
        if self.op_id:
            where.append(self.op_id)
        if self.phase is not None:
            where.append(f'phase {self.phase}')
        if self.stage:
            where.append(self.stage)
        prefix = f"[{', '.join(where)}] " if where else ''
        return f"{prefix}{self.message}"

    def to_dict(self) -> dict:
        return {
            'severity': self.severity,
            'op_id': self.op_id,
            'phase': self.phase,
            'stage': self.stage,
            'message': self.message,
        }


class BlockingValidationFailure(ValidationFailure):
    """Finding that aborts the whole run before execution begins."""
    severity = 'blocking'


class AdvisoryValidationFailure(ValidationFailure):
    """Finding that is logged but does not prevent execution."""
    severity = 'advisory'


@dataclass
class ValidationReport:
    """Aggregated pre-flight findings for one plan."""
    blocking: list[BlockingValidationFailure] = field(default_factory=list)
    advisory: list[AdvisoryValidationFailure] = field(default_factory=list)
    passed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.blocking

    def add(self, failure: ValidationFailure) -> None:
        if isinstance(failure, BlockingValidationFailure):
            self.blocking.append(failure)
        elif isinstance(failure, AdvisoryValidationFailure):
            self.advisory.append(failure)
        else:
            raise TypeError(f"Unclassified validation failure: {failure!r}")

    def raise_if_blocking(self) -> None:
        """Raise PreflightError carrying every blocking finding.

        Raises:
            PreflightError: If any blocking failure was recorded
        """
        if self.blocking:
            raise PreflightError(self)

    def to_dict(self) -> dict:
        return {
            'ok': self.ok,
            'blocking': [f.to_dict() for f in self.blocking],
            'advisory': [f.to_dict() for f in self.advisory],
            'passed': list(self.passed),
        }


class PreflightError(Exception):
    """Pre-flight validation found blocking failures."""

    def __init__(self, report: ValidationReport):
        self.report = report
        count = len(report.blocking)
        super().__init__(
            f"Pre-flight validation failed with {count} blocking issue{'s' if count != 1 else ''}"
        )


# -----------------------------------------------------------------------------
# Tool probing
# -----------------------------------------------------------------------------

def parse_requirement(requirement: str) -> tuple[str, Optional[str]]:
    """Split a tool requirement into (tool, minimum version).

    Raises:
        ValueError: If the requirement string is malformed
    """
    match = _REQUIREMENT_RE.match(requirement)
    if not match:
        raise ValueError(f"Invalid tool requirement: {requirement!r}")
    return match.group(1), match.group(2)


def _version_tuple(version: str) -> tuple[int, ...]:
    return tuple(int(part) for part in version.split('.') if part.isdigit())


@dataclass
class ProbeResult:
    """Outcome of checking one external tool."""
    tool: str
    found: bool
    path: Optional[str] = None
    version: Optional[str] = None
    minimum: Optional[str] = None
    timed_out: bool = False
    error: str = ''

    @property
    def ok(self) -> bool:
        if not self.found or self.timed_out or self.error:
            return False
        if self.minimum and self.version:
            return _version_tuple(self.version) >= _version_tuple(self.minimum)
        return True

    def describe(self) -> str:
        if not self.found:
            return f"'{self.tool}' not found on PATH"
        if self.timed_out:
            return f"'{self.tool} --version' did not respond within the probe timeout"
        if self.error:
            return f"'{self.tool}' version probe failed: {self.error}"
        if self.minimum and self.version and not self.ok:
            return f"'{self.tool}' {self.version} is older than required {self.minimum}"
        return f"'{self.tool}' {self.version or ''}".rstrip()


class ToolProbe:
    """Resolves external tools on the executing host.

    A version probe (``TOOL --version``) only runs when the requirement
    carries a minimum version. Results are cached per requirement.
    """

    def __init__(self, timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.timeout = timeout
        self._cache: dict[str, ProbeResult] = {}

    def which(self, tool: str) -> Optional[str]:
        return shutil.which(tool)

    def probe(self, requirement: str) -> ProbeResult:
        if requirement in self._cache:
            return self._cache[requirement]

        tool, minimum = parse_requirement(requirement)
        path = self.which(tool)
        result = ProbeResult(tool=tool, found=path is not None, path=path, minimum=minimum)

        if path and minimum:
            rc, out, err = run_command([path, '--version'], timeout=self.timeout)
            if rc == EXIT_TIMEOUT:
                result.timed_out = True
            elif rc != 0:
                output = (err or out).strip()
                result.error = output.splitlines()[0] if output else f'exit {rc}'
            else:
                match = _VERSION_RE.search(out or err)
                if match:
                    result.version = match.group(1)
                else:
                    result.error = 'could not parse version output'

        self._cache[requirement] = result
        return result

    def available(self, requirement: str) -> bool:
        return self.probe(requirement).ok


# -----------------------------------------------------------------------------
# Plan validation
# -----------------------------------------------------------------------------

class PreflightValidator:
    """Read-only checks over an execution plan.

    Checks, per operation: required tools (blocking), optional tools
    (advisory), template sources (blocking), and that every dependency is
    already satisfied or scheduled earlier in the plan (blocking). The target
    directory must exist and be writable.
    """

    def __init__(
        self,
        registry: OperationRegistry,
        target_dir: Path,
        config: ConfigStore,
        probe: Optional[ToolProbe] = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ):
        self.registry = registry
        self.target_dir = Path(target_dir)
        self.config = config
        self.probe = probe or ToolProbe(timeout=probe_timeout)
        self.detector = DetectionEvaluator(self.target_dir, config, probe_timeout=probe_timeout)

    def validate(self, plan: 'ExecutionPlan') -> ValidationReport:
        report = ValidationReport()
        self._check_target(report)

        position = {op_id: i for i, op_id in enumerate(plan.ids)}
        for index, op in enumerate(plan):
            self._check_tools(op, report)
            self._check_templates(op, report)
            self._check_dependencies(op, index, position, report)

        for failure in report.advisory:
            logger.warning(f"Pre-flight advisory: {failure}")
        for failure in report.blocking:
            logger.error(f"Pre-flight blocking: {failure}")
        return report

    def _check_target(self, report: ValidationReport) -> None:
        target = self.target_dir
        if not target.exists():
            report.add(BlockingValidationFailure(
                f"Target directory does not exist: {target}", stage='target'))
        elif not target.is_dir():
            report.add(BlockingValidationFailure(
                f"Target is not a directory: {target}", stage='target'))
        elif not os.access(target, os.W_OK | os.X_OK):
            report.add(BlockingValidationFailure(
                f"Target directory is not writable: {target}", stage='target'))
        else:
            report.passed.append(f"Target directory writable: {target}")

    def _check_tools(self, op: Operation, report: ValidationReport) -> None:
        for requirement in op.requires:
            result = self.probe.probe(requirement)
            if result.ok:
                report.passed.append(f"{op.id}: {result.describe()}")
            else:
                report.add(BlockingValidationFailure(
                    f"Required tool {result.describe()}",
                    op_id=op.id, phase=op.phase, stage='tools'))
        for requirement in op.optional:
            result = self.probe.probe(requirement)
            if not result.ok:
                report.add(AdvisoryValidationFailure(
                    f"Optional tool {result.describe()}",
                    op_id=op.id, phase=op.phase, stage='tools'))

    def _check_templates(self, op: Operation, report: ValidationReport) -> None:
        base = op.source_dir or Path.cwd()
        for dest, template in op.files:
            if not (base / template).is_file():
                report.add(BlockingValidationFailure(
                    f"Template '{template}' for '{dest}' not found under {base}",
                    op_id=op.id, phase=op.phase, stage='templates'))

    def _check_dependencies(self, op: Operation, index: int, position: dict[str, int],
                            report: ValidationReport) -> None:
        for dep_id in op.depends:
            if dep_id in position and position[dep_id] < index:
                continue
            dep = self.registry.lookup(dep_id)
            try:
                satisfied = self.detector.is_satisfied(dep)
            except ConfigIOError as e:
                report.add(BlockingValidationFailure(
                    f"Cannot evaluate dependency '{dep_id}': {e}",
                    op_id=op.id, phase=op.phase, stage='detect'))
                continue
            if satisfied:
                report.passed.append(f"{op.id}: dependency '{dep_id}' already satisfied")
                continue
            report.add(BlockingValidationFailure(
                f"Dependency '{dep_id}' is neither satisfied nor scheduled earlier in the plan",
                op_id=op.id, phase=op.phase, stage='dependencies'))


def format_report(report: ValidationReport) -> str:
    """Format a validation report for display."""
    lines = ["", "Pre-flight checks:"]
    for item in report.passed:
        lines.append(f"✓ {item}")
    for failure in report.advisory:
        lines.append(f"! {failure}")
    for failure in report.blocking:
        lines.append(f"✗ {failure}")
    lines.append("")
    if report.ok:
        lines.append("All blocking checks passed.")
    else:
        lines.append(f"{len(report.blocking)} blocking issue(s). Fix them before running.")
    return '\n'.join(lines)
