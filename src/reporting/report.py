"""Run summaries and report files."""

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from common import OperationStatus
from config import get_state_dir
from engine.graph import ExecutionPlan
from engine.state import RunSummary

STATUS_LABELS = {
    OperationStatus.SUCCEEDED: 'Succeeded',
    OperationStatus.SKIPPED: 'Skipped',
    OperationStatus.FAILED: 'Failed',
    OperationStatus.NOT_RUN: 'NotRun',
    OperationStatus.PLANNED: 'Planned',
    OperationStatus.PENDING: 'Pending',
    OperationStatus.RUNNING: 'Running',
}

STATUS_MARKS = {
    OperationStatus.SUCCEEDED: '✅',
    OperationStatus.SKIPPED: '⏭️',
    OperationStatus.FAILED: '❌',
    OperationStatus.NOT_RUN: '⛔',
    OperationStatus.PLANNED: '📝',
}


def format_plan(plan: ExecutionPlan, title: str = 'PLAN') -> str:
    """Banner listing the operations of a plan in execution order."""
    lines = [
        "",
        "=" * 65,
        f"  {title}: {len(plan)} operation(s)",
        "=" * 65,
        "",
    ]
    for index, op in enumerate(plan, 1):
        marker = '' if op.id in plan.requested else '  (dependency)'
        lines.append(f"  {index:>2}. [{op.phase}] {op.id}: {op.category}, priority {op.priority}{marker}")
        if op.description:
            lines.append(f"      {op.description}")
        if op.depends:
            lines.append(f"      depends: {', '.join(op.depends)}")
    lines.append("")
    return '\n'.join(lines)


def format_summary(summary: RunSummary) -> str:
    """Human-readable run summary, statuses shown distinctly."""
    title = 'DRY-RUN SUMMARY' if summary.dry_run else 'RUN SUMMARY'
    lines = [
        "",
        "=" * 65,
        f"  {title}: {summary.target_dir}",
        "=" * 65,
    ]
    width = max((len(s.op_id) for s in summary.operations), default=0)
    for state in summary.operations:
        label = STATUS_LABELS.get(state.status, state.status)
        line = f"  {state.op_id:<{width}}  {label:<9}"
        if state.result is not None and state.status in (OperationStatus.SUCCEEDED, OperationStatus.FAILED):
            line += f"  {state.result.duration:6.1f}s"
        if state.reason and state.status != OperationStatus.SUCCEEDED:
            line += f"  {state.reason}"
        lines.append(line)
        if state.result is not None:
            for warning in state.result.warnings:
                lines.append(f"      warning: {warning}")
            for backup in state.result.backups:
                lines.append(f"      backup: {backup}")

    counts = summary.counts
    parts = [f"{counts[s]} {STATUS_LABELS[s].lower()}" for s in STATUS_LABELS if counts.get(s)]
    lines.append("")
    lines.append(f"  {', '.join(parts) if parts else 'nothing to do'} ({summary.duration:.1f}s)")
    lines.append(f"  Exit code: {summary.exit_code}")
    lines.append("")
    return '\n'.join(lines)


@dataclass
class RunReport:
    """Writes timestamped JSON and markdown reports for a run."""
    summary: RunSummary
    report_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.report_dir is None:
            self.report_dir = get_state_dir(Path(self.summary.target_dir)) / 'logs'

    def write(self) -> list[Path]:
        """Write both report files; returns their paths."""
        self.report_dir.mkdir(parents=True, exist_ok=True)
        return [self._write_json(), self._write_markdown()]

    def _write_json(self) -> Path:
        filename = self._report_filename('json')
        with open(filename, 'w', encoding='utf-8') as f:
            json.dump(self.summary.to_dict(), f, indent=2)
        return filename

    def _write_markdown(self) -> Path:
        summary = self.summary
        status = 'PASSED' if summary.success else 'FAILED'
        started = (datetime.fromtimestamp(summary.started_at).strftime('%Y-%m-%d %H:%M:%S')
                   if summary.started_at else 'N/A')
        lines = [
            f"# Bootstrap run: {summary.target_dir}",
            "",
            f"**Status**: {status}",
            f"**Exit code**: {summary.exit_code}",
            f"**Date**: {started}",
            f"**Duration**: {summary.duration:.1f}s",
            "",
            "## Operations",
            "",
            "| Operation | Phase | Status | Duration | Notes |",
            "|-----------|-------|--------|----------|-------|",
        ]
        for state in summary.operations:
            mark = STATUS_MARKS.get(state.status, '❓')
            label = STATUS_LABELS.get(state.status, state.status)
            lines.append(f"| {state.op_id} | {state.phase} | {mark} {label} | "
                         f"{state.duration:.1f}s | {state.reason} |")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding='utf-8') as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        started = datetime.fromtimestamp(self.summary.started_at) if self.summary.started_at else datetime.now()
        timestamp = started.strftime('%Y%m%d-%H%M%S')
        status = 'passed' if self.summary.success else 'failed'
        return self.report_dir / f"{timestamp}.{status}.{ext}"
