#!/usr/bin/env python3
"""Tests for validation.py - pre-flight validation.

Tests verify:
1. Requirement parsing and tool probing
2. Blocking vs advisory classification
3. Target directory checks
4. Dependency and template checks
"""

import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import make_registry
from engine.graph import resolve_plan
from manifest import OperationRegistry
from validation import (
    AdvisoryValidationFailure,
    BlockingValidationFailure,
    PreflightError,
    PreflightValidator,
    ProbeResult,
    ToolProbe,
    ValidationReport,
    format_report,
    parse_requirement,
)


class FakeProbe(ToolProbe):
    """ToolProbe that only finds a fixed set of tools."""

    def __init__(self, installed=None):
        super().__init__(timeout=1)
        self.installed = installed or set()

    def which(self, tool):
        return f'/usr/bin/{tool}' if tool in self.installed else None


class TestParseRequirement:
    """Tests for parse_requirement."""

    def test_plain(self):
        assert parse_requirement('git') == ('git', None)

    def test_minimum_version(self):
        assert parse_requirement('node>=18') == ('node', '18')
        assert parse_requirement('python3 >= 3.10') == ('python3', '3.10')

    def test_malformed(self):
        with pytest.raises(ValueError):
            parse_requirement('node>18')


class TestProbeResult:
    """Tests for ProbeResult.ok."""

    def test_missing(self):
        result = ProbeResult(tool='docker', found=False)
        assert not result.ok
        assert 'not found' in result.describe()

    def test_version_compare_numeric(self):
        assert ProbeResult(tool='node', found=True, version='20.11.1', minimum='18').ok
        assert not ProbeResult(tool='node', found=True, version='9.2.0', minimum='18').ok
        assert 'older than required 18' in ProbeResult(
            tool='node', found=True, version='16.0.0', minimum='18').describe()

    def test_timed_out(self):
        result = ProbeResult(tool='node', found=True, minimum='18', timed_out=True)
        assert not result.ok
        assert 'probe timeout' in result.describe()


class TestToolProbe:
    """Tests for ToolProbe."""

    def test_no_version_probe_without_minimum(self):
        probe = FakeProbe({'git'})
        with patch('validation.run_command') as mock_run:
            assert probe.available('git')
        mock_run.assert_not_called()

    def test_version_probe(self):
        probe = FakeProbe({'node'})
        with patch('validation.run_command', return_value=(0, 'v20.11.1\n', '')) as mock_run:
            result = probe.probe('node>=18')

        assert result.ok
        assert result.version == '20.11.1'
        assert mock_run.call_args.args[0] == ['/usr/bin/node', '--version']
        assert mock_run.call_args.kwargs['timeout'] == 1

    def test_probe_timeout(self):
        probe = FakeProbe({'node'})
        with patch('validation.run_command', return_value=(124, '', 'Command timed out after 1s')):
            result = probe.probe('node>=18')
        assert result.timed_out
        assert not result.ok

    def test_probe_error(self):
        probe = FakeProbe({'node'})
        with patch('validation.run_command', return_value=(2, '', 'bad flag\nmore')):
            result = probe.probe('node>=18')
        assert result.error == 'bad flag'

    def test_results_cached(self):
        probe = FakeProbe({'node'})
        with patch('validation.run_command', return_value=(0, 'v20.0.0', '')) as mock_run:
            probe.probe('node>=18')
            probe.probe('node>=18')
        assert mock_run.call_count == 1


class TestValidationReport:
    """Tests for ValidationReport."""

    def test_classification(self):
        report = ValidationReport()
        report.add(BlockingValidationFailure('missing git', op_id='git', phase=1, stage='tools'))
        report.add(AdvisoryValidationFailure('no docker', op_id='docker', phase=2, stage='tools'))

        assert not report.ok
        assert len(report.blocking) == 1
        assert len(report.advisory) == 1
        assert report.to_dict()['blocking'][0]['severity'] == 'blocking'

    def test_unclassified_rejected(self):
        from validation import ValidationFailure
        with pytest.raises(TypeError):
            ValidationReport().add(ValidationFailure('?'))

    def test_raise_if_blocking(self):
        report = ValidationReport()
        report.add(AdvisoryValidationFailure('just a warning'))
        report.raise_if_blocking()

        report.add(BlockingValidationFailure('first'))
        report.add(BlockingValidationFailure('second'))
        with pytest.raises(PreflightError, match='2 blocking issues') as exc_info:
            report.raise_if_blocking()
        assert exc_info.value.report is report

    def test_failure_str_names_operation_phase_stage(self):
        failure = BlockingValidationFailure('tool missing', op_id='git', phase=1, stage='tools')
        assert str(failure) == '[git, phase 1, tools] tool missing'


class TestPreflightValidator:
    """Tests for PreflightValidator.validate."""

    def _validator(self, registry, target_dir, config, installed=('git',)):
        return PreflightValidator(registry, target_dir, config, probe=FakeProbe(set(installed)))

    def test_clean_plan_passes(self, sample_registry, target_dir, config):
        plan = resolve_plan(sample_registry, ['all'])
        report = self._validator(sample_registry, target_dir, config).validate(plan)

        assert report.ok
        assert report.advisory == []

    def test_missing_required_tool_blocks(self, target_dir, config):
        registry = make_registry([{'id': 'docker', 'phase': 2, 'requires': ['docker']}])
        plan = resolve_plan(registry, ['docker'])

        report = self._validator(registry, target_dir, config).validate(plan)

        assert not report.ok
        failure = report.blocking[0]
        assert (failure.op_id, failure.phase, failure.stage) == ('docker', 2, 'tools')
        assert "'docker' not found" in failure.message

    def test_missing_optional_tool_is_advisory(self, target_dir, config):
        registry = make_registry([{'id': 'packages', 'optional': ['pnpm']}])
        plan = resolve_plan(registry, ['packages'])

        report = self._validator(registry, target_dir, config).validate(plan)

        assert report.ok
        assert report.advisory[0].op_id == 'packages'

    def test_all_failures_collected(self, target_dir, config):
        registry = make_registry([
            {'id': 'a', 'requires': ['tool-a']},
            {'id': 'b', 'requires': ['tool-b']},
        ])
        report = self._validator(registry, target_dir, config).validate(resolve_plan(registry, ['all']))
        assert [f.op_id for f in report.blocking] == ['a', 'b']

    def test_missing_target_blocks(self, sample_registry, tmp_path, config):
        plan = resolve_plan(sample_registry, ['git'])
        report = self._validator(sample_registry, tmp_path / 'absent', config).validate(plan)

        assert [f.stage for f in report.blocking] == ['target']

    def test_target_is_file(self, sample_registry, tmp_path, config):
        path = tmp_path / 'file'
        path.write_text('')
        report = self._validator(sample_registry, path, config).validate(
            resolve_plan(sample_registry, ['git']))
        assert 'not a directory' in report.blocking[0].message

    @pytest.mark.skipif(os.geteuid() == 0, reason='root bypasses permission bits')
    def test_read_only_target(self, sample_registry, target_dir, config):
        target_dir.chmod(0o555)
        try:
            report = self._validator(sample_registry, target_dir, config).validate(
                resolve_plan(sample_registry, ['git']))
        finally:
            target_dir.chmod(0o755)
        assert 'not writable' in report.blocking[0].message

    def test_unscheduled_unsatisfied_dependency_blocks(self, sample_registry, target_dir, config):
        plan = resolve_plan(sample_registry, ['packages'], include_dependencies=False)
        report = self._validator(sample_registry, target_dir, config).validate(plan)

        failure = report.blocking[0]
        assert failure.stage == 'dependencies'
        assert "'git'" in failure.message

    def test_dependency_satisfied_by_detection(self, sample_registry, target_dir, config):
        (target_dir / '.git').mkdir()
        plan = resolve_plan(sample_registry, ['packages'], include_dependencies=False)

        report = self._validator(sample_registry, target_dir, config).validate(plan)

        assert report.ok
        assert any("dependency 'git' already satisfied" in p for p in report.passed)

    def test_unreadable_config_blocks_dependency_check(self, target_dir, config):
        registry = make_registry([
            {'id': 'named', 'detects': ['config:project.name'], 'run': 'true'},
            {'id': 'lint', 'depends': ['named'], 'run': 'true'},
        ])
        config.path.parent.mkdir(parents=True)
        config.path.write_text('garbage\n')
        plan = resolve_plan(registry, ['lint'], include_dependencies=False)

        report = self._validator(registry, target_dir, config).validate(plan)

        failure = report.blocking[0]
        assert (failure.op_id, failure.stage) == ('lint', 'detect')
        assert "Cannot evaluate dependency 'named'" in failure.message

    def test_missing_template_blocks(self, target_dir, config, write_manifest):
        registry = OperationRegistry.from_file(write_manifest([
            {'id': 'gitignore', 'files': {'.gitignore': 'templates/gitignore'}},
            {'id': 'lint', 'files': {'.eslintrc': 'templates/eslintrc'}},
        ]))

        report = self._validator(registry, target_dir, config).validate(resolve_plan(registry, ['all']))

        assert [(f.op_id, f.stage) for f in report.blocking] == [('lint', 'templates')]

    def test_validation_does_not_mutate(self, sample_registry, target_dir, config):
        self._validator(sample_registry, target_dir, config).validate(resolve_plan(sample_registry, ['all']))
        assert list(target_dir.iterdir()) == []


class TestFormatReport:
    """Tests for format_report."""

    def test_marks(self):
        report = ValidationReport(passed=['git found'])
        report.add(AdvisoryValidationFailure('no docker', op_id='docker'))
        report.add(BlockingValidationFailure('no git', op_id='git'))

        text = format_report(report)

        assert '✓ git found' in text
        assert '! [docker] no docker' in text
        assert '✗ [git] no git' in text
        assert '1 blocking issue(s)' in text
