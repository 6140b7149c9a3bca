"""Tests for cli.py and the verb/noun handlers."""

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import cli
from config import ConfigStore
from engine.cli import list_main, parse_selectors, plan_main, run_main, status_main, validate_main
from server.cli import job_main
from server.cli import main as server_main
from server.client import JobClientError


@pytest.fixture
def manifest_path(write_manifest, sample_operations):
    return write_manifest(sample_operations, profiles={
        'minimal': ['git', 'packages'],
        'standard': {'description': 'Everyday setup',
                     'operations': ['git', 'environment', 'packages', 'typescript']},
    })


class TestMain:
    """Tests for top-level dispatch."""

    def test_no_args_prints_usage(self, capsys):
        assert cli.main([]) == 0
        out = capsys.readouterr().out
        assert 'Usage: bootstrap-driver <command>' in out
        for name in ('run', 'plan', 'validate', 'list', 'config', 'server', 'job'):
            assert f'  {name}' in out

    def test_unknown_command(self, capsys):
        assert cli.main(['deploy']) == 1
        assert "Unknown command 'deploy'" in capsys.readouterr().err

    def test_version(self, capsys):
        with patch('cli.get_version', return_value='v0.3.0'):
            assert cli.main(['--version']) == 0
        assert capsys.readouterr().out.strip() == 'v0.3.0'

    def test_dispatch_to_list(self, manifest_path, target_dir, capsys):
        rc = cli.main(['list', '--manifest-file', str(manifest_path), '--target', str(target_dir)])
        assert rc == 0
        assert 'typescript' in capsys.readouterr().out


class TestParseSelectors:
    """Tests for parse_selectors."""

    def test_words_and_flags(self):
        assert parse_selectors(['git', 'phase', '3', 'profile', 'minimal'], [2], ['standard']) == [
            'git', 'phase:3', 'profile:minimal', 'phase:2', 'profile:standard']

    def test_colon_form_untouched(self):
        assert parse_selectors(['phase:1', 'all'], [], []) == ['phase:1', 'all']

    def test_dangling_word(self):
        with pytest.raises(ValueError, match="'phase' needs a value"):
            parse_selectors(['phase'], [], [])


class TestConfigCommand:
    """Tests for the config noun."""

    def test_set_then_get(self, target_dir, capsys):
        assert cli.config_main(['--target', str(target_dir), 'set', 'git', 'default_branch', 'trunk']) == 0
        assert cli.config_main(['--target', str(target_dir), 'get', 'git', 'default_branch']) == 0
        assert capsys.readouterr().out.strip() == 'trunk'
        assert ConfigStore.for_target(target_dir).get('git', 'default_branch') == 'trunk'

    def test_get_unset(self, target_dir, capsys):
        assert cli.config_main(['--target', str(target_dir), 'get', 'project', 'name']) == 1
        assert 'project.name is not set' in capsys.readouterr().err

    def test_get_default(self, target_dir, capsys):
        rc = cli.config_main(['--target', str(target_dir), 'get', 'project', 'name', '--default', 'web'])
        assert rc == 0
        assert capsys.readouterr().out.strip() == 'web'

    def test_init_and_show(self, target_dir, capsys):
        assert cli.config_main(['--target', str(target_dir), 'init']) == 0
        assert 'Initialized: project.name' in capsys.readouterr().out

        assert cli.config_main(['--target', str(target_dir), 'init']) == 0
        assert 'Nothing to initialize' in capsys.readouterr().out

        assert cli.config_main(['--target', str(target_dir), 'show']) == 0
        out = capsys.readouterr().out
        assert '[project]' in out
        assert 'my-app' in out

    def test_unreadable_config(self, target_dir, capsys):
        bad = target_dir / 'broken.config'
        bad.write_text('no section header\n')

        rc = cli.config_main(['--target', str(target_dir), '--config', str(bad), 'get', 'a', 'b'])

        assert rc == 1
        assert 'Error:' in capsys.readouterr().err


class TestRunCommand:
    """Tests for the run verb."""

    def test_run_profile(self, manifest_path, target_dir, capsys):
        rc = run_main(['--profile', 'minimal', '--target', str(target_dir),
                       '--manifest-file', str(manifest_path), '--yes'])

        assert rc == 0
        assert (target_dir / '.git').is_dir()
        assert (target_dir / 'package.json').exists()
        assert not (target_dir / 'tsconfig.json').exists()
        assert 'RUN SUMMARY' in capsys.readouterr().out
        assert ConfigStore.for_target(target_dir).get('project', 'name') == 'my-app'

    def test_rerun_skips(self, manifest_path, target_dir, capsys):
        args = ['git', 'packages', '-t', str(target_dir), '-M', str(manifest_path), '--json-output']
        assert run_main(args) == 0
        capsys.readouterr()

        assert run_main(args) == 0
        data = json.loads(capsys.readouterr().out)
        assert [op['status'] for op in data['operations']] == ['skipped', 'skipped']

    def test_dry_run_changes_nothing(self, manifest_path, target_dir, capsys):
        rc = run_main(['typescript', '--dry-run', '-t', str(target_dir), '-M', str(manifest_path)])

        assert rc == 0
        out = capsys.readouterr().out
        assert 'DRY-RUN: 3 operation(s)' in out
        assert 'DRY-RUN SUMMARY' in out
        assert list(target_dir.iterdir()) == []

    def test_dependencies_pulled_in(self, manifest_path, target_dir, capsys):
        rc = run_main(['typescript', '-t', str(target_dir), '-M', str(manifest_path), '--json-output'])

        assert rc == 0
        data = json.loads(capsys.readouterr().out)
        assert [op['id'] for op in data['operations']] == ['git', 'packages', 'typescript']

    def test_failure_exit_code(self, write_manifest, target_dir, capsys):
        path = write_manifest([
            {'id': 'lint', 'run': 'exit 4'},
            {'id': 'ci', 'phase': 4, 'depends': ['lint'], 'run': 'true'},
        ])

        rc = run_main(['all', '-t', str(target_dir), '-M', str(path), '--json-output'])

        assert rc == 4
        data = json.loads(capsys.readouterr().out)
        assert [op['status'] for op in data['operations']] == ['failed', 'not_run']

    def test_nothing_selected(self, manifest_path, target_dir, capsys):
        assert run_main(['-t', str(target_dir), '-M', str(manifest_path)]) == 1
        assert 'nothing selected' in capsys.readouterr().err

    def test_unknown_operation(self, manifest_path, target_dir, capsys):
        assert run_main(['nope', '-t', str(target_dir), '-M', str(manifest_path)]) == 1
        assert 'Error:' in capsys.readouterr().err

    def test_missing_manifest(self, tmp_path, target_dir, capsys):
        rc = run_main(['all', '-t', str(target_dir), '-M', str(tmp_path / 'absent.yaml')])
        assert rc == 1
        assert 'Manifest file not found' in capsys.readouterr().err

    def test_preflight_blocks_missing_target(self, manifest_path, tmp_path, capsys):
        rc = run_main(['git', '-t', str(tmp_path / 'absent'), '-M', str(manifest_path)])

        assert rc == 1
        assert 'Pre-flight validation failed' in capsys.readouterr().out

    def test_report_files(self, manifest_path, target_dir):
        rc = run_main(['git', '-t', str(target_dir), '-M', str(manifest_path), '--report', '--json-output'])

        assert rc == 0
        logs = target_dir / '.bootstrap' / 'logs'
        assert len(list(logs.glob('*.passed.json'))) == 1
        assert len(list(logs.glob('*.passed.md'))) == 1


class TestRetryFailed:
    """Tests for run --retry-failed."""

    @pytest.fixture
    def gated_manifest(self, write_manifest):
        return write_manifest([
            {'id': 'lint', 'priority': 10, 'run': 'test -f ok.txt'},
            {'id': 'docs', 'priority': 20, 'creates': ['docs.txt'], 'run': 'touch docs.txt'},
            {'id': 'ci', 'phase': 4, 'depends': ['lint'], 'creates': ['ci.txt'], 'run': 'touch ci.txt'},
        ])

    def test_reruns_failed_and_not_run(self, gated_manifest, target_dir, capsys):
        args = ['-t', str(target_dir), '-M', str(gated_manifest), '--json-output']
        assert run_main(['all'] + args) == 1
        capsys.readouterr()
        (target_dir / 'ok.txt').touch()

        rc = run_main(['--retry-failed'] + args)

        assert rc == 0
        data = json.loads(capsys.readouterr().out)
        assert [(op['id'], op['status']) for op in data['operations']] == [
            ('lint', 'succeeded'), ('docs', 'succeeded'), ('ci', 'succeeded')]
        assert (target_dir / 'ci.txt').exists()

    def test_nothing_to_retry(self, manifest_path, target_dir, capsys):
        args = ['-t', str(target_dir), '-M', str(manifest_path)]
        assert run_main(['git', '--json-output'] + args) == 0
        capsys.readouterr()

        assert run_main(['--retry-failed'] + args) == 0
        assert 'Nothing to retry' in capsys.readouterr().out

    def test_no_recorded_run(self, manifest_path, target_dir, capsys):
        assert run_main(['--retry-failed', '-t', str(target_dir), '-M', str(manifest_path)]) == 1
        assert 'No recorded run' in capsys.readouterr().err


class TestStatusCommand:
    """Tests for the status verb."""

    def test_no_recorded_run(self, manifest_path, target_dir, capsys):
        assert status_main(['-t', str(target_dir), '-M', str(manifest_path)]) == 1
        assert 'No recorded run' in capsys.readouterr().err

    def test_healthy(self, manifest_path, target_dir, capsys):
        args = ['-t', str(target_dir), '-M', str(manifest_path)]
        assert run_main(['--profile', 'minimal', '--json-output'] + args) == 0
        capsys.readouterr()

        assert status_main(args) == 0
        out = capsys.readouterr().out
        assert 'RUN SUMMARY' in out
        assert 'All recorded artifacts present.' in out

    def test_missing_artifact_reported(self, manifest_path, target_dir, capsys):
        args = ['-t', str(target_dir), '-M', str(manifest_path), '--json-output']
        assert run_main(['--profile', 'minimal'] + args) == 0
        capsys.readouterr()
        (target_dir / 'package.json').unlink()

        assert status_main(args) == 1
        data = json.loads(capsys.readouterr().out)
        assert data['healthy'] is False
        assert data['missing_artifacts'] == {'packages': ['package.json']}
        assert data['retry'] == []

    def test_failed_run_lists_retry(self, write_manifest, target_dir, capsys):
        path = write_manifest([{'id': 'lint', 'run': 'exit 4'}])
        args = ['-t', str(target_dir), '-M', str(path)]
        run_main(['all', '--json-output'] + args)
        capsys.readouterr()

        assert status_main(args) == 1
        assert 'bootstrap-driver run --retry-failed' in capsys.readouterr().out


class TestPlanCommand:
    """Tests for the plan verb."""

    def test_text(self, manifest_path, target_dir, capsys):
        assert plan_main(['phase', '3', '-t', str(target_dir), '-M', str(manifest_path)]) == 0
        out = capsys.readouterr().out
        assert 'PLAN: 3 operation(s)' in out
        assert out.index('git') < out.index('packages') < out.index('typescript')

    def test_only_json(self, manifest_path, target_dir, capsys):
        rc = plan_main(['typescript', '--only', '-t', str(target_dir), '-M', str(manifest_path), '--json-output'])

        assert rc == 0
        data = json.loads(capsys.readouterr().out)
        assert data['requested'] == ['typescript']
        assert [op['id'] for op in data['operations']] == ['typescript']

    def test_cycle(self, write_manifest, target_dir, capsys):
        path = write_manifest([
            {'id': 'a', 'depends': ['b']},
            {'id': 'b', 'depends': ['a']},
        ])

        assert plan_main(['all', '-t', str(target_dir), '-M', str(path)]) == 1
        assert 'Error:' in capsys.readouterr().err


class TestValidateCommand:
    """Tests for the validate verb."""

    def test_all_valid(self, manifest_path, target_dir, capsys):
        assert validate_main(['-t', str(target_dir), '-M', str(manifest_path)]) == 0
        out = capsys.readouterr().out
        assert f'Manifest: {manifest_path}' in out
        assert 'All blocking checks passed.' in out

    def test_blocking_json(self, manifest_path, tmp_path, capsys):
        rc = validate_main(['-t', str(tmp_path / 'absent'), '-M', str(manifest_path), '--json-output'])

        assert rc == 1
        data = json.loads(capsys.readouterr().out)
        assert data['valid'] is False
        assert data['plan'] == ['git', 'environment', 'packages', 'typescript']

    def test_invalid_manifest_json(self, write_manifest, target_dir, capsys):
        path = write_manifest([{'id': 'a', 'depends': ['ghost']}])

        assert validate_main(['-t', str(target_dir), '-M', str(path), '--json-output']) == 1
        assert json.loads(capsys.readouterr().out)['valid'] is False


class TestListCommand:
    """Tests for the list verb."""

    def test_grouped_by_phase(self, manifest_path, target_dir, capsys):
        assert list_main(['-t', str(target_dir), '-M', str(manifest_path)]) == 0
        out = capsys.readouterr().out
        assert 'Phase 1:' in out
        assert 'Phase 3:' in out
        assert '(depends: packages)' in out

    def test_filter_json(self, manifest_path, target_dir, capsys):
        assert list_main(['--phase', '3', '-t', str(target_dir), '-M', str(manifest_path), '--json-output']) == 0
        assert [op['id'] for op in json.loads(capsys.readouterr().out)] == ['typescript']

    def test_no_match(self, manifest_path, target_dir, capsys):
        assert list_main(['--category', 'cicd', '-t', str(target_dir), '-M', str(manifest_path)]) == 0
        assert 'No operations match' in capsys.readouterr().out

    def test_profiles(self, manifest_path, target_dir, capsys):
        assert list_main(['--profiles', '-t', str(target_dir), '-M', str(manifest_path), '--json-output']) == 0
        assert json.loads(capsys.readouterr().out) == {
            'minimal': ['git', 'packages'],
            'standard': ['git', 'environment', 'packages', 'typescript'],
        }


class TestServerCommand:
    """Tests for the server noun (no listening socket)."""

    def test_usage(self, capsys):
        assert server_main([]) == 0
        assert 'start' in capsys.readouterr().out

    def test_unknown_subcommand(self, capsys):
        assert server_main(['reboot']) == 1
        assert "Unknown server command 'reboot'" in capsys.readouterr().err

    def test_status_unreachable(self, capsys):
        assert server_main(['status', '--server', 'http://127.0.0.1:1', '--json']) == 1
        assert json.loads(capsys.readouterr().out)['healthy'] is False


class TestJobCommand:
    """Tests for the job noun with a mocked client."""

    def test_submit(self, target_dir, capsys):
        with patch('server.cli.JobClient') as client_cls:
            client_cls.return_value.submit_job.return_value = 7
            rc = job_main(['submit', str(target_dir), '--profile', 'minimal'])

        assert rc == 0
        client_cls.return_value.submit_job.assert_called_once_with(str(target_dir.resolve()), 'minimal')
        assert 'Submitted job 7' in capsys.readouterr().out

    def test_submit_wait_failed(self, target_dir, capsys):
        with patch('server.cli.JobClient') as client_cls:
            client = client_cls.return_value
            client.submit_job.return_value = 3
            client.wait_for_job.return_value = {
                'id': 3, 'status': 'failed', 'exit_code': 2, 'project_path': str(target_dir),
                'started_at': '2026-03-01 12:00:00', 'completed_at': '2026-03-01 12:00:09',
            }
            rc = job_main(['submit', str(target_dir), '--wait'])

        assert rc == 2
        out = capsys.readouterr().out
        assert 'Job 3: failed' in out
        assert 'Exit code: 2' in out

    def test_log(self, capsys):
        with patch('server.cli.JobClient') as client_cls:
            client_cls.return_value.get_job_log.return_value = '=== git ===\n[OK]\n'
            assert job_main(['log', '3']) == 0

        assert capsys.readouterr().out == '=== git ===\n[OK]\n'

    def test_list_empty(self, capsys):
        with patch('server.cli.JobClient') as client_cls:
            client_cls.return_value.list_jobs.return_value = []
            assert job_main(['list', '-n', '5']) == 0

        client_cls.return_value.list_jobs.assert_called_once_with(5)
        assert 'No jobs' in capsys.readouterr().out

    def test_projects_json(self, capsys):
        projects = [{'id': 1, 'name': 'my-app', 'path': '/src/my-app', 'profile': 'standard'}]
        with patch('server.cli.JobClient') as client_cls:
            client_cls.return_value.list_projects.return_value = projects
            assert job_main(['--json', 'projects']) == 0

        assert json.loads(capsys.readouterr().out) == projects

    def test_client_error(self, capsys):
        with patch('server.cli.JobClient') as client_cls:
            client_cls.return_value.get_job.side_effect = JobClientError('Job not found: 9', status=404)
            assert job_main(['status', '9']) == 1

        assert 'Error: Job not found: 9' in capsys.readouterr().err
