"""Tests for common.py - command execution helpers."""

import subprocess
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import EXIT_TIMEOUT, run_command, terminate_process_group


class TestRunCommand:
    """Tests for run_command."""

    def test_captures_output(self, tmp_path):
        rc, out, err = run_command(['/bin/sh', '-c', 'echo out; echo err >&2; exit 3'], cwd=tmp_path)

        assert rc == 3
        assert out == 'out\n'
        assert err == 'err\n'

    def test_missing_binary(self):
        rc, out, err = run_command(['definitely-not-a-real-binary'])
        assert rc == -1
        assert out == ''
        assert err

    def test_timeout_stops_whole_process_tree(self):
        # The shell's child inherits the output pipe; it must die with the shell
        start = time.monotonic()

        rc, out, err = run_command(['/bin/sh', '-c', 'sleep 30; echo x'], timeout=0.5)

        assert time.monotonic() - start < 10
        assert rc == EXIT_TIMEOUT
        assert err == 'Command timed out after 0.5s'

    def test_timeout_leaves_no_background_writer(self, tmp_path):
        run_command(['/bin/sh', '-c', '(sleep 1; touch late.txt) & wait'],
                    cwd=tmp_path, timeout=0.3, capture=False)

        time.sleep(1.5)
        assert not (tmp_path / 'late.txt').exists()


class TestTerminateProcessGroup:
    """Tests for terminate_process_group."""

    def test_already_exited(self):
        proc = subprocess.Popen(['true'], start_new_session=True)
        proc.wait()

        terminate_process_group(proc, grace=0.5)

        assert proc.returncode == 0

    def test_kills_children(self, tmp_path):
        proc = subprocess.Popen(['/bin/sh', '-c', '(sleep 1; touch late.txt) & sleep 30'],
                                cwd=tmp_path, start_new_session=True)

        terminate_process_group(proc, grace=0.5)

        assert proc.returncode is not None
        time.sleep(1.5)
        assert not (tmp_path / 'late.txt').exists()
