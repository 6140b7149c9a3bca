"""Detection predicates: decide whether an operation's effect is already present.

Predicate forms (all declared predicates must hold):

    file:PATH                 regular file exists under the target
    dir:PATH                  directory exists under the target
    exists:PATH               any filesystem entry exists under the target
    config:SECTION.KEY        config value is truthy (true/yes/1/on)
    config:SECTION.KEY=VALUE  config value equals VALUE
    command:CMD               CMD exits 0 (run in the target directory)
    not:PREDICATE             negation

Evaluation never mutates the target or the config store.
"""

import logging
import shlex
from pathlib import Path

from common import run_command
from config import ConfigStore, TRUTHY
from manifest import Operation

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 5.0


def artifact_exists(target_dir: Path, artifact: str) -> bool:
    """Check a declared artifact; a trailing slash means a directory."""
    path = Path(target_dir) / artifact
    if artifact.endswith('/'):
        return path.is_dir()
    return path.exists()


class DetectionEvaluator:
    """Evaluates detection predicates against one target directory."""

    def __init__(self, target_dir: Path, config: ConfigStore,
                 probe_timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.target_dir = Path(target_dir)
        self.config = config
        self.probe_timeout = probe_timeout

    def evaluate(self, predicate: str) -> bool:
        """Evaluate a single predicate.

        Raises:
            ValueError: If the predicate kind is unknown
        """
        kind, _, arg = predicate.partition(':')
        arg = arg.strip()

        if kind == 'not':
            return not self.evaluate(arg)
        if kind == 'file':
            return (self.target_dir / arg).is_file()
        if kind == 'dir':
            return (self.target_dir / arg).is_dir()
        if kind == 'exists':
            return (self.target_dir / arg).exists()
        if kind == 'config':
            return self._config_matches(arg)
        if kind == 'command':
            return self._command_succeeds(arg)
        raise ValueError(f"Unknown detection predicate: {predicate!r}")

    def _config_matches(self, ref: str) -> bool:
        key_ref, sep, expected = ref.partition('=')
        section, _, key = key_ref.partition('.')
        value = self.config.get(section, key)
        if value is None:
            return False
        if sep:
            return value == expected
        return value.strip().lower() in TRUTHY

    def _command_succeeds(self, command: str) -> bool:
        if not self.target_dir.is_dir():
            return False
        rc, _, err = run_command(shlex.split(command), cwd=self.target_dir,
                                 timeout=self.probe_timeout)
        if rc != 0:
            logger.debug(f"Detection command failed (rc={rc}): {command} {err.strip()}")
        return rc == 0

    def is_satisfied(self, operation: Operation) -> bool:
        """True when the operation's effect is already present.

        With no predicates, every declared artifact must exist; an operation
        declaring neither predicates nor artifacts is never satisfied.
        """
        if operation.detects:
            return all(self.evaluate(p) for p in operation.detects)
        if operation.artifacts:
            return all(artifact_exists(self.target_dir, a) for a in operation.artifacts)
        return False

    def missing_artifacts(self, operation: Operation) -> list[str]:
        return [a for a in operation.artifacts if not artifact_exists(self.target_dir, a)]
