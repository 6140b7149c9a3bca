"""File capability and template-copy task.

All paths are relative to the target directory; anything resolving
outside it is rejected.
"""

import logging
import shutil
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from common import OperationStatus, RunResult

if TYPE_CHECKING:
    from actions.base import TaskContext

logger = logging.getLogger(__name__)

BACKUP_MARKER = '.backup.'


def prompt_yes_no(question: str) -> bool:
    """Ask on the terminal; a closed or non-interactive stdin answers no."""
    if not sys.stdin or not sys.stdin.isatty():
        return False
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ('y', 'yes')


@dataclass
class FileChange:
    """Outcome of one FileOps.write/copy call.

    action is one of: created, updated, unchanged, declined
    """
    path: str
    action: str
    backup: Optional[str] = None


class FileOps:
    """Create, back up and verify files inside one target directory."""

    def __init__(
        self,
        target_dir: Path,
        assume_yes: bool = False,
        confirm: Optional[Callable[[str], bool]] = None,
    ):
        self.target_dir = Path(target_dir).resolve()
        self.assume_yes = assume_yes
        self.confirm = confirm or prompt_yes_no

    def resolve(self, path: str) -> Path:
        """Absolute path for a target-relative path.

        Raises:
            ValueError: If the path escapes the target directory
        """
        candidate = (self.target_dir / path).resolve()
        if candidate != self.target_dir and self.target_dir not in candidate.parents:
            raise ValueError(f"Path escapes target directory: {path}")
        return candidate

    def relative(self, path: Path) -> str:
        return str(Path(path).relative_to(self.target_dir))

    def exists(self, path: str) -> bool:
        return self.resolve(path).exists()

    def ensure_dir(self, path: str) -> bool:
        """Create a directory; returns True when it did not exist before."""
        full = self.resolve(path)
        if full.is_dir():
            return False
        full.mkdir(parents=True, exist_ok=True)
        return True

    def backup_name(self, path: Path, now: Optional[datetime] = None) -> Path:
        """NAME.backup.YYYYmmdd-HHMMSS, with -N appended on collision."""
        stamp = (now or datetime.now()).strftime('%Y%m%d-%H%M%S')
        candidate = path.with_name(f"{path.name}{BACKUP_MARKER}{stamp}")
        counter = 1
        while candidate.exists():
            candidate = path.with_name(f"{path.name}{BACKUP_MARKER}{stamp}-{counter}")
            counter += 1
        return candidate

    def backup(self, path: str) -> Optional[str]:
        """Copy an existing file or directory aside.

        Returns:
            Target-relative backup path, or None when nothing existed
        """
        full = self.resolve(path)
        if not full.exists():
            return None
        dest = self.backup_name(full)
        if full.is_dir():
            shutil.copytree(full, dest, symlinks=True)
        else:
            shutil.copy2(full, dest)
        logger.info(f"Backed up {self.relative(full)} -> {self.relative(dest)}")
        return self.relative(dest)

    def write(self, path: str, content: str) -> FileChange:
        """Write a file, backing up a differing existing copy first."""
        full = self.resolve(path)
        if full.is_file():
            if full.read_text(encoding='utf-8') == content:
                return FileChange(path=path, action='unchanged')
            if not self.assume_yes and not self.confirm(f"Overwrite {path}?"):
                return FileChange(path=path, action='declined')
            backup = self.backup(path)
            full.write_text(content, encoding='utf-8')
            return FileChange(path=path, action='updated', backup=backup)

        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_text(content, encoding='utf-8')
        return FileChange(path=path, action='created')

    def copy(self, src: Path, dest: str) -> FileChange:
        """Copy a template file into the target."""
        text = Path(src).read_text(encoding='utf-8')
        change = self.write(dest, text)
        if change.action in ('created', 'updated'):
            shutil.copymode(src, self.resolve(dest))
        return change

    def verify(self, paths: list[str]) -> list[str]:
        """Return the declared paths that do not exist."""
        missing = []
        for path in paths:
            full = self.resolve(path)
            ok = full.is_dir() if path.endswith('/') else full.exists()
            if not ok:
                missing.append(path)
        return missing


class CopyTask:
    """Copies an operation's template files into the target."""

    def run(self, context: 'TaskContext') -> RunResult:
        start = time.time()
        op = context.operation
        base = op.source_dir or Path.cwd()
        result = RunResult(status=OperationStatus.SUCCEEDED)

        for dest, template in op.files:
            src = base / template
            context.logger.info(f"Copying {template} -> {dest}")
            try:
                change = context.files.copy(src, dest)
            except (OSError, ValueError) as e:
                result.status = OperationStatus.FAILED
                result.exit_code = 1
                result.message = f"Cannot copy {template} to {dest}: {e}"
                context.logger.error(result.message)
                break

            if change.action in ('created', 'updated'):
                result.created.append(dest)
            elif change.action == 'unchanged':
                result.skipped.append(dest)
            else:
                result.skipped.append(dest)
                result.warnings.append(f"{dest}: overwrite declined, existing file kept")
            if change.backup:
                result.backups.append(change.backup)

        if result.status == OperationStatus.SUCCEEDED:
            result.exit_code = 0
            result.message = f"{len(result.created)} created, {len(result.skipped)} unchanged"
        result.duration = time.time() - start
        return result
