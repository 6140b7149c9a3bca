"""Project configuration store and path discovery.

Settings are persisted per target project in a sectioned key/value file:

    <target>/.bootstrap/bootstrap.config

    [project]
    name=my-app

    [git]
    default_branch=main

The file records prior answers and parameterizes operation behavior. It is
parsed once on load, mutated through get/set, and rewritten as a whole file
on every save. Only sections and key=value pairs survive a save: `#` and `;`
comment lines written by hand are dropped on the next write.

Manifest resolution order (see get_manifest_path):
1. Explicit path (--manifest-file)
2. $BOOTSTRAP_MANIFEST environment variable
3. <target>/bootstrap-manifest.yaml
4. <install base>/manifests/default.yaml
"""

import configparser
import io
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Per-project working directory inside the target
STATE_DIRNAME = '.bootstrap'
CONFIG_FILENAME = 'bootstrap.config'
PROJECT_MANIFEST_FILENAME = 'bootstrap-manifest.yaml'

TRUTHY = {'1', 'true', 'yes', 'on'}


class ConfigError(Exception):
    """Configuration error."""


class ConfigIOError(ConfigError):
    """Read or write failure on the settings file."""


def _new_parser() -> configparser.ConfigParser:
    parser = configparser.ConfigParser(
        interpolation=None,
        delimiters=('=',),
        comment_prefixes=('#', ';'),
        strict=True,
    )
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    return parser


class ConfigStore:
    """Sectioned key/value settings persisted to a single file.

    No concurrent-writer support: the last whole-file write wins.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._parser: Optional[configparser.ConfigParser] = None

    @classmethod
    def for_target(cls, target_dir: Path, override: Optional[str] = None) -> 'ConfigStore':
        """Config store for a target project.

        Args:
            target_dir: Project directory the operations act on
            override: Explicit config file path (--config / $BOOTSTRAP_CONFIG)
        """
        explicit = override or os.environ.get('BOOTSTRAP_CONFIG')
        if explicit:
            return cls(Path(explicit))
        return cls(Path(target_dir) / STATE_DIRNAME / CONFIG_FILENAME)

    def _load(self) -> configparser.ConfigParser:
        """Parse the backing file once; an absent file is an empty store."""
        if self._parser is not None:
            return self._parser

        parser = _new_parser()
        if self.path.exists():
            try:
                text = self.path.read_text(encoding='utf-8')
            except OSError as e:
                raise ConfigIOError(f"Cannot read config file {self.path}: {e}") from e
            try:
                parser.read_string(text, source=str(self.path))
            except configparser.Error as e:
                raise ConfigIOError(f"Invalid config file {self.path}: {e}") from e
        self._parser = parser
        return parser

    def reload(self) -> None:
        """Drop the in-memory copy so the next access re-reads the file."""
        self._parser = None

    def get(self, section: str, key: str, default: Optional[str] = None) -> Optional[str]:
        """Return the stored value, or default when absent or empty."""
        parser = self._load()
        if not parser.has_section(section):
            return default
        value = parser.get(section, key, fallback='')
        if value == '':
            return default
        return value

    def get_bool(self, section: str, key: str, default: bool = False) -> bool:
        value = self.get(section, key)
        if value is None:
            return default
        return value.strip().lower() in TRUTHY

    def set(self, section: str, key: str, value: str) -> None:
        """Set a value and persist the whole file.

        Creates the section when absent; existing keys are overwritten in
        place and new keys are appended to their section.
        Hand-written comments in the file are not kept.
        """
        # Re-read the current file so edits made since the last load survive
        self.reload()
        parser = self._load()
        if not parser.has_section(section):
            parser.add_section(section)
        parser.set(section, key, str(value))
        self._save(parser)

    def update(self, values: dict[str, dict[str, str]], overwrite: bool = True) -> list[str]:
        """Apply several values in a single write.

        Args:
            values: {section: {key: value}}
            overwrite: When False, only keys that are missing or empty are set

        Returns:
            List of 'section.key' names that were written
        """
        self.reload()
        parser = self._load()
        written = []
        for section, entries in values.items():
            if not parser.has_section(section):
                parser.add_section(section)
            for key, value in entries.items():
                if not overwrite and parser.get(section, key, fallback=''):
                    continue
                parser.set(section, key, str(value))
                written.append(f'{section}.{key}')
        if written:
            self._save(parser)
        return written

    def sections(self) -> dict[str, dict[str, str]]:
        """Return a plain copy of all sections."""
        parser = self._load()
        return {s: dict(parser.items(s)) for s in parser.sections()}

    def show(self) -> str:
        """Human-readable rendering of the store."""
        data = self.sections()
        if not data:
            return f"# {self.path} (empty)\n"
        lines = [f"# {self.path}"]
        for section, entries in data.items():
            lines.append('')
            lines.append(f'[{section}]')
            width = max((len(k) for k in entries), default=0)
            for key, value in entries.items():
                lines.append(f'  {key:<{width}} = {value}')
        return '\n'.join(lines) + '\n'

    def _render(self, parser: configparser.ConfigParser) -> str:
        buf = io.StringIO()
        for section in parser.sections():
            buf.write(f'[{section}]\n')
            for key, value in parser.items(section):
                buf.write(f'{key}={value}\n')
            buf.write('\n')
        return buf.getvalue()

    def _save(self, parser: configparser.ConfigParser) -> None:
        """Write the whole file atomically (temp file + rename)."""
        text = self._render(parser)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f'.{self.path.name}.', dir=str(self.path.parent))
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    f.write(text)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise ConfigIOError(f"Cannot write config file {self.path}: {e}") from e
        logger.debug(f"Saved config to {self.path}")

    def init_defaults(self, target_dir: Path) -> list[str]:
        """Seed auto-detected values that are not yet recorded."""
        target_dir = Path(target_dir).resolve()
        defaults = {
            'project': {
                'name': target_dir.name,
                'root': str(target_dir),
            },
            'git': {
                'default_branch': 'main',
            },
        }
        return self.update(defaults, overwrite=False)


def get_base_dir() -> Path:
    """Get the bootstrap-driver install directory."""
    return Path(__file__).resolve().parent.parent  # src/ -> repo root


def get_state_dir(target_dir: Path) -> Path:
    """Per-project state directory (<target>/.bootstrap)."""
    return Path(target_dir) / STATE_DIRNAME


def get_manifest_path(explicit: Optional[str] = None, target_dir: Optional[Path] = None) -> Path:
    """Discover the operations manifest.

    Raises:
        ConfigError: If no manifest can be found
    """
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise ConfigError(f"Manifest file not found: {path}")
        return path

    if env_path := os.environ.get('BOOTSTRAP_MANIFEST'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"BOOTSTRAP_MANIFEST={env_path} does not exist")

    if target_dir is not None:
        project_manifest = Path(target_dir) / PROJECT_MANIFEST_FILENAME
        if project_manifest.exists():
            return project_manifest

    default = get_base_dir() / 'manifests' / 'default.yaml'
    if default.exists():
        return default

    raise ConfigError(
        "Operations manifest not found. "
        "Pass --manifest-file, set BOOTSTRAP_MANIFEST, or add "
        f"{PROJECT_MANIFEST_FILENAME} to the target directory."
    )
