"""Operations manifest loading and validation.

A manifest declares the setup operations available to a project and the
named profiles that group them:

    schema_version: 1
    name: default
    operations:
      - id: git
        phase: 1
        category: vcs
        priority: 10
        depends: []
        requires: [git]
        detects: ["dir:.git"]
        creates: [.gitignore]
        run: ["git", "init"]
    profiles:
      minimal: [git]

Operations are immutable once loaded; the OperationRegistry owns them for
the lifetime of the process.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import yaml

from config import get_manifest_path

logger = logging.getLogger(__name__)

# Supported schema versions
SUPPORTED_SCHEMA_VERSIONS = {1}

# Field defaults for operations that omit them
DEFAULT_PHASE = 1
DEFAULT_CATEGORY = 'core'
DEFAULT_PRIORITY = 50

PREDICATE_KINDS = ('file', 'dir', 'exists', 'config', 'command', 'not')


class ManifestError(Exception):
    """Malformed or inconsistent operations manifest."""


class OperationNotFound(ManifestError, KeyError):
    """Lookup of an operation id that is not registered."""

    def __init__(self, op_id: str, available: Iterable[str] = ()):
        self.op_id = op_id
        self.available = sorted(available)
        super().__init__(op_id)

    def __str__(self) -> str:
        available = ', '.join(self.available) if self.available else 'none'
        return f"Unknown operation '{self.op_id}'. Available: {available}"


def validate_predicate(predicate: str) -> None:
    """Check the syntax of a detection predicate string.

    Raises:
        ValueError: If the predicate is malformed
    """
    if not isinstance(predicate, str) or ':' not in predicate:
        raise ValueError(f"malformed detection predicate: {predicate!r}")
    kind, _, arg = predicate.partition(':')
    if kind not in PREDICATE_KINDS:
        raise ValueError(
            f"unknown predicate kind '{kind}' in {predicate!r} "
            f"(expected one of: {', '.join(PREDICATE_KINDS)})"
        )
    if not arg.strip():
        raise ValueError(f"empty predicate argument in {predicate!r}")
    if kind == 'not':
        validate_predicate(arg)
    elif kind == 'config':
        ref = arg.split('=', 1)[0]
        section, _, key = ref.partition('.')
        if not section or not key:
            raise ValueError(f"config predicate needs SECTION.KEY: {predicate!r}")


def _str_list(value: Any, field_name: str, op_id: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ManifestError(f"Operation '{op_id}': '{field_name}' must be a list of strings")
    return tuple(value)


def _int_field(data: dict, name: str, default: int, op_id: str) -> int:
    value = data.get(name, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ManifestError(f"Operation '{op_id}': '{name}' must be an integer, got {value!r}")
    return value


@dataclass(frozen=True)
class Operation:
    """One declared, idempotent unit of setup work.

    Attributes:
        id: Unique operation identifier
        phase: Ordering bucket (lower phases run first)
        category: Free-form grouping tag
        priority: Order within a phase (lower runs first)
        description: One-line summary
        depends: Operation ids that must succeed first
        requires: External tools that must be on PATH (``node>=18`` adds a version check)
        optional: External tools that are nice to have
        detects: Detection predicates marking the operation as already satisfied
        creates: Artifact paths (relative to the target) the operation produces
        run: Command to execute (argv list or shell string)
        files: Template copies, {target path: template path}
        timeout: Per-operation time budget in seconds
        source_dir: Directory of the manifest (template paths are relative to it)
    """
    id: str
    phase: int = DEFAULT_PHASE
    category: str = DEFAULT_CATEGORY
    priority: int = DEFAULT_PRIORITY
    description: str = ''
    depends: tuple[str, ...] = ()
    requires: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    detects: tuple[str, ...] = ()
    creates: tuple[str, ...] = ()
    run: Union[tuple[str, ...], str, None] = None
    files: tuple[tuple[str, str], ...] = ()
    timeout: Optional[int] = None
    source_dir: Optional[Path] = field(default=None, compare=False)

    @property
    def sort_key(self) -> tuple[int, int, str]:
        """Tie-break key: phase, then priority, then id."""
        return (self.phase, self.priority, self.id)

    @property
    def has_procedure(self) -> bool:
        return self.run is not None or bool(self.files)

    @property
    def artifacts(self) -> tuple[str, ...]:
        """Declared artifacts plus the destinations of template copies."""
        extra = tuple(dest for dest, _ in self.files if dest not in self.creates)
        return self.creates + extra

    @classmethod
    def from_dict(cls, data: dict, source_dir: Optional[Path] = None) -> 'Operation':
        """Create Operation from a manifest entry.

        Raises:
            ManifestError: If the entry is invalid
        """
        if not isinstance(data, dict):
            raise ManifestError(f"Operation entry must be a mapping, got {type(data).__name__}")
        op_id = data.get('id')
        if not op_id or not isinstance(op_id, str):
            raise ManifestError(f"Operation missing required field: id ({data!r})")

        run = data.get('run')
        if run is not None:
            if isinstance(run, list):
                run = tuple(str(a) for a in run)
            elif not isinstance(run, str):
                raise ManifestError(f"Operation '{op_id}': 'run' must be a string or list")

        files_data = data.get('files') or {}
        if not isinstance(files_data, dict):
            raise ManifestError(f"Operation '{op_id}': 'files' must be a mapping of target: template")
        if run is not None and files_data:
            raise ManifestError(f"Operation '{op_id}' declares both 'run' and 'files'")

        detects = _str_list(data.get('detects'), 'detects', op_id)
        for predicate in detects:
            try:
                validate_predicate(predicate)
            except ValueError as e:
                raise ManifestError(f"Operation '{op_id}': {e}") from e

        timeout = data.get('timeout')
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, int) or timeout <= 0):
            raise ManifestError(f"Operation '{op_id}': 'timeout' must be a positive integer")

        return cls(
            id=op_id,
            phase=_int_field(data, 'phase', DEFAULT_PHASE, op_id),
            category=str(data.get('category', DEFAULT_CATEGORY)),
            priority=_int_field(data, 'priority', DEFAULT_PRIORITY, op_id),
            description=str(data.get('description', '')),
            depends=_str_list(data.get('depends'), 'depends', op_id),
            requires=_str_list(data.get('requires'), 'requires', op_id),
            optional=_str_list(data.get('optional'), 'optional', op_id),
            detects=detects,
            creates=_str_list(data.get('creates'), 'creates', op_id),
            run=run,
            files=tuple((str(k), str(v)) for k, v in files_data.items()),
            timeout=timeout,
            source_dir=source_dir,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'id': self.id,
            'phase': self.phase,
            'category': self.category,
            'priority': self.priority,
        }
        if self.description:
            d['description'] = self.description
        for name in ('depends', 'requires', 'optional', 'detects', 'creates'):
            value = getattr(self, name)
            if value:
                d[name] = list(value)
        if self.run is not None:
            d['run'] = self.run if isinstance(self.run, str) else list(self.run)
        if self.files:
            d['files'] = dict(self.files)
        if self.timeout is not None:
            d['timeout'] = self.timeout
        return d


@dataclass(frozen=True)
class Profile:
    """Named, flat set of operation ids meant to run together."""
    name: str
    operations: tuple[str, ...]
    description: str = ''

    @classmethod
    def from_value(cls, name: str, value: Any) -> 'Profile':
        """Accept either a list of ids or {description, operations}."""
        if isinstance(value, list):
            return cls(name=name, operations=_str_list(value, 'operations', f'profile:{name}'))
        if isinstance(value, dict):
            return cls(
                name=name,
                operations=_str_list(value.get('operations'), 'operations', f'profile:{name}'),
                description=str(value.get('description', '')),
            )
        raise ManifestError(f"Profile '{name}' must be a list of operation ids or a mapping")


@dataclass
class Manifest:
    """Parsed operations manifest.

    Attributes:
        schema_version: Manifest schema version
        name: Human-readable manifest name
        operations: Declared operations in file order
        profiles: Named operation sets
        description: Optional description
        source_path: Path where manifest was loaded from (for debugging)
    """
    schema_version: int
    name: str
    operations: list[Operation]
    profiles: dict[str, Profile] = field(default_factory=dict)
    description: str = ''
    source_path: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Manifest':
        """Create Manifest from dictionary.

        Raises:
            ManifestError: If the manifest is invalid or inconsistent
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ManifestError(
                f"Unsupported manifest schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        ops_data = data.get('operations')
        if not isinstance(ops_data, list):
            raise ManifestError("Manifest missing required field: operations (list)")

        source_dir = source_path.parent if source_path else None
        operations = [Operation.from_dict(entry, source_dir=source_dir) for entry in ops_data]

        profiles_data = data.get('profiles') or {}
        if not isinstance(profiles_data, dict):
            raise ManifestError("Manifest 'profiles' must be a mapping")
        profiles = {name: Profile.from_value(name, value) for name, value in profiles_data.items()}

        manifest = cls(
            schema_version=schema_version,
            name=str(data.get('name', source_path.stem if source_path else 'manifest')),
            operations=operations,
            profiles=profiles,
            description=str(data.get('description', '')),
            source_path=source_path,
        )
        _validate_references(manifest)
        return manifest


def _validate_references(manifest: Manifest) -> None:
    """Check ids are unique and every reference resolves.

    Raises:
        ManifestError: On duplicate ids, unknown dependencies or profile members
    """
    seen: set[str] = set()
    for op in manifest.operations:
        if op.id in seen:
            raise ManifestError(f"Duplicate operation id: '{op.id}'")
        seen.add(op.id)

    for op in manifest.operations:
        for dep in op.depends:
            if dep not in seen:
                raise ManifestError(
                    f"Operation '{op.id}' (phase {op.phase}) depends on unknown operation '{dep}'"
                )

    for profile in manifest.profiles.values():
        unknown = [op_id for op_id in profile.operations if op_id not in seen]
        if unknown:
            raise ManifestError(
                f"Profile '{profile.name}' references unknown operation(s): {', '.join(unknown)}"
            )


class ManifestLoader:
    """Loads operation manifests from YAML files."""

    def load_file(self, path: Path) -> Manifest:
        """Load manifest from specific file path.

        Raises:
            ManifestError: If file not found or invalid
        """
        path = Path(path)
        if not path.exists():
            raise ManifestError(f"Manifest file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ManifestError(f"Invalid YAML in manifest {path}: {e}") from e
        except OSError as e:
            raise ManifestError(f"Cannot read manifest {path}: {e}") from e

        if not isinstance(data, dict):
            raise ManifestError(f"Manifest {path} must be a YAML object (dict)")

        return Manifest.from_dict(data, source_path=path)


class OperationRegistry:
    """Lookup and listing over the operations of one manifest."""

    def __init__(self, manifest: Manifest):
        self.manifest = manifest
        self._ops: dict[str, Operation] = {op.id: op for op in manifest.operations}

    @classmethod
    def from_file(cls, path: Path) -> 'OperationRegistry':
        return cls(ManifestLoader().load_file(path))

    def load(self) -> frozenset[Operation]:
        """All registered operations."""
        return frozenset(self._ops.values())

    def __contains__(self, op_id: object) -> bool:
        return op_id in self._ops

    def __len__(self) -> int:
        return len(self._ops)

    @property
    def ids(self) -> list[str]:
        return sorted(self._ops)

    @property
    def profiles(self) -> dict[str, Profile]:
        return dict(self.manifest.profiles)

    @property
    def phases(self) -> list[int]:
        return sorted({op.phase for op in self._ops.values()})

    def lookup(self, op_id: str) -> Operation:
        """Get an operation by id.

        Raises:
            OperationNotFound: If no operation has this id
        """
        try:
            return self._ops[op_id]
        except KeyError:
            raise OperationNotFound(op_id, self._ops) from None

    def get_profile(self, name: str) -> Profile:
        try:
            return self.manifest.profiles[name]
        except KeyError:
            available = ', '.join(sorted(self.manifest.profiles)) or 'none'
            raise ManifestError(f"Unknown profile '{name}'. Available: {available}") from None

    def list(
        self,
        phase: Optional[int] = None,
        category: Optional[str] = None,
        profile: Optional[str] = None,
    ) -> list[Operation]:
        """List operations ordered by (phase, priority, id).

        Filters combine: an operation must match every filter given.
        """
        members = set(self.get_profile(profile).operations) if profile else None
        result = [
            op for op in self._ops.values()
            if (phase is None or op.phase == phase)
            and (category is None or op.category == category)
            and (members is None or op.id in members)
        ]
        return sorted(result, key=lambda op: op.sort_key)

    def select(self, selectors: Iterable[str]) -> set[str]:
        """Expand selectors into a set of operation ids.

        Selectors: an operation id, ``phase:N``, ``profile:NAME``,
        ``category:NAME`` or ``all``. The result is the union.

        Raises:
            ManifestError: On an unknown id, profile or malformed selector
        """
        selected: set[str] = set()
        for selector in selectors:
            if selector == 'all':
                selected.update(self._ops)
            elif selector.startswith('phase:'):
                value = selector.split(':', 1)[1]
                try:
                    phase = int(value)
                except ValueError:
                    raise ManifestError(f"Invalid phase selector: '{selector}'") from None
                ops = self.list(phase=phase)
                if not ops:
                    raise ManifestError(
                        f"No operations in phase {phase}. Phases: {', '.join(map(str, self.phases))}"
                    )
                selected.update(op.id for op in ops)
            elif selector.startswith('profile:'):
                selected.update(self.get_profile(selector.split(':', 1)[1]).operations)
            elif selector.startswith('category:'):
                selected.update(op.id for op in self.list(category=selector.split(':', 1)[1]))
            else:
                selected.add(self.lookup(selector).id)
        return selected


def load_registry(
    file_path: Optional[str] = None,
    target_dir: Optional[Path] = None,
) -> OperationRegistry:
    """Discover and load the operations manifest.

    Raises:
        ConfigError: If no manifest can be found
        ManifestError: If the manifest is invalid
    """
    path = get_manifest_path(file_path, target_dir)
    logger.debug(f"Loading manifest from {path}")
    return OperationRegistry.from_file(path)
