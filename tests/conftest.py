"""Shared pytest fixtures for bootstrap-driver tests."""

import sys
from pathlib import Path

import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigStore
from manifest import Manifest, OperationRegistry


def make_registry(operations, profiles=None):
    """Build an OperationRegistry from operation dicts."""
    return OperationRegistry(Manifest.from_dict({
        'schema_version': 1,
        'name': 'test',
        'operations': operations,
        'profiles': profiles or {},
    }))


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep host settings out of discovery."""
    for name in ('BOOTSTRAP_MANIFEST', 'BOOTSTRAP_CONFIG', 'BOOTSTRAP_SERVER', 'BOOTSTRAP_DB'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def target_dir(tmp_path):
    """Empty target project directory."""
    target = tmp_path / 'my-app'
    target.mkdir()
    return target


@pytest.fixture
def config(target_dir):
    """Config store for the target project."""
    return ConfigStore.for_target(target_dir)


@pytest.fixture
def manifest_dir(tmp_path):
    """Manifest directory with a couple of templates.

    Layout:
    - templates/gitignore
    - templates/tsconfig.json
    """
    root = tmp_path / 'manifests'
    (root / 'templates').mkdir(parents=True)
    (root / 'templates' / 'gitignore').write_text("node_modules/\n.env\n")
    (root / 'templates' / 'tsconfig.json').write_text('{"compilerOptions": {"strict": true}}\n')
    return root


@pytest.fixture
def write_manifest(manifest_dir):
    """Write a manifest file and return its path.

    Usage:
        path = write_manifest(operations=[...], profiles={...})
    """
    def _write(operations, profiles=None, name='manifest.yaml', **extra):
        data = {'schema_version': 1, 'name': 'test', 'operations': operations}
        if profiles is not None:
            data['profiles'] = profiles
        data.update(extra)
        path = manifest_dir / name
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path
    return _write


@pytest.fixture
def sample_operations():
    """Small web-app manifest: git -> packages -> typescript, plus env."""
    return [
        {'id': 'git', 'phase': 1, 'priority': 10, 'category': 'vcs',
         'detects': ['dir:.git'], 'creates': ['.git/'], 'run': 'mkdir .git'},
        {'id': 'environment', 'phase': 1, 'priority': 20,
         'creates': ['.env.example'], 'run': 'echo "PORT=3000" > .env.example'},
        {'id': 'packages', 'phase': 1, 'priority': 30, 'depends': ['git'],
         'creates': ['package.json'], 'run': 'echo "{}" > package.json'},
        {'id': 'typescript', 'phase': 3, 'priority': 10, 'depends': ['packages'],
         'creates': ['tsconfig.json'], 'run': 'echo "{}" > tsconfig.json'},
    ]


@pytest.fixture
def sample_registry(sample_operations):
    return make_registry(sample_operations, profiles={
        'minimal': ['git', 'packages'],
        'standard': {'description': 'Everyday setup',
                     'operations': ['git', 'environment', 'packages', 'typescript']},
    })
