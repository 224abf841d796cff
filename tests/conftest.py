"""Shared pytest fixtures for iac-reconcile tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from declarations import Declarations
from providers.base import ProviderRegistry
from providers.memory import MemoryProvider
from reconciler.state import StateStore


def make_declarations(resources, name='test'):
    """Helper to create Declarations from resource dicts."""
    return Declarations.from_dict({
        'schema_version': 1,
        'name': name,
        'resources': resources,
    })


@pytest.fixture
def state_path(tmp_path):
    """Path of a not-yet-written state snapshot."""
    return tmp_path / 'state' / 'state.json'


@pytest.fixture
def store(state_path):
    """Empty StateStore in a temp directory."""
    return StateStore(state_path)


@pytest.fixture
def provider():
    """MemoryProvider with computed outputs for the network/service fixtures."""
    return MemoryProvider(computed={
        'network': {'cidr': '10.0.0.0/16'},
        'service': {'url': 'https://{name}.example.test'},
    })


@pytest.fixture
def registry(provider):
    """ProviderRegistry routing every type to the memory provider."""
    return ProviderRegistry(default=provider)


@pytest.fixture
def network_service():
    """Network (no deps) and Service (references Network)."""
    return make_declarations([
        {'type': 'network', 'name': 'main', 'attributes': {'region': 'us-central1'}},
        {'type': 'service', 'name': 'api', 'attributes': {
            'image': 'gcr.io/demo/api:1',
            'network_id': '${network.main.id}',
        }},
    ])


@pytest.fixture
def settings_file(tmp_path):
    """Write a reconciler.yaml and return its path."""
    def _write(content: str) -> Path:
        path = tmp_path / 'reconciler.yaml'
        path.write_text(content)
        return path
    return _write
