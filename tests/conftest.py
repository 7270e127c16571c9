"""Shared pytest fixtures for converge tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from backends import BackendRegistry, InMemoryBackend, ResourceSchema
from description import Description
from reconcile.executor import Executor, RetryPolicy
from reconcile.state import MemoryStateStore


def network_subnets_database(db_attrs=None, db_lifecycle=None, include_db=True):
    """Network, two subnets referencing it, and a database referencing both subnets."""
    resources = [
        {'kind': 'network', 'name': 'main', 'attributes': {'cidr_block': '10.0.0.0/16'}},
        {
            'kind': 'subnet',
            'name': 'app',
            'count': 2,
            'attributes': {
                'network_id': '${network.main.id}',
                'cidr_block': '10.0.${count.index}.0/24',
                'zone': {'$index': ['eu-west-1a', 'eu-west-1b']},
            },
        },
    ]
    if include_db:
        db = {
            'kind': 'database',
            'name': 'main',
            'attributes': db_attrs or {
                'engine': 'postgres',
                'size': 'small',
                'subnet_ids': ['${subnet.app[0].id}', '${subnet.app[1].id}'],
            },
        }
        if db_lifecycle:
            db['lifecycle'] = db_lifecycle
        resources.append(db)
    return Description.from_dict({'name': 'webapp', 'resources': resources})


@pytest.fixture
def backend():
    """Simulated control plane."""
    return InMemoryBackend()


@pytest.fixture
def registry(backend):
    """Registry binding every kind to the in-memory backend; database.engine forces replacement."""
    reg = BackendRegistry(default=backend)
    reg.bind('database', backend, ResourceSchema('database', force_new=frozenset({'engine'})))
    return reg


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def fast_retry():
    """Retry policy without real waiting."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0)


@pytest.fixture
def executor(store, registry, fast_retry):
    return Executor(store=store, registry=registry, concurrency=4, retry=fast_retry)


@pytest.fixture
def description():
    return network_subnets_database()
