"""Tests for reconcile.diff module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from backends import BackendRegistry, InMemoryBackend, ResourceSchema
from reconcile.diff import DiffEngine, compare_attributes, merge_ignored, orphan_reason
from reconcile.errors import ProtectedResourceDestroy
from reconcile.lifecycle import LifecyclePolicy
from reconcile.model import UNKNOWN, InstanceAddress, ResourceAddress, ResourceInstance
from reconcile.operations import Action
from reconcile.state import StateRecord

ADDR = InstanceAddress('database', 'main')


@pytest.fixture
def engine():
    registry = BackendRegistry(default=InMemoryBackend())
    registry.bind('database', InMemoryBackend(), ResourceSchema(
        'database', force_new=frozenset({'engine'}), computed=frozenset({'endpoint'})))
    return DiffEngine(registry)


def _instance(attrs, policy=None):
    return ResourceInstance(address=ADDR, attributes=attrs, policy=policy or LifecyclePolicy())


def _record(attrs, lifecycle=None):
    return StateRecord(address=ADDR, resource_id='database-1', attributes=attrs,
                       lifecycle=lifecycle or LifecyclePolicy())


class TestCompareAttributes:
    """Tests for compare_attributes."""

    def test_equal_is_empty(self):
        schema = ResourceSchema('database')
        assert compare_attributes({'size': 'small'}, {'size': 'small'}, LifecyclePolicy(), schema) == []

    def test_added_removed_changed(self):
        schema = ResourceSchema('database')
        changes = compare_attributes({'size': 'large', 'tags': {'env': 'prod'}},
                                     {'size': 'small', 'zone': 'a'}, LifecyclePolicy(), schema)
        by_path = {c.path: c for c in changes}
        assert set(by_path) == {'size', 'tags.env', 'zone'}
        assert by_path['zone'].new is None
        assert by_path['tags.env'].old is None

    def test_explicit_none_differs_from_absent(self):
        schema = ResourceSchema('database')
        changes = compare_attributes({'backup': None}, {}, LifecyclePolicy(), schema)
        assert [c.path for c in changes] == ['backup']

    def test_unknown_always_changes(self):
        schema = ResourceSchema('database')
        changes = compare_attributes({'subnet': UNKNOWN}, {'subnet': 'subnet-1'}, LifecyclePolicy(), schema)
        assert changes[0].new is UNKNOWN

    def test_computed_paths_skipped(self):
        schema = ResourceSchema('database', computed=frozenset({'endpoint'}))
        assert compare_attributes({}, {'endpoint': {'host': 'x'}}, LifecyclePolicy(), schema) == []

    def test_force_new_prefix(self):
        schema = ResourceSchema('database', force_new=frozenset({'storage'}))
        changes = compare_attributes({'storage': {'type': 'ssd'}}, {'storage': {'type': 'hdd'}},
                                     LifecyclePolicy(), schema)
        assert changes[0].forces_replacement


class TestMergeIgnored:
    """Tests for merge_ignored."""

    def test_no_policy_passthrough(self):
        desired = {'a': 1}
        assert merge_ignored(desired, {'a': 2}, LifecyclePolicy()) is desired

    def test_keeps_recorded_values(self):
        policy = LifecyclePolicy(ignore_changes=frozenset({'tags'}))
        merged = merge_ignored({'size': 'large', 'tags': {'env': 'new'}},
                               {'size': 'small', 'tags': {'env': 'old', 'owner': 'ops'}}, policy)
        assert merged == {'size': 'large', 'tags': {'env': 'old', 'owner': 'ops'}}

    def test_drops_unrecorded_ignored_paths(self):
        policy = LifecyclePolicy(ignore_changes=frozenset({'note'}))
        assert merge_ignored({'size': 'x', 'note': 'hi'}, {'size': 'y'}, policy) == {'size': 'x'}

    def test_ignore_all_keeps_prior(self):
        policy = LifecyclePolicy(ignore_changes=frozenset({'*'}))
        assert merge_ignored({'size': 'x'}, {'size': 'y'}, policy) == {'size': 'y'}


class TestDiffEngine:
    """Tests for DiffEngine.diff classification."""

    def test_create_without_record(self, engine):
        op = engine.diff(_instance({'engine': 'postgres'}), {'engine': 'postgres'}, None)
        assert op.action == Action.CREATE
        assert op.prior_id is None
        assert [c.path for c in op.changes] == ['engine']

    def test_noop_when_equal(self, engine):
        attrs = {'engine': 'postgres', 'size': 'small'}
        op = engine.diff(_instance(attrs), attrs, _record(attrs))
        assert op.action == Action.NOOP
        assert op.is_noop
        assert op.prior_id == 'database-1'

    def test_update_for_in_place_change(self, engine):
        op = engine.diff(_instance({}), {'engine': 'postgres', 'size': 'large'},
                         _record({'engine': 'postgres', 'size': 'small'}))
        assert op.action == Action.UPDATE
        assert [c.path for c in op.changes] == ['size']

    def test_replace_for_force_new_change(self, engine):
        op = engine.diff(_instance({}), {'engine': 'mysql'}, _record({'engine': 'postgres'}))
        assert op.action == Action.REPLACE
        assert not op.create_before_destroy

    def test_replace_inherits_create_before_destroy(self, engine):
        policy = LifecyclePolicy(create_before_destroy=True)
        op = engine.diff(_instance({}, policy), {'engine': 'mysql'}, _record({'engine': 'postgres'}))
        assert op.create_before_destroy
        assert 'create before destroy' in op.describe()

    def test_ignored_change_is_noop(self, engine):
        policy = LifecyclePolicy(ignore_changes=frozenset({'tags'}))
        op = engine.diff(_instance({}, policy), {'tags': {'env': 'b'}}, _record({'tags': {'env': 'a'}}))
        assert op.action == Action.NOOP

    def test_ignored_force_new_does_not_replace(self, engine):
        policy = LifecyclePolicy(ignore_changes=frozenset({'engine'}))
        op = engine.diff(_instance({}, policy), {'engine': 'mysql'}, _record({'engine': 'postgres'}))
        assert op.action == Action.NOOP

    def test_unknown_force_new_replaces(self, engine):
        op = engine.diff(_instance({}), {'engine': UNKNOWN}, _record({'engine': 'postgres'}))
        assert op.action == Action.REPLACE

    def test_prevent_destroy_blocks_replace(self, engine):
        policy = LifecyclePolicy(prevent_destroy=True)
        with pytest.raises(ProtectedResourceDestroy, match='engine'):
            engine.diff(_instance({}, policy), {'engine': 'mysql'}, _record({'engine': 'postgres'}))

    def test_recorded_protection_blocks_replace(self, engine):
        record = _record({'engine': 'postgres'}, LifecyclePolicy(prevent_destroy=True))
        with pytest.raises(ProtectedResourceDestroy):
            engine.diff(_instance({}), {'engine': 'mysql'}, record)

    def test_prevent_destroy_allows_update(self, engine):
        policy = LifecyclePolicy(prevent_destroy=True)
        op = engine.diff(_instance({}, policy), {'size': 'large'}, _record({'size': 'small'}))
        assert op.action == Action.UPDATE

    def test_deterministic(self, engine):
        attrs = {'engine': 'mysql', 'size': 'large', 'tags': {'b': 1, 'a': 2}}
        first = engine.diff(_instance(attrs), attrs, _record({'engine': 'postgres'}))
        second = engine.diff(_instance(attrs), attrs, _record({'engine': 'postgres'}))
        assert first.to_dict() == second.to_dict()


class TestOrphans:
    """Tests for orphan destroy planning."""

    def test_diff_orphan(self, engine):
        record = StateRecord(address=InstanceAddress('cache', 'old'), resource_id='cache-1',
                             attributes={'size': 1}, dependencies=['network.main'])
        op = engine.diff_orphan(record, 'not in description')
        assert op.action == Action.DESTROY
        assert op.prior_id == 'cache-1'
        assert op.dependencies == ['network.main']
        assert op.changes[0].new is None

    def test_diff_orphan_protected(self, engine):
        record = StateRecord(address=InstanceAddress('cache', 'old'), resource_id='cache-1',
                             lifecycle=LifecyclePolicy(prevent_destroy=True))
        with pytest.raises(ProtectedResourceDestroy, match='cache.old'):
            engine.diff_orphan(record, 'not in description')

    @pytest.mark.parametrize('address,reason', [
        ('cache.old', 'not in description'),
        ('subnet.app[3]', 'index no longer declared'),
        ('subnet.app', 'declaration now has a count'),
        ('database.main[1]', 'declaration no longer has a count'),
        ('database.main~deposed', 'deposed object'),
        ('database.main~deposed.2', 'deposed object'),
    ])
    def test_orphan_reason(self, address, reason):
        declared = {ResourceAddress('subnet', 'app'): 2, ResourceAddress('database', 'main'): None}
        assert orphan_reason(InstanceAddress.parse(address), declared) == reason
