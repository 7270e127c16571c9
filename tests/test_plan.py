"""Tests for reconcile.plan module."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import network_subnets_database
from backends import BackendRegistry, InMemoryBackend, ResourceSchema
from description import Description
from reconcile.errors import DescriptionError, ProtectedResourceDestroy, UnresolvedReference
from reconcile.lifecycle import LifecyclePolicy
from reconcile.model import InstanceAddress
from reconcile.operations import UNKNOWN_TEXT, Action
from reconcile.plan import Plan, build_plan
from reconcile.state import StateRecord


def _apply(desc, store, registry, executor):
    result = executor.apply(build_plan(desc, store, registry))
    assert result.success
    return result


class TestBuildPlan:
    """Tests for build_plan."""

    def test_fresh_plan_summary(self, description, store, registry):
        plan = build_plan(description, store, registry)
        assert plan.summary() == {'create': 4, 'update': 0, 'replace': 0, 'destroy': 0, 'no-op': 0}
        assert plan.description == 'webapp'
        assert plan.state_fingerprint == store.fingerprint()
        assert plan.signature == plan.compute_signature()

    def test_unknown_values_at_plan_time(self, description, store, registry):
        plan = build_plan(description, store, registry)
        subnet = plan.operations[InstanceAddress('subnet', 'app', 0)]
        network_change = next(c for c in subnet.changes if c.path == 'network_id')
        assert network_change.to_dict()['new'] == UNKNOWN_TEXT

    def test_references_recorded_on_operation(self, description, store, registry):
        plan = build_plan(description, store, registry)
        db = plan.operations[InstanceAddress('database', 'main')]
        assert db.references == {
            'subnet.app[0].id': ['subnet.app[0]'],
            'subnet.app[1].id': ['subnet.app[1]'],
        }
        assert db.dependencies == ['subnet.app[0]', 'subnet.app[1]']

    def test_second_plan_is_empty(self, description, store, registry, executor):
        _apply(description, store, registry, executor)
        plan = build_plan(description, store, registry)
        assert plan.is_empty
        assert plan.changes() == []
        assert plan.summary()['no-op'] == 4

    def test_applied_references_resolve_to_ids(self, description, store, registry, executor):
        _apply(description, store, registry, executor)
        network_id = store.get(InstanceAddress('network', 'main')).resource_id
        subnet = store.get(InstanceAddress('subnet', 'app', 1))
        assert subnet.attributes['network_id'] == network_id
        assert subnet.attributes['zone'] == 'eu-west-1b'

    def test_update_target_passes_new_value(self, store, registry, executor):
        def _desc(port):
            return Description.from_dict({'name': 'svc', 'resources': [
                {'kind': 'listener', 'name': 'http', 'attributes': {'port': port}},
                {'kind': 'rule', 'name': 'allow', 'attributes': {'port': '${listener.http.port}'}},
            ]})

        _apply(_desc(80), store, registry, executor)
        plan = build_plan(_desc(8080), store, registry)
        rule = plan.operations[InstanceAddress('rule', 'allow')]
        assert rule.action == Action.UPDATE
        assert rule.changes[0].new == 8080

    def test_missing_attribute_on_applied_target(self, store, registry, executor):
        listener = {'kind': 'listener', 'name': 'http', 'attributes': {'port': 80}}
        _apply(Description.from_dict({'name': 'svc', 'resources': [listener]}), store, registry, executor)
        desc = Description.from_dict({'name': 'svc', 'resources': [
            listener,
            {'kind': 'rule', 'name': 'allow', 'attributes': {'host': '${listener.http.host}'}},
        ]})
        with pytest.raises(UnresolvedReference, match="no attribute 'host'"):
            build_plan(desc, store, registry)

    def test_unbound_kind_rejected(self, description, store):
        registry = BackendRegistry()
        with pytest.raises(DescriptionError, match='No backend bound'):
            build_plan(description, store, registry)

    def test_unbound_kind_in_state_rejected(self, description, store, registry):
        store.put(InstanceAddress('legacy', 'thing'),
                  StateRecord(address=InstanceAddress('legacy', 'thing'), resource_id='l-1'))
        strict = BackendRegistry()
        for kind in ('network', 'subnet', 'database'):
            strict.bind(kind, InMemoryBackend())
        with pytest.raises(DescriptionError, match="'legacy'"):
            build_plan(description, store, strict)

    def test_protected_orphan_blocks_plan(self, store, registry, backend):
        addr = InstanceAddress('database', 'main')
        store.put(addr, StateRecord(address=addr, resource_id='database-7',
                                    lifecycle=LifecyclePolicy(prevent_destroy=True)))
        with pytest.raises(ProtectedResourceDestroy):
            build_plan(network_subnets_database(include_db=False), store, registry)
        assert backend.calls == []

    def test_protected_blocks_destroy_all(self, description, store, registry, executor):
        _apply(network_subnets_database(db_lifecycle={'prevent_destroy': True}), store, registry, executor)
        with pytest.raises(ProtectedResourceDestroy, match='database.main'):
            build_plan(description, store, registry, destroy_all=True)

    def test_count_reduction_destroys_highest_index(self, store, registry, executor):
        def _desc(count):
            return Description.from_dict({'name': 'pool', 'resources': [
                {'kind': 'worker', 'name': 'w', 'count': count},
            ]})

        _apply(_desc(3), store, registry, executor)
        plan = build_plan(_desc(1), store, registry)
        destroyed = sorted(str(op.address) for op in plan.changes())
        assert destroyed == ['worker.w[1]', 'worker.w[2]']
        assert all(op.reason == 'index no longer declared' for op in plan.changes())

    def test_dropping_count_destroys_indexed_instances(self, store, registry, executor):
        counted = Description.from_dict({'name': 'pool', 'resources': [
            {'kind': 'worker', 'name': 'w', 'count': 2},
        ]})
        single = Description.from_dict({'name': 'pool', 'resources': [
            {'kind': 'worker', 'name': 'w'},
        ]})

        _apply(counted, store, registry, executor)
        plan = build_plan(single, store, registry)
        destroys = [op for op in plan.changes() if op.action == Action.DESTROY]
        assert sorted(str(op.address) for op in destroys) == ['worker.w[0]', 'worker.w[1]']
        assert all(op.reason == 'declaration no longer has a count' for op in destroys)
        assert plan.operations[InstanceAddress.parse('worker.w')].action == Action.CREATE

    def test_create_before_destroy_propagates_to_replaced_dependency(self, store, registry, executor, backend):
        registry.bind('image', backend, ResourceSchema('image', force_new=frozenset({'version'})))
        registry.bind('server', backend, ResourceSchema('server', force_new=frozenset({'image_id'})))

        def _desc(version):
            return Description.from_dict({'name': 'fleet', 'resources': [
                {'kind': 'image', 'name': 'base', 'attributes': {'version': version}},
                {'kind': 'server', 'name': 'web', 'attributes': {'image_id': '${image.base.id}'},
                 'lifecycle': {'create_before_destroy': True}},
            ]})

        _apply(_desc(1), store, registry, executor)
        plan = build_plan(_desc(2), store, registry)
        image = plan.operations[InstanceAddress('image', 'base')]
        assert image.action == Action.REPLACE
        assert image.create_before_destroy
        keys = [s.key for s in plan.steps]
        assert keys.index('create:image.base') < keys.index('create:server.web')
        assert keys.index('destroy:server.web~deposed') < keys.index('destroy:image.base~deposed')


class TestPlanArtifact:
    """Tests for Plan rendering and persistence."""

    def test_render(self, description, store, registry):
        lines = build_plan(description, store, registry).render()
        assert lines[0] == 'Batch 0:'
        assert '  create network.main' in lines
        assert lines[-1] == 'Plan: 4 to create, 0 to update, 0 to replace, 0 to destroy, 0 unchanged.'

    def test_render_marks_forcing_change(self, description, store, registry, executor):
        _apply(description, store, registry, executor)
        attrs = {'engine': 'mysql', 'size': 'small',
                 'subnet_ids': ['${subnet.app[0].id}', '${subnet.app[1].id}']}
        lines = build_plan(network_subnets_database(db_attrs=attrs), store, registry).render()
        assert any('forces replacement' in line for line in lines)
        assert '  destroy database.main (replace)' in lines

    def test_save_and_load(self, tmp_path, description, store, registry):
        plan = build_plan(description, store, registry)
        path = plan.save(tmp_path / 'plans' / 'webapp.json')
        loaded = Plan.load(path)
        assert loaded.signature == plan.signature
        assert [[s.key for s in b] for b in loaded.batches] == [[s.key for s in b] for b in plan.batches]
        assert set(loaded.operations) == set(plan.operations)

    def test_tampered_plan_rejected(self, tmp_path, description, store, registry):
        path = build_plan(description, store, registry).save(tmp_path / 'plan.json')
        data = json.loads(path.read_text())
        data['batches'] = data['batches'][:1]
        with pytest.raises(ValueError, match='signature'):
            Plan.from_dict(data)

    def test_unsupported_version(self, description, store, registry):
        data = build_plan(description, store, registry).to_dict()
        data['version'] = 2
        with pytest.raises(ValueError, match='version'):
            Plan.from_dict(data)

    def test_batch_index(self, description, store, registry):
        index = build_plan(description, store, registry).batch_index()
        assert index['create:network.main'] == 0
        assert index['create:database.main'] == 2
