"""Tests for reconcile.state module."""

import json
import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from reconcile.lifecycle import LifecyclePolicy
from reconcile.model import InstanceAddress
from reconcile.state import FileStateStore, MemoryStateStore, StateRecord, StateStore


def _record(text='network.main', resource_id='network-1', **kwargs):
    return StateRecord(address=InstanceAddress.parse(text), resource_id=resource_id, **kwargs)


class TestStateRecord:
    """Tests for StateRecord serialization."""

    def test_to_dict_omits_empty_optional_fields(self):
        d = _record().to_dict()
        assert d == {'address': 'network.main', 'resource_id': 'network-1', 'attributes': {}, 'outputs': {}}

    def test_round_trip(self):
        record = _record(
            'subnet.app[1]', 'subnet-2',
            attributes={'cidr': '10.0.1.0/24'},
            outputs={'id': 'subnet-2'},
            dependencies=['network.main'],
            lifecycle=LifecyclePolicy(prevent_destroy=True),
        )
        restored = StateRecord.from_dict(record.to_dict())
        assert restored == record
        assert restored.dependency_addresses() == [InstanceAddress('network', 'main')]

    def test_deposed_address(self):
        record = StateRecord.from_dict({'address': 'db.main~deposed', 'resource_id': 'db-1'})
        assert record.address.deposed

    def test_deposed_generation(self):
        address = InstanceAddress.parse('db.main[1]~deposed.2')
        assert address.deposed
        assert address.generation == 2
        assert str(address) == 'db.main[1]~deposed.2'
        assert address.as_current() == InstanceAddress('db', 'main', 1)
        assert address != InstanceAddress('db', 'main', 1).as_deposed()


class TestMemoryStateStore:
    """Tests for MemoryStateStore."""

    def test_implements_protocol(self):
        assert isinstance(MemoryStateStore(), StateStore)

    def test_get_missing(self):
        assert MemoryStateStore().get(InstanceAddress('network', 'main')) is None

    def test_put_get_delete(self):
        store = MemoryStateStore()
        record = _record()
        store.put(record.address, record)
        assert store.get(record.address) == record
        store.delete(record.address)
        assert store.get(record.address) is None
        assert len(store) == 0

    def test_delete_missing_is_noop(self):
        MemoryStateStore().delete(InstanceAddress('network', 'main'))

    def test_put_rejects_mismatched_key(self):
        with pytest.raises(ValueError, match='does not match'):
            MemoryStateStore().put(InstanceAddress('network', 'other'), _record())

    def test_returns_copies(self):
        store = MemoryStateStore([_record(attributes={'tags': {'env': 'dev'}})])
        fetched = store.get(InstanceAddress('network', 'main'))
        fetched.attributes['tags']['env'] = 'prod'
        assert store.get(fetched.address).attributes['tags']['env'] == 'dev'

    def test_list_all_sorted(self):
        store = MemoryStateStore([
            _record('subnet.app[1]', 's2'), _record('network.main', 'n1'), _record('subnet.app[0]', 's1'),
        ])
        assert [str(r.address) for r in store.list_all()] == ['network.main', 'subnet.app[0]', 'subnet.app[1]']

    def test_fingerprint_tracks_content(self):
        store = MemoryStateStore()
        empty = store.fingerprint()
        store.put(InstanceAddress('network', 'main'), _record())
        first = store.fingerprint()
        assert first != empty
        assert MemoryStateStore([_record()]).fingerprint() == first
        store.put(InstanceAddress('network', 'main'), _record(resource_id='network-9'))
        assert store.fingerprint() != first

    def test_concurrent_writes_to_distinct_keys(self):
        store = MemoryStateStore()

        def writer(i):
            for j in range(20):
                store.put(InstanceAddress('subnet', 'app', i), _record(f'subnet.app[{i}]', f's-{i}-{j}'))

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(store) == 8
        assert store.get(InstanceAddress('subnet', 'app', 3)).resource_id == 's-3-19'


class TestFileStateStore:
    """Tests for FileStateStore persistence."""

    def test_path_layout(self, tmp_path):
        store = FileStateStore('webapp', tmp_path)
        assert store.path == tmp_path / 'webapp' / 'state.json'
        assert not store.path.exists()

    def test_persists_after_each_mutation(self, tmp_path):
        store = FileStateStore('webapp', tmp_path)
        record = _record()
        store.put(record.address, record)
        data = json.loads(store.path.read_text())
        assert data['version'] == 1
        assert data['serial'] == 1
        assert data['records'][0]['address'] == 'network.main'

        store.delete(record.address)
        data = json.loads(store.path.read_text())
        assert data['serial'] == 2
        assert data['records'] == []

    def test_reload(self, tmp_path):
        store = FileStateStore('webapp', tmp_path)
        store.put(InstanceAddress('network', 'main'), _record(attributes={'cidr': '10.0.0.0/16'}))
        reloaded = FileStateStore('webapp', tmp_path)
        assert reloaded.get(InstanceAddress('network', 'main')).attributes == {'cidr': '10.0.0.0/16'}
        assert reloaded.serial == 1
        assert reloaded.fingerprint() == store.fingerprint()

    def test_no_temp_files_left(self, tmp_path):
        store = FileStateStore('webapp', tmp_path)
        store.put(InstanceAddress('network', 'main'), _record())
        assert [p.name for p in store.path.parent.iterdir()] == ['state.json']

    def test_unsupported_version(self, tmp_path):
        path = tmp_path / 'webapp' / 'state.json'
        path.parent.mkdir()
        path.write_text(json.dumps({'version': 99, 'records': []}))
        with pytest.raises(ValueError, match='Unsupported state format version'):
            FileStateStore('webapp', tmp_path)
