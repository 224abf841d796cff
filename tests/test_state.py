"""Tests for reconciler.state module."""

import json
import os
import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from reconciler.errors import LockContention, StateError
from reconciler.state import STATE_VERSION, LockInfo, StateRecord, StateStore


def _record(rid='network.main', external_id='main-0001', **kwargs):
    return StateRecord(resource_id=rid, type=rid.split('.')[0], external_id=external_id, **kwargs)


class TestStateRecord:
    """Tests for StateRecord dataclass."""

    def test_lookup_prefers_outputs(self):
        record = _record(attributes={'cidr': 'declared'}, outputs={'cidr': 'actual'})
        assert record.lookup('cidr') == 'actual'

    def test_lookup_falls_back_to_attributes(self):
        record = _record(attributes={'region': 'us-central1'})
        assert record.lookup('region') == 'us-central1'

    def test_lookup_id_is_external_id(self):
        assert _record().lookup('id') == 'main-0001'

    def test_lookup_missing(self):
        with pytest.raises(KeyError):
            _record().lookup('nope')
        assert _record().lookup('nope', None) is None

    def test_round_trip(self):
        record = _record(attributes={'a': 1}, outputs={'id': 'x'},
                         dependencies=['b.c', 'a.b'], applied_at=1700000000.0)
        data = record.to_dict()
        assert data['dependencies'] == ['a.b', 'b.c']
        restored = StateRecord.from_dict('network.main', data)
        assert restored.external_id == 'main-0001'
        assert restored.attributes == {'a': 1}
        assert restored.applied_at == 1700000000.0

    def test_from_dict_derives_type(self):
        restored = StateRecord.from_dict('network.main', {'external_id': 42})
        assert restored.type == 'network'
        assert restored.external_id == '42'


class TestSnapshot:
    """Tests for load/commit."""

    def test_load_missing_file(self, store):
        assert store.load() == {}
        assert store.serial == 0

    def test_commit_and_load(self, store):
        store.commit('network.main', _record(attributes={'region': 'us'}))
        records = store.load()
        assert list(records) == ['network.main']
        assert records['network.main'].attributes == {'region': 'us'}
        assert store.serial == 1

    def test_commit_none_removes(self, store):
        store.commit('network.main', _record())
        store.commit('network.main', None)
        assert store.load() == {}
        assert store.serial == 2

    def test_snapshot_layout(self, store):
        store.commit('network.main', _record(applied_at=1.5))
        data = json.loads(store.path.read_text())
        assert data['version'] == STATE_VERSION
        assert data['serial'] == 1
        assert data['lineage']
        assert data['resources']['network.main']['external_id'] == 'main-0001'
        assert data['resources']['network.main']['applied_at'] == 1.5

    def test_lineage_stable_across_commits(self, store):
        store.commit('a.b', _record('a.b'))
        lineage = json.loads(store.path.read_text())['lineage']
        store.commit('c.d', _record('c.d'))
        assert json.loads(store.path.read_text())['lineage'] == lineage

    def test_backup_written(self, store):
        store.commit('a.b', _record('a.b'))
        store.commit('c.d', _record('c.d'))
        backup = json.loads(store.backup_path.read_text())
        assert list(backup['resources']) == ['a.b']

    def test_no_temp_files_left(self, store):
        store.commit('a.b', _record('a.b'))
        leftovers = [p.name for p in store.path.parent.iterdir()
                     if p.name.startswith('.state.json-')]
        assert leftovers == []

    def test_corrupt_snapshot(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text('{not json')
        with pytest.raises(StateError, match='Corrupt'):
            store.load()

    def test_newer_version_rejected(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({'version': STATE_VERSION + 1, 'resources': {}}))
        with pytest.raises(StateError, match='version'):
            store.load()

    def test_concurrent_commits_serialised(self, store):
        threads = [
            threading.Thread(target=store.commit, args=(f'bucket.b{i}', _record(f'bucket.b{i}')))
            for i in range(10)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(store.load()) == 10
        assert store.serial == 10


class TestLocking:
    """Tests for the state lock."""

    def test_acquire_and_release(self, store):
        lock = store.acquire_lock('apply')
        assert store.lock_path.exists()
        holder = store.current_lock()
        assert holder.id == lock.id
        assert holder.operation == 'apply'
        assert holder.pid == os.getpid()
        store.release_lock(lock)
        assert not store.lock_path.exists()
        assert store.current_lock() is None

    def test_contention(self, store, state_path):
        lock = store.acquire_lock('apply')
        other = StateStore(state_path)
        with pytest.raises(LockContention) as exc_info:
            other.acquire_lock('apply')
        assert exc_info.value.holder.id == lock.id
        assert lock.id in str(exc_info.value)

    def test_locked_context_releases_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.locked('plan'):
                raise RuntimeError('boom')
        assert store.current_lock() is None

    def test_release_wrong_lock(self, store):
        store.acquire_lock('apply')
        stranger = LockInfo.new('apply')
        with pytest.raises(StateError, match='refusing'):
            store.release_lock(stranger)

    def test_force_unlock(self, store):
        lock = store.acquire_lock('apply')
        with pytest.raises(StateError, match='mismatch'):
            store.force_unlock('wrong')
        assert store.force_unlock(lock.id) is True
        assert store.force_unlock(lock.id) is False

    def test_damaged_lock_file_still_contends(self, store):
        store.lock_path.parent.mkdir(parents=True)
        store.lock_path.write_text('')
        with pytest.raises(LockContention) as exc_info:
            store.acquire_lock()
        assert exc_info.value.holder.operation == 'unknown'

    def test_lock_info_round_trip(self):
        info = LockInfo.new('destroy')
        restored = LockInfo.from_dict(info.to_dict())
        assert restored == info
        assert '@' in restored.who
        assert restored.created_display
