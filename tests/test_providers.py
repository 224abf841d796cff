"""Tests for providers package."""

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import EXEC_ERROR_RC, TIMEOUT_RC
from config import ProviderConfig, ReconcilerConfig
from declarations import ResourceSpec
from providers import CommandProvider, MemoryProvider, ProviderRegistry, build_registry, type_prefix
from reconciler.diff import AttributeChange
from reconciler.errors import PermanentProviderError, TransientProviderError
from reconciler.state import StateRecord

HOOKS = {
    'create': ['./hooks/google.sh', 'create'],
    'update': ['./hooks/google.sh', 'update'],
    'delete': ['./hooks/google.sh', 'delete'],
}


def _spec(rtype='google_storage_bucket', name='assets', **attributes):
    return ResourceSpec(type=rtype, name=name, attributes=attributes)


class TestMemoryProvider:
    """Tests for MemoryProvider."""

    def test_create(self):
        provider = MemoryProvider()
        external_id, attributes = provider.create(_spec(location='US'))
        assert external_id == 'assets-0001'
        assert attributes == {'location': 'US', 'id': 'assets-0001'}
        assert provider.objects[external_id]['location'] == 'US'
        assert provider.calls == [('create', 'google_storage_bucket.assets')]

    def test_computed_outputs(self):
        provider = MemoryProvider(computed={'google_cloud_run_service': {
            'url': 'https://{name}.run.app', 'ready': True,
        }})
        _, attributes = provider.create(_spec('google_cloud_run_service', 'api'))
        assert attributes['url'] == 'https://api.run.app'
        assert attributes['ready'] is True

    def test_update(self):
        provider = MemoryProvider()
        external_id, _ = provider.create(_spec(location='US', tier='hot'))
        attributes = provider.update(external_id, {
            'location': AttributeChange('US', 'EU'),
            'tier': AttributeChange('hot', None),
        })
        assert attributes == {'location': 'EU', 'id': external_id}
        assert provider.calls[-1] == ('update', 'google_storage_bucket.assets')

    def test_update_adopts_unknown_object(self):
        provider = MemoryProvider()
        attributes = provider.update('assets-0042', {'location': AttributeChange('US', 'EU')},
                                     spec=_spec(location='EU'))
        assert attributes == {'id': 'assets-0042', 'location': 'EU'}

    def test_delete_idempotent(self):
        provider = MemoryProvider()
        external_id, _ = provider.create(_spec())
        provider.delete(external_id)
        provider.delete(external_id)
        assert provider.objects == {}
        assert provider.calls[-1] == ('delete', external_id)

    def test_delete_uses_record_id(self):
        provider = MemoryProvider()
        record = StateRecord(resource_id='google_storage_bucket.old', type='google_storage_bucket',
                             external_id='old-1')
        provider.delete('old-1', record=record)
        assert provider.calls == [('delete', 'google_storage_bucket.old')]

    def test_fault_injection_consumed_in_order(self):
        provider = MemoryProvider()
        provider.fail('google_storage_bucket.assets', TransientProviderError('slow down'))
        with pytest.raises(TransientProviderError):
            provider.create(_spec())
        external_id, _ = provider.create(_spec())
        assert external_id == 'assets-0001'


class TestCommandProvider:
    """Tests for CommandProvider with a patched run_command."""

    def _provider(self, **kwargs):
        return CommandProvider(name='google', hooks=HOOKS, **kwargs)

    def test_create_sends_request(self):
        reply = json.dumps({'id': 'projects/demo/buckets/assets', 'attributes': {'url': 'gs://assets'}})
        with patch('providers.command.run_command', return_value=(0, reply, '')) as mock_run:
            external_id, attributes = self._provider(timeout=60).create(_spec(location='US'))

        assert external_id == 'projects/demo/buckets/assets'
        assert attributes == {'url': 'gs://assets'}
        args, kwargs = mock_run.call_args
        assert args[0] == HOOKS['create']
        assert kwargs['timeout'] == 60
        assert json.loads(kwargs['input_data']) == {
            'operation': 'create',
            'type': 'google_storage_bucket',
            'name': 'assets',
            'attributes': {'location': 'US'},
        }

    def test_create_requires_id(self):
        with patch('providers.command.run_command', return_value=(0, '{}', '')):
            with pytest.raises(PermanentProviderError, match="missing 'id'"):
                self._provider().create(_spec())

    def test_update_sends_changes(self):
        with patch('providers.command.run_command',
                   return_value=(0, '{"attributes": {"location": "EU"}}', '')) as mock_run:
            attributes = self._provider().update(
                'bucket-1', {'location': AttributeChange('US', 'EU')}, spec=_spec(location='EU'))

        assert attributes == {'location': 'EU'}
        request = json.loads(mock_run.call_args.kwargs['input_data'])
        assert request['external_id'] == 'bucket-1'
        assert request['changes'] == {'location': {'old': 'US', 'new': 'EU'}}
        assert request['type'] == 'google_storage_bucket'

    def test_delete_empty_reply(self):
        record = StateRecord(resource_id='google_storage_bucket.assets',
                             type='google_storage_bucket', external_id='bucket-1')
        with patch('providers.command.run_command', return_value=(0, '', '')) as mock_run:
            self._provider().delete('bucket-1', record=record)
        request = json.loads(mock_run.call_args.kwargs['input_data'])
        assert request == {'operation': 'delete', 'external_id': 'bucket-1',
                           'type': 'google_storage_bucket'}

    @pytest.mark.parametrize('rc', [75, TIMEOUT_RC])
    def test_transient_failures(self, rc):
        with patch('providers.command.run_command', return_value=(rc, '', 'rate limited')):
            with pytest.raises(TransientProviderError, match='rate limited') as exc_info:
                self._provider().create(_spec())
        assert exc_info.value.resource_id == 'google_storage_bucket.assets'

    def test_permanent_failure_carries_stderr(self):
        with patch('providers.command.run_command',
                   return_value=(1, '', 'ERROR: bucket name already taken')):
            with pytest.raises(PermanentProviderError, match='already taken'):
                self._provider().create(_spec())

    @pytest.mark.parametrize('rc', [-1, -2, -9])
    def test_killed_by_signal_is_permanent(self, rc):
        with patch('providers.command.run_command', return_value=(rc, '', '')):
            with pytest.raises(PermanentProviderError, match=f'rc={rc}'):
                self._provider().create(_spec())

    def test_exec_error(self):
        with patch('providers.command.run_command',
                   return_value=(EXEC_ERROR_RC, '', 'No such file or directory')):
            with pytest.raises(PermanentProviderError, match='could not run'):
                self._provider().create(_spec())

    def test_invalid_json(self):
        with patch('providers.command.run_command', return_value=(0, 'not json', '')):
            with pytest.raises(PermanentProviderError, match='invalid JSON'):
                self._provider().create(_spec())

    def test_non_object_reply(self):
        with patch('providers.command.run_command', return_value=(0, '[1, 2]', '')):
            with pytest.raises(PermanentProviderError, match='JSON object'):
                self._provider().create(_spec())

    def test_env_merged_with_environment(self):
        with patch('providers.command.run_command', return_value=(0, '{"id": "x"}', '')) as mock_run:
            self._provider(env={'CLOUDSDK_CORE_PROJECT': 'demo'}).create(_spec())
        env = mock_run.call_args.kwargs['env']
        assert env['CLOUDSDK_CORE_PROJECT'] == 'demo'
        assert 'PATH' in env

    def test_real_hook_round_trip(self, tmp_path):
        hook = tmp_path / 'hook.py'
        hook.write_text(
            "import json, sys\n"
            "request = json.load(sys.stdin)\n"
            "print(json.dumps({'id': request['name'] + '-ext', 'attributes': request['attributes']}))\n"
        )
        provider = CommandProvider(name='local', hooks={
            op: [sys.executable, str(hook)] for op in ('create', 'update', 'delete')
        })
        external_id, attributes = provider.create(_spec(location='US'))
        assert external_id == 'assets-ext'
        assert attributes == {'location': 'US'}


class TestProviderRegistry:
    """Tests for provider routing."""

    def test_type_prefix(self):
        assert type_prefix('google_storage_bucket') == 'google'
        assert type_prefix('network') == 'network'

    def test_routing_order(self):
        exact, prefix, default = MemoryProvider('exact'), MemoryProvider('prefix'), MemoryProvider('default')
        registry = ProviderRegistry(default=default)
        registry.register('google', prefix)
        registry.register('google_storage_bucket', exact)

        assert registry.for_type('google_storage_bucket') is exact
        assert registry.for_type('google_cloud_run_service') is prefix
        assert registry.for_type('aws_s3_bucket') is default

    def test_no_match(self):
        with pytest.raises(KeyError, match='No provider'):
            ProviderRegistry().for_type('google_storage_bucket')

    def test_register_rejects_non_provider(self):
        with pytest.raises(TypeError):
            ProviderRegistry().register('google', object())

    def test_build_registry(self, tmp_path):
        config = ReconcilerConfig(providers={
            'google': ProviderConfig(key='google', type='command', hooks=HOOKS, cwd=tmp_path),
            'google_storage_bucket': ProviderConfig(
                key='google_storage_bucket', computed={'google_storage_bucket': {'url': 'gs://{name}'}}),
        })
        registry = build_registry(config)

        assert registry.keys() == ['default', 'google', 'google_storage_bucket']
        command = registry.for_type('google_cloud_run_service')
        assert isinstance(command, CommandProvider)
        assert command.cwd == tmp_path
        memory = registry.for_type('google_storage_bucket')
        assert isinstance(memory, MemoryProvider)
        assert memory.computed == {'google_storage_bucket': {'url': 'gs://{name}'}}
        assert isinstance(registry.for_type('network'), MemoryProvider)
