"""Tests for config module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import (
    ConfigError,
    ProviderConfig,
    ReconcilerConfig,
    find_config_file,
    load_config,
)


class TestReconcilerConfig:
    """Tests for ReconcilerConfig defaults and parsing."""

    def test_defaults(self):
        config = ReconcilerConfig()
        assert config.state_path == Path('.states/default/state.json')
        assert config.parallelism == 4
        assert config.max_attempts == 5
        assert config.on_error == 'continue'
        assert config.providers['default'].type == 'memory'

    def test_from_dict(self, tmp_path):
        config = ReconcilerConfig.from_dict({
            'state_path': 'state/app.json',
            'parallelism': 8,
            'max_attempts': 3,
            'backoff_base': 0.5,
            'backoff_max': 10,
            'on_error': 'stop',
        }, base_dir=tmp_path)
        assert config.state_path == tmp_path / 'state' / 'app.json'
        assert config.parallelism == 8
        assert config.max_attempts == 3
        assert config.backoff_base == 0.5
        assert config.backoff_max == 10.0
        assert config.on_error == 'stop'

    def test_absolute_state_path_kept(self, tmp_path):
        config = ReconcilerConfig.from_dict({'state_path': '/var/lib/app/state.json'},
                                            base_dir=tmp_path)
        assert config.state_path == Path('/var/lib/app/state.json')

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match='Unknown configuration keys: paralellism'):
            ReconcilerConfig.from_dict({'paralellism': 2})

    def test_invalid_on_error(self):
        with pytest.raises(ConfigError, match='on_error'):
            ReconcilerConfig.from_dict({'on_error': 'panic'})

    @pytest.mark.parametrize('key,value', [
        ('parallelism', 0),
        ('max_attempts', 'many'),
        ('backoff_base', -1),
    ])
    def test_invalid_numbers(self, key, value):
        with pytest.raises(ConfigError, match=key):
            ReconcilerConfig.from_dict({key: value})


class TestProviderConfig:
    """Tests for provider entries."""

    def test_shorthand(self, tmp_path):
        pconf = ProviderConfig.from_value('google', 'memory', tmp_path)
        assert pconf.type == 'memory'
        assert pconf.cwd == tmp_path

    def test_command_provider(self, tmp_path):
        pconf = ProviderConfig.from_value('google', {
            'type': 'command',
            'timeout': 120,
            'cwd': 'hooks',
            'env': {'CLOUDSDK_CORE_PROJECT': 'demo', 'RETRIES': 3},
            'hooks': {
                'create': ['./google.sh', 'create'],
                'update': './google.sh',
                'delete': ['./google.sh', 'delete'],
            },
        }, tmp_path)
        assert pconf.timeout == 120
        assert pconf.cwd == tmp_path / 'hooks'
        assert pconf.env == {'CLOUDSDK_CORE_PROJECT': 'demo', 'RETRIES': '3'}
        assert pconf.hooks['update'] == ['./google.sh']

    def test_command_provider_missing_hooks(self, tmp_path):
        with pytest.raises(ConfigError, match='missing hooks: update, delete'):
            ProviderConfig.from_value('google', {
                'type': 'command',
                'hooks': {'create': ['./google.sh']},
            }, tmp_path)

    def test_unknown_type(self, tmp_path):
        with pytest.raises(ConfigError, match="unknown type 'terraform'"):
            ProviderConfig.from_value('google', 'terraform', tmp_path)

    def test_unknown_hook(self, tmp_path):
        with pytest.raises(ConfigError, match="unknown hook 'import'"):
            ProviderConfig.from_value('google', {'hooks': {'import': ['x']}}, tmp_path)

    def test_computed_must_be_nested_mapping(self, tmp_path):
        with pytest.raises(ConfigError, match='computed'):
            ProviderConfig.from_value('google', {'computed': {'google_x': 'url'}}, tmp_path)

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(ConfigError, match='mapping'):
            ProviderConfig.from_value('google', ['memory'], tmp_path)


class TestLoadConfig:
    """Tests for settings file discovery."""

    def test_no_file_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv('RECONCILER_CONFIG', raising=False)
        assert find_config_file() is None
        config = load_config()
        assert config.config_file is None
        assert config.parallelism == 4

    def test_explicit_path(self, settings_file):
        path = settings_file("""
parallelism: 2
providers:
  default: memory
  google:
    type: memory
    computed:
      google_storage_bucket:
        url: gs://{name}
""")
        config = load_config(str(path))
        assert config.config_file == path
        assert config.parallelism == 2
        assert config.providers['google'].computed == {'google_storage_bucket': {'url': 'gs://{name}'}}

    def test_explicit_path_missing(self, tmp_path):
        with pytest.raises(ConfigError, match='not found'):
            load_config(str(tmp_path / 'nope.yaml'))

    def test_env_var(self, settings_file, monkeypatch):
        path = settings_file('max_attempts: 2\n')
        monkeypatch.setenv('RECONCILER_CONFIG', str(path))
        assert find_config_file() == path
        assert load_config().max_attempts == 2

    def test_env_var_missing_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv('RECONCILER_CONFIG', str(tmp_path / 'gone.yaml'))
        with pytest.raises(ConfigError, match='does not exist'):
            find_config_file()

    def test_working_directory(self, settings_file, tmp_path, monkeypatch):
        settings_file('on_error: stop\n')
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv('RECONCILER_CONFIG', raising=False)
        assert load_config().on_error == 'stop'

    def test_state_path_relative_to_file(self, settings_file, tmp_path):
        path = settings_file('state_path: .states/app.json\n')
        assert load_config(str(path)).state_path == tmp_path.resolve() / '.states' / 'app.json'

    def test_invalid_yaml(self, settings_file):
        path = settings_file('parallelism: [\n')
        with pytest.raises(ConfigError, match='Invalid YAML'):
            load_config(str(path))

    def test_not_a_mapping(self, settings_file):
        path = settings_file('- a\n- b\n')
        with pytest.raises(ConfigError, match='YAML object'):
            load_config(str(path))

    def test_empty_file(self, settings_file):
        config = load_config(str(settings_file('')))
        assert config.parallelism == 4
