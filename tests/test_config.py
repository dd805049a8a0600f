#!/usr/bin/env python3
"""Tests for config.py - engine settings and parameter inputs.

Tests verify:
1. Settings defaults and range validation
2. Settings file discovery (explicit, env var, base dir)
3. Environment overrides
4. --param and --params-file parsing
"""

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from config import (
    ConfigError,
    EngineSettings,
    find_settings_file,
    get_state_dir,
    load_params_file,
    load_settings,
    parse_param_args,
)


class TestEngineSettings:
    """Test EngineSettings dataclass behavior."""

    def test_defaults(self):
        settings = EngineSettings()
        assert settings.max_workers == 4
        assert settings.rollback == 'auto'
        assert settings.providers == ['simulated']
        assert settings.refresh is False

    def test_state_root_default(self, isolated_env):
        assert EngineSettings().state_root() == isolated_env / '.states'
        assert get_state_dir() == isolated_env / '.states'

    def test_providers_from_string(self):
        assert EngineSettings(providers='command, simulated').providers == ['command', 'simulated']

    def test_invalid_rollback(self):
        with pytest.raises(ConfigError, match="Unknown rollback policy 'sometimes'"):
            EngineSettings(rollback='sometimes')

    def test_invalid_workers(self):
        with pytest.raises(ConfigError, match='max_workers must be >= 1'):
            EngineSettings(max_workers=0)

    def test_invalid_timeout(self):
        with pytest.raises(ConfigError, match='resource_timeout must be > 0'):
            EngineSettings(resource_timeout=0)

    def test_from_dict_unknown_key(self):
        with pytest.raises(ConfigError, match='Unknown setting\\(s\\): max_wrokers'):
            EngineSettings.from_dict({'max_wrokers': 2})

    def test_from_dict_coerces(self):
        settings = EngineSettings.from_dict({
            'max_workers': '8', 'poll_interval': '0.5', 'replacement_safe': 'yes',
        })
        assert settings.max_workers == 8
        assert settings.poll_interval == 0.5
        assert settings.replacement_safe is True

    def test_from_dict_bad_value(self):
        with pytest.raises(ConfigError, match='Invalid settings'):
            EngineSettings.from_dict({'max_workers': 'many'})


class TestLoadSettings:
    """Test settings file discovery and layering."""

    def test_no_file(self, isolated_env):
        assert find_settings_file() is None
        assert load_settings().max_workers == 4

    def test_base_dir_file(self, isolated_env):
        (isolated_env / 'stack-driver.yaml').write_text("max_workers: 2\nrollback: never\n")
        settings = load_settings()
        assert settings.max_workers == 2
        assert settings.rollback == 'never'

    def test_explicit_file(self, isolated_env, tmp_path):
        path = tmp_path / 'custom.yaml'
        path.write_text("providers: [command]\nprovider_options:\n  command:\n    timeout: 30\n")
        settings = load_settings(str(path))
        assert settings.providers == ['command']
        assert settings.options_for('command') == {'timeout': 30}
        assert settings.options_for('rest') == {}

    def test_explicit_file_missing(self, isolated_env):
        with pytest.raises(ConfigError, match='Settings file not found'):
            load_settings('/nonexistent/stack-driver.yaml')

    def test_env_config_missing(self, isolated_env, monkeypatch):
        monkeypatch.setenv('STACK_DRIVER_CONFIG', '/nonexistent/settings.yaml')
        with pytest.raises(ConfigError, match='does not exist'):
            load_settings()

    def test_env_overrides_file(self, isolated_env, monkeypatch):
        (isolated_env / 'stack-driver.yaml').write_text("max_workers: 2\n")
        monkeypatch.setenv('STACK_DRIVER_MAX_WORKERS', '6')
        monkeypatch.setenv('STACK_DRIVER_STATE_DIR', str(isolated_env / 'elsewhere'))
        settings = load_settings()
        assert settings.max_workers == 6
        assert settings.state_root() == isolated_env / 'elsewhere'

    def test_env_overrides_backoff_and_flags(self, isolated_env, monkeypatch):
        (isolated_env / 'stack-driver.yaml').write_text("backoff_base: 2\nrefresh: true\n")
        monkeypatch.setenv('STACK_DRIVER_BACKOFF_BASE', '0.5')
        monkeypatch.setenv('STACK_DRIVER_BACKOFF_MAX', '4')
        monkeypatch.setenv('STACK_DRIVER_REFRESH', 'false')
        monkeypatch.setenv('STACK_DRIVER_REPLACEMENT_SAFE', 'yes')
        settings = load_settings()
        assert settings.backoff_base == 0.5
        assert settings.backoff_max == 4.0
        assert settings.refresh is False
        assert settings.replacement_safe is True

    def test_invalid_yaml(self, isolated_env):
        (isolated_env / 'stack-driver.yaml').write_text("max_workers: [\n")
        with pytest.raises(ConfigError, match='Invalid YAML'):
            load_settings()

    def test_not_a_mapping(self, isolated_env):
        (isolated_env / 'stack-driver.yaml').write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match='must be a YAML mapping'):
            load_settings()


class TestParameterInputs:
    """Test --param and --params-file parsing."""

    def test_parse_param_args(self):
        params = parse_param_args(['KeyName=ops', 'Tags=a=b', ' Size =2'])
        assert params == {'KeyName': 'ops', 'Tags': 'a=b', 'Size': '2'}
        assert parse_param_args(None) == {}

    def test_parse_param_args_invalid(self):
        with pytest.raises(ConfigError, match="Invalid parameter 'KeyName': expected Key=Value"):
            parse_param_args(['KeyName'])
        with pytest.raises(ConfigError, match='empty key'):
            parse_param_args(['=value'])

    def test_params_file_mapping(self, tmp_path):
        path = tmp_path / 'params.yaml'
        path.write_text("KeyName: ops\nSSHLocation: 10.0.0.0/8\n")
        assert load_params_file(str(path)) == {'KeyName': 'ops', 'SSHLocation': '10.0.0.0/8'}

    def test_params_file_key_value_list(self, tmp_path):
        path = tmp_path / 'params.json'
        path.write_text(json.dumps([
            {'ParameterKey': 'KeyName', 'ParameterValue': 'ops'},
            {'ParameterKey': 'BucketName', 'ParameterValue': 'assets'},
        ]))
        assert load_params_file(str(path)) == {'KeyName': 'ops', 'BucketName': 'assets'}

    def test_params_file_bad_list(self, tmp_path):
        path = tmp_path / 'params.json'
        path.write_text(json.dumps([{'Key': 'KeyName'}]))
        with pytest.raises(ConfigError, match='ParameterKey/ParameterValue'):
            load_params_file(str(path))

    def test_params_file_missing(self, tmp_path):
        with pytest.raises(ConfigError, match='Parameters file not found'):
            load_params_file(str(tmp_path / 'missing.yaml'))
