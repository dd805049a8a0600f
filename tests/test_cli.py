"""End-to-end tests for the stack-driver CLI against the simulated provider."""

import json
import sys
from pathlib import Path

import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from cli import main
from providers import SimulatedCloud
from stack_opr.state import StateStore

TEMPLATE = str(Path(__file__).parent.parent / 'templates' / 'web-server.yaml')
STACK = 'web-server'


def _write_settings(base: Path, **extra) -> None:
    settings = {'poll_interval': 0, 'backoff_base': 0, 'backoff_max': 0, 'max_attempts': 2}
    settings.update(extra)
    (base / 'stack-driver.yaml').write_text(yaml.safe_dump(settings))


def _store(base: Path) -> StateStore:
    return StateStore(STACK, base / '.states')


def _cloud(base: Path) -> SimulatedCloud:
    return SimulatedCloud(state_file=base / '.states' / STACK / 'simulated-cloud.json')


def _apply(capsys, *extra):
    rc = main(['apply', TEMPLATE, '-p', 'KeyName=ops', *extra])
    captured = capsys.readouterr()
    return rc, captured.out, captured.err


class TestTopLevel:
    """Tests for verb dispatch."""

    def test_usage(self, capsys):
        assert main([]) == 0
        out = capsys.readouterr().out
        assert 'Usage: stack-driver <verb> <template> [options]' in out
        for verb in ('plan', 'apply', 'destroy', 'validate', 'outputs', 'drift'):
            assert f'  {verb}' in out

    def test_unknown_verb(self, capsys):
        assert main(['bogus']) == 2
        assert "Unknown command 'bogus'" in capsys.readouterr().out


class TestValidateVerb:
    """Tests for 'validate'."""

    def test_valid(self, isolated_env, capsys):
        assert main(['validate', TEMPLATE, '-p', 'KeyName=ops']) == 0
        assert 'is valid (4 resources)' in capsys.readouterr().out

    def test_invalid_parameters(self, isolated_env, capsys):
        assert main(['validate', TEMPLATE, '-p', 'SSHLocation=bad']) == 2
        err = capsys.readouterr().err
        assert 'validation error(s)' in err
        assert "✗ Parameter 'KeyName' has no value and no Default" in err
        assert 'does not match pattern' in err

    def test_json_output(self, isolated_env, capsys):
        assert main(['validate', TEMPLATE, '--json-output']) == 2
        payload = json.loads(capsys.readouterr().out)
        assert payload['verb'] == 'validate'
        assert payload['valid'] is False
        assert len(payload['errors']) == 1

    def test_missing_template(self, isolated_env, capsys):
        assert main(['validate', str(isolated_env / 'missing.yaml')]) == 2
        assert 'not found' in capsys.readouterr().err


class TestLifecycle:
    """apply, plan, outputs, drift and destroy against one stack."""

    def test_apply_plan_outputs_destroy(self, isolated_env, capsys):
        _write_settings(isolated_env)

        rc, out, _ = _apply(capsys)
        assert rc == 0
        assert "Stack 'web-server': 4 to create" in out
        assert 'Stack applied: 4/4 action(s) succeeded' in out
        assert 'WebsiteURL = http://ec2-198-51-100-' in out

        store = _store(isolated_env)
        host = store.get('WebServerHost')
        assert host.physical_id.startswith('i-')
        assert host.properties['IamInstanceProfile'] == store.get('InstanceProfile').physical_id
        assert sorted(_cloud(isolated_env).physical_ids()) == sorted(
            s.physical_id for s in store.snapshot().values()
        )

        assert main(['plan', TEMPLATE, '-p', 'KeyName=ops']) == 0
        assert "Stack 'web-server': no changes." in capsys.readouterr().out

        assert main(['outputs', TEMPLATE, '--json-output']) == 0
        outputs = json.loads(capsys.readouterr().out)['outputs']
        assert outputs['InstanceId'] == host.physical_id
        assert outputs['PublicIP'] == host.attributes['PublicIp']

        assert main(['destroy', TEMPLATE, '--yes']) == 0
        assert 'Stack applied: 4/4 action(s) succeeded' in capsys.readouterr().out
        assert _store(isolated_env).snapshot() == {}
        assert _cloud(isolated_env).physical_ids() == []

        assert main(['destroy', TEMPLATE, '--yes']) == 0
        assert 'nothing to destroy' in capsys.readouterr().out

    def test_parameter_change_updates_in_place(self, isolated_env, capsys):
        _write_settings(isolated_env)
        _apply(capsys)
        host_id = _store(isolated_env).get('WebServerHost').physical_id

        rc, out, _ = _apply(capsys, '-p', 'BucketName=other-assets')
        assert rc == 0
        assert '~ update' in out
        assert _store(isolated_env).get('WebServerHost').physical_id == host_id

    def test_immutable_change_needs_replacement_safe(self, isolated_env, capsys):
        _write_settings(isolated_env)
        _apply(capsys)

        rc, _, err = _apply(capsys, '-p', 'VpcId=vpc-99999999')
        assert rc == 2
        assert 'depend on it' in err

        rc, out, _ = _apply(capsys, '-p', 'VpcId=vpc-99999999', '--replacement-safe')
        assert rc == 0
        assert '-/+ replace' in out

    def test_drift(self, isolated_env, capsys):
        _write_settings(isolated_env)
        _apply(capsys)

        assert main(['drift', TEMPLATE]) == 0
        assert "is in sync (0/4 drifted)" in capsys.readouterr().out

        sg = _store(isolated_env).get('WebServerSecurityGroup')
        _cloud(isolated_env).modify(sg.physical_id, GroupDescription='opened by hand')

        assert main(['drift', TEMPLATE]) == 1
        out = capsys.readouterr().out
        assert f'~ WebServerSecurityGroup ({sg.physical_id}): modified' in out
        assert "'opened by hand'" in out
        assert "Stack 'web-server' is drifted (1/4 drifted)" in out

    def test_outputs_without_state(self, isolated_env, capsys):
        assert main(['outputs', TEMPLATE]) == 1
        assert "Stack 'web-server' has no recorded state" in capsys.readouterr().err

    def test_destroy_aborted(self, isolated_env, capsys, monkeypatch):
        _write_settings(isolated_env)
        _apply(capsys)
        monkeypatch.setattr('builtins.input', lambda prompt='': 'n')

        assert main(['destroy', TEMPLATE]) == 1
        assert 'Aborted.' in capsys.readouterr().out
        assert len(_store(isolated_env).snapshot()) == 4


class TestApplyFailures:
    """Tests for failed applies."""

    def test_failure_rolls_back(self, isolated_env, capsys):
        _write_settings(isolated_env, provider_options={
            'simulated': {'fail': {'WebServerHost': 'fatal'}},
        })

        rc, out, err = _apply(capsys)
        assert rc == 1
        assert '✗ WebServerHost: create failed: Injected failure for WebServerHost' in err
        assert 'Stack rolled_back: 0/4 action(s) succeeded' in out
        assert _store(isolated_env).snapshot() == {}
        assert _cloud(isolated_env).physical_ids() == []

    def test_rollback_never_keeps_completed(self, isolated_env, capsys):
        _write_settings(isolated_env, provider_options={
            'simulated': {'fail': {'WebServerHost': 'fatal'}},
        })

        rc, out, _ = _apply(capsys, '--rollback', 'never')
        assert rc == 1
        assert 'Stack partially_applied: 3/4 action(s) succeeded' in out
        assert len(_store(isolated_env).snapshot()) == 3

    def test_missing_parameter(self, isolated_env, capsys):
        assert main(['apply', TEMPLATE]) == 2
        assert "Parameter 'KeyName' has no value" in capsys.readouterr().err

    def test_invalid_stack_name(self, isolated_env, capsys):
        assert main(['apply', TEMPLATE, '-p', 'KeyName=ops', '--stack', '9lives']) == 2
        assert "Invalid stack name '9lives'" in capsys.readouterr().err

    def test_dry_run_changes_nothing(self, isolated_env, capsys):
        _write_settings(isolated_env)
        rc, out, _ = _apply(capsys, '--dry-run')
        assert rc == 0
        assert 'DRY-RUN APPLY: web-server' in out
        assert _store(isolated_env).exists is False

    def test_report_dir(self, isolated_env, capsys):
        _write_settings(isolated_env)
        rc, _, _ = _apply(capsys, '--report-dir', str(isolated_env / 'reports'))
        assert rc == 0
        reports = sorted(p.suffix for p in (isolated_env / 'reports').iterdir())
        assert reports == ['.json', '.md']
