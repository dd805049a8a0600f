"""Tests for the providers package."""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import FatalTargetError, ResourceNotFoundError, TransientTargetError
from config import ConfigError, EngineSettings
from providers import (
    CREATE,
    DESCRIBE,
    IN_PROGRESS,
    SUCCESS,
    UPDATE,
    ProviderRegistry,
    ResourceRequest,
    RestApiHandler,
    ShellCommandHandler,
    SimulatedCloud,
    load_registry,
)
from providers.simulated import InstanceHandler, SimulatedHandler, register_simulated


def _request(logical_id='Res', resource_type='Test::Thing', properties=None, physical_id=None,
             token=None):
    return ResourceRequest(
        resource_type=resource_type,
        logical_id=logical_id,
        stack_name='web',
        properties=properties or {},
        physical_id=physical_id,
        request_token=token,
    )


def _response(status_code=200, payload=None, headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    if payload is None:
        response.content = b''
        response.json.side_effect = ValueError('no body')
        response.text = ''
    else:
        response.content = json.dumps(payload).encode()
        response.json.return_value = payload
        response.text = json.dumps(payload)
    return response


class TestProviderRegistry:
    """Tests for type matching."""

    def test_exact_beats_pattern(self):
        registry = ProviderRegistry()
        generic, specific = SimulatedHandler(SimulatedCloud()), InstanceHandler(SimulatedCloud())
        registry.register('AWS::EC2::*', generic)
        registry.register('AWS::EC2::Instance', specific)
        assert registry.get('AWS::EC2::Instance') is specific
        assert registry.get('AWS::EC2::Volume') is generic
        assert registry.find('AWS::S3::Bucket') is None
        assert registry.supports('AWS::S3::Bucket') is False

    def test_patterns_in_registration_order(self):
        registry = ProviderRegistry()
        first, second = SimulatedHandler(SimulatedCloud()), SimulatedHandler(SimulatedCloud())
        registry.register('AWS::*', first)
        registry.register('*', second)
        assert registry.get('AWS::S3::Bucket') is first
        assert registry.get('Other::Thing') is second
        assert registry.types() == ['AWS::*', '*']

    def test_get_unknown(self):
        with pytest.raises(KeyError):
            ProviderRegistry().get('AWS::S3::Bucket')


class TestLoadRegistry:
    """Tests for building a registry from settings."""

    def test_default_providers(self, tmp_path):
        settings = EngineSettings(state_dir=tmp_path, providers=['command', 'simulated'])
        registry = load_registry(settings, 'web')
        assert isinstance(registry.get('Command::Shell'), ShellCommandHandler)
        assert isinstance(registry.get('AWS::EC2::Instance'), InstanceHandler)
        instance = registry.get('AWS::EC2::Instance')
        assert instance.cloud.state_file == tmp_path / 'web' / 'simulated-cloud.json'

    def test_rest_requires_endpoint(self, tmp_path):
        settings = EngineSettings(state_dir=tmp_path, providers=['rest'])
        with pytest.raises(ConfigError, match='requires provider_options.rest.endpoint'):
            load_registry(settings)

    def test_rest_types(self, tmp_path):
        settings = EngineSettings(
            state_dir=tmp_path, providers=['rest'],
            provider_options={'rest': {'endpoint': 'https://api.example/v1/',
                                       'types': ['Custom::*']}},
        )
        registry = load_registry(settings)
        handler = registry.get('Custom::Queue')
        assert isinstance(handler, RestApiHandler)
        assert handler.endpoint == 'https://api.example/v1'
        assert registry.find('AWS::S3::Bucket') is None

    def test_bad_fault_spec(self, tmp_path):
        settings = EngineSettings(
            state_dir=tmp_path, providers=['simulated'],
            provider_options={'simulated': {'fail': {'Host': 'sometimes'}}},
        )
        with pytest.raises(ConfigError, match='Invalid fault spec for Host'):
            load_registry(settings, 'web')


class TestSimulatedCloud:
    """Tests for the simulated target."""

    def _registry(self, cloud):
        registry = ProviderRegistry()
        register_simulated(registry, cloud)
        return registry

    def test_create_update_delete(self):
        cloud = SimulatedCloud()
        handler = self._registry(cloud).get('AWS::IAM::Role')

        event = handler.create(_request('Role', 'AWS::IAM::Role', {'Path': '/'}))
        assert event.status == SUCCESS
        assert event.physical_id.startswith('role-')
        assert event.attributes['Arn'].startswith('arn:aws:iam::123456789012:role/role-')

        request = _request('Role', 'AWS::IAM::Role', {'Path': '/app/'}, physical_id=event.physical_id)
        assert handler.update(request).properties == {'Path': '/app/'}

        handler.delete(request)
        assert cloud.physical_ids() == []
        with pytest.raises(ResourceNotFoundError):
            handler.describe(request)

    def test_instance_is_asynchronous(self):
        cloud = SimulatedCloud(provision_polls=2)
        handler = InstanceHandler(cloud)

        event = handler.create(_request('Host', 'AWS::EC2::Instance', {'ImageId': 'ami-1'}))
        assert event.status == IN_PROGRESS
        assert event.physical_id == 'i-00000000000000001'

        request = _request('Host', 'AWS::EC2::Instance', physical_id=event.physical_id)
        assert handler.describe(request).status == IN_PROGRESS
        done = handler.describe(request)
        assert done.status == SUCCESS
        assert done.attributes['PublicIp'] == '198.51.100.2'
        assert done.attributes['PublicDnsName'] == 'ec2-198-51-100-2.compute-1.amazonaws.com'

    def test_request_token_is_idempotent(self):
        cloud = SimulatedCloud()
        handler = SimulatedHandler(cloud)
        first = handler.create(_request(token='web-Res-create-0'))
        again = handler.create(_request(token='web-Res-create-0'))
        assert first.physical_id == again.physical_id
        assert len(cloud.physical_ids()) == 1

    def test_replacement_properties(self):
        handler = InstanceHandler(SimulatedCloud())
        assert handler.capabilities() == {'Create', 'Update', 'Delete', 'Describe'}
        assert handler.requires_replacement(
            {'ImageId': 'ami-1', 'InstanceType': 't2.micro'},
            {'ImageId': 'ami-2', 'InstanceType': 't2.small'},
        ) == ['ImageId']

    def test_fatal_fault_spares_delete(self, tmp_path):
        state_file = tmp_path / 'cloud.json'
        event = SimulatedHandler(SimulatedCloud(state_file=state_file)).create(_request())

        cloud = SimulatedCloud(state_file=state_file, faults={'Res': 'fatal'})
        handler = SimulatedHandler(cloud)
        with pytest.raises(FatalTargetError, match='Injected failure for Res'):
            handler.create(_request())
        handler.delete(_request(physical_id=event.physical_id))
        assert cloud.physical_ids() == []

    def test_transient_fault_then_success(self):
        cloud = SimulatedCloud(faults={'Res': 'transient:2'})
        handler = SimulatedHandler(cloud)
        for _ in range(2):
            with pytest.raises(TransientTargetError):
                handler.create(_request())
        assert handler.create(_request()).status == SUCCESS

    def test_operation_qualified_fault(self):
        cloud = SimulatedCloud(faults={'Res': 'delete:fatal'})
        handler = SimulatedHandler(cloud)
        event = handler.create(_request())
        with pytest.raises(FatalTargetError):
            handler.delete(_request(physical_id=event.physical_id))

    def test_persistence_and_drift(self, tmp_path):
        state_file = tmp_path / 'cloud.json'
        cloud = SimulatedCloud(state_file=state_file)
        event = SimulatedHandler(cloud).create(_request(properties={'Size': 1}))

        reloaded = SimulatedCloud(state_file=state_file)
        assert reloaded.physical_ids() == [event.physical_id]
        reloaded.modify(event.physical_id, Size=2)
        assert SimulatedCloud(state_file=state_file).get(event.physical_id)['properties'] == {'Size': 2}

        reloaded.remove(event.physical_id)
        assert SimulatedCloud(state_file=state_file).physical_ids() == []

    def test_unreadable_state_is_ignored(self, tmp_path):
        state_file = tmp_path / 'cloud.json'
        state_file.write_text('{broken')
        assert SimulatedCloud(state_file=state_file).physical_ids() == []


class TestShellCommandHandler:
    """Tests for Command::Shell resources."""

    def test_create_uses_last_line_as_id(self):
        handler = ShellCommandHandler(timeout=10)
        event = handler.create(_request(properties={
            'Create': 'echo "making $STACK_PROP_BUCKETNAME"; echo "bucket-$STACK_PROP_BUCKETNAME"',
            'BucketName': 'assets',
        }))
        assert event.physical_id == 'bucket-assets'

    def test_json_output(self):
        handler = ShellCommandHandler(timeout=10)
        event = handler.create(_request(properties={
            'Create': 'echo \'{"PhysicalId": "q-1", "Attributes": {"Url": "sqs://q-1"}}\'',
        }))
        assert event.physical_id == 'q-1'
        assert event.attributes == {'Url': 'sqs://q-1'}

    def test_silent_command_gets_default_id(self):
        event = ShellCommandHandler(timeout=10).create(_request(properties={'Create': 'true'}))
        assert event.physical_id == 'web-Res'

    def test_tempfail_is_transient(self):
        handler = ShellCommandHandler(timeout=10)
        with pytest.raises(TransientTargetError, match='Command exited 75'):
            handler.create(_request(properties={'Create': 'echo busy >&2; exit 75'}))

    def test_failure_is_fatal(self):
        handler = ShellCommandHandler(timeout=10)
        with pytest.raises(FatalTargetError, match='Command exited 3: nope'):
            handler.create(_request(properties={'Create': 'echo nope >&2; exit 3'}))

    def test_missing_create(self):
        with pytest.raises(FatalTargetError, match='No Create command defined'):
            ShellCommandHandler().create(_request())

    def test_missing_delete_is_noop(self):
        event = ShellCommandHandler().delete(_request(physical_id='x-1'))
        assert event.status == SUCCESS
        assert event.physical_id == 'x-1'

    def test_delete_sees_physical_id(self, tmp_path):
        marker = tmp_path / 'deleted'
        ShellCommandHandler(timeout=10).delete(_request(physical_id='x-1', properties={
            'Delete': f'echo "$STACK_PHYSICAL_ID" > {marker}',
        }))
        assert marker.read_text().strip() == 'x-1'

    def test_replacement_without_update_command(self):
        handler = ShellCommandHandler()
        assert handler.requires_replacement({'Create': 'a', 'Size': 1}, {'Create': 'a', 'Size': 2}) == ['Size']
        assert handler.requires_replacement(
            {'Create': 'a', 'Update': 'u', 'Size': 1}, {'Create': 'a', 'Update': 'u', 'Size': 2},
        ) == []


class TestRestApiHandler:
    """Tests for the HTTP provider (requests mocked)."""

    def _handler(self):
        return RestApiHandler('https://api.example/v1', token='secret', timeout=5)

    @patch('providers.rest.requests.request')
    def test_create(self, mock_request):
        mock_request.return_value = _response(201, {
            'id': 'q-1', 'status': 'ready', 'attributes': {'Url': 'https://q-1'},
        })
        event = self._handler().create(_request('Queue', 'Custom::Queue', {'Size': 1},
                                                token='web-Queue-create-0'))

        assert event.status == SUCCESS
        assert event.physical_id == 'q-1'
        assert event.attributes == {'Url': 'https://q-1'}
        args, kwargs = mock_request.call_args
        assert args == ('POST', 'https://api.example/v1/resources')
        assert kwargs['json']['properties'] == {'Size': 1}
        assert kwargs['headers']['Authorization'] == 'Bearer secret'
        assert kwargs['headers']['Idempotency-Key'] == 'web-Queue-create-0'
        assert kwargs['timeout'] == 5

    @patch('providers.rest.requests.request')
    def test_pending_status(self, mock_request):
        mock_request.return_value = _response(202, {'id': 'q-1', 'status': 'creating',
                                                    'retry_after': 2})
        event = self._handler().create(_request())
        assert event.status == IN_PROGRESS
        assert event.callback_delay == 2

    @patch('providers.rest.requests.request')
    def test_failed_status(self, mock_request):
        mock_request.return_value = _response(200, {'id': 'q-1', 'status': 'failed',
                                                    'message': 'quota'})
        event = self._handler().describe(_request(physical_id='q-1'))
        assert event.status == 'FAILED'
        assert event.message == 'quota'
        assert event.retryable is False

    @patch('providers.rest.requests.request')
    def test_throttled_is_transient(self, mock_request):
        mock_request.return_value = _response(429, {'message': 'slow down'},
                                              headers={'Retry-After': '3'})
        with pytest.raises(TransientTargetError) as exc:
            self._handler().create(_request())
        assert exc.value.retry_after == 3.0

    @patch('providers.rest.requests.request')
    def test_client_error_is_fatal(self, mock_request):
        mock_request.return_value = _response(400, {'message': 'bad Size'})
        with pytest.raises(FatalTargetError, match='HTTP 400: bad Size'):
            self._handler().create(_request())

    @patch('providers.rest.requests.request')
    def test_not_found(self, mock_request):
        mock_request.return_value = _response(404, {'message': 'gone'})
        with pytest.raises(ResourceNotFoundError):
            self._handler().describe(_request(physical_id='q-1'))

    @patch('providers.rest.requests.request')
    def test_connection_error_is_transient(self, mock_request):
        mock_request.side_effect = requests.ConnectionError('refused')
        with pytest.raises(TransientTargetError, match='refused'):
            self._handler().update(_request(physical_id='q-1'))

    @patch('providers.rest.requests.request')
    def test_delete_no_content(self, mock_request):
        mock_request.return_value = _response(204)
        event = self._handler().delete(_request(physical_id='q-1'))
        assert event.status == SUCCESS
        assert mock_request.call_args[0] == ('DELETE', 'https://api.example/v1/resources/q-1')

    @patch('providers.rest.requests.request')
    def test_describe_deleted(self, mock_request):
        mock_request.return_value = _response(200, {'id': 'q-1', 'status': 'deleted'})
        with pytest.raises(ResourceNotFoundError, match='was deleted'):
            self._handler().describe(_request(physical_id='q-1'))

    def test_capabilities(self):
        handler = RestApiHandler('https://api.example', replace_on=('Region',))
        assert handler.supports(CREATE)
        assert handler.supports(UPDATE)
        assert handler.supports(DESCRIBE)
        assert handler.requires_replacement({'Region': 'a'}, {'Region': 'b'}) == ['Region']
