"""HTTP provisioning-API provider.

Talks to a resource API with a small, generic contract:

    POST   {endpoint}/resources               create   -> 200/201/202
    PUT    {endpoint}/resources/{physical_id} update   -> 200/202
    DELETE {endpoint}/resources/{physical_id} delete   -> 200/202/204
    GET    {endpoint}/resources/{physical_id} describe -> 200

Response bodies are JSON objects:
    {"id": ..., "status": "pending|ready|failed|deleted",
     "properties": {...}, "attributes": {...}, "message": ...}

429 and 5xx responses, connection errors and timeouts are transient;
404 is "not found"; other 4xx are fatal.
"""

import logging
from typing import Optional

import requests
import urllib3

from common import FatalTargetError, ResourceNotFoundError, TransientTargetError
from providers.base import (
    SUCCESS,
    ProgressEvent,
    ResourceHandler,
    ResourceRequest,
    describe_attributes,
)

logger = logging.getLogger(__name__)

PENDING_STATUSES = {'pending', 'creating', 'updating', 'deleting', 'in_progress'}
FAILED_STATUSES = {'failed', 'error'}


class RestApiHandler(ResourceHandler):
    """Resource handler backed by an HTTP provisioning API.

    Args:
        endpoint: API base URL
        token: Optional bearer token
        verify: TLS verification (False disables urllib3 warnings too)
        timeout: Per-request timeout in seconds
        replace_on: Properties the API cannot update in place
    """

    def __init__(self, endpoint: str, token: Optional[str] = None, verify: bool = True,
                 timeout: float = 30.0, replace_on: tuple = ()):
        self.endpoint = endpoint.rstrip('/')
        self.token = token
        self.verify = verify
        self.timeout = timeout
        self.replace_on = tuple(replace_on)
        if not verify:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _headers(self, request: ResourceRequest) -> dict:
        headers = {'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        if request.request_token:
            headers['Idempotency-Key'] = request.request_token
        return headers

    def _call(self, method: str, path: str, request: ResourceRequest, action: str,
              body: Optional[dict] = None) -> dict:
        url = f'{self.endpoint}{path}'
        logger.debug(f"[{request.logical_id}] {method} {url}")
        try:
            response = requests.request(
                method, url, json=body, headers=self._headers(request),
                timeout=self.timeout, verify=self.verify,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientTargetError(f"{method} {url}: {e}", request.logical_id, action) from e
        except requests.RequestException as e:
            raise FatalTargetError(f"{method} {url}: {e}", request.logical_id, action) from e

        status = response.status_code
        if status == 404:
            raise ResourceNotFoundError(f"{method} {url}: not found", request.logical_id, action)
        if status == 429 or status >= 500:
            raise TransientTargetError(
                f"{method} {url}: HTTP {status}", request.logical_id, action,
                retry_after=_retry_after(response),
            )
        if status >= 400:
            raise FatalTargetError(
                f"{method} {url}: HTTP {status}: {_error_text(response)}",
                request.logical_id, action,
            )
        if status == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as e:
            raise FatalTargetError(
                f"{method} {url}: response is not JSON", request.logical_id, action
            ) from e
        return payload if isinstance(payload, dict) else {}

    def _event(self, payload: dict, request: ResourceRequest) -> ProgressEvent:
        physical_id = payload.get('id') or request.physical_id
        status = str(payload.get('status', 'ready')).lower()
        if status in PENDING_STATUSES:
            return ProgressEvent.in_progress(
                physical_id=physical_id, callback_delay=payload.get('retry_after'),
            )
        if status in FAILED_STATUSES:
            return ProgressEvent.failed(
                payload.get('message') or 'Remote operation failed',
                retryable=bool(payload.get('retryable', False)),
                physical_id=physical_id,
            )
        return ProgressEvent(
            status=SUCCESS,
            physical_id=physical_id,
            attributes=describe_attributes(payload.get('attributes')),
            properties=payload.get('properties'),
        )

    def create(self, request: ResourceRequest) -> ProgressEvent:
        body = {
            'type': request.resource_type,
            'logical_id': request.logical_id,
            'stack': request.stack_name,
            'properties': request.properties,
        }
        return self._event(self._call('POST', '/resources', request, 'create', body), request)

    def update(self, request: ResourceRequest) -> ProgressEvent:
        body = {'type': request.resource_type, 'properties': request.properties}
        path = f'/resources/{request.physical_id}'
        return self._event(self._call('PUT', path, request, 'update', body), request)

    def delete(self, request: ResourceRequest) -> ProgressEvent:
        payload = self._call('DELETE', f'/resources/{request.physical_id}', request, 'delete')
        if not payload:
            return ProgressEvent.success(physical_id=request.physical_id)
        if str(payload.get('status', '')).lower() == 'deleted':
            return ProgressEvent.success(physical_id=request.physical_id)
        return self._event(payload, request)

    def describe(self, request: ResourceRequest) -> ProgressEvent:
        payload = self._call('GET', f'/resources/{request.physical_id}', request, 'describe')
        if str(payload.get('status', '')).lower() == 'deleted':
            raise ResourceNotFoundError(
                f"Resource {request.physical_id} was deleted", request.logical_id, 'describe'
            )
        return self._event(payload, request)


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get('Retry-After')
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _error_text(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()[:200]
    if isinstance(payload, dict):
        return str(payload.get('message') or payload.get('error') or payload)
    return str(payload)
