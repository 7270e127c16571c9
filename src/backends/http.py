"""REST control-plane backend.

Maps the CloudBackend calls onto a JSON HTTP API:

    POST   {endpoint}/{kind}          create   -> {"id": ..., "outputs": {...}}
    GET    {endpoint}/{kind}/{id}     read     -> {"attributes": {...}}
    PATCH  {endpoint}/{kind}/{id}     update   -> {"outputs": {...}}
    DELETE {endpoint}/{kind}/{id}     destroy

Failures are classified for the executor's retry policy: connection
errors, timeouts, 429 and 5xx are transient; everything else is permanent.
"""

import logging
import threading
from typing import Optional

import requests

from reconcile.errors import PermanentBackendError, ResourceNotFound, TransientBackendError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = {408, 425, 429}


class HttpBackend:
    """CloudBackend backed by a REST control plane."""

    def __init__(
        self,
        endpoint: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        verify: bool = True,
        session: Optional[requests.Session] = None,
    ):
        """Initialize backend.

        Args:
            endpoint: Base URL (e.g., https://cloud.example.com/api/v1)
            token: Bearer token for authentication
            timeout: Per-request timeout in seconds
            verify: Verify TLS certificates
            session: Optional preconfigured requests session
        """
        self.endpoint = endpoint.rstrip('/')
        self.timeout = timeout
        self.verify = verify
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json'})
        if token:
            self.session.headers.update({'Authorization': f'Bearer {token}'})
        self._cancelled = threading.Event()

    def _url(self, kind: str, resource_id: Optional[str] = None) -> str:
        if resource_id is None:
            return f'{self.endpoint}/{kind}'
        return f'{self.endpoint}/{kind}/{resource_id}'

    def _request(self, method: str, url: str, payload: Optional[dict] = None) -> requests.Response:
        if self._cancelled.is_set():
            raise PermanentBackendError(f"{method} {url} cancelled")
        logger.debug(f"{method} {url}")
        try:
            return self.session.request(
                method, url, json=payload, timeout=self.timeout, verify=self.verify,
            )
        except requests.exceptions.Timeout as e:
            raise TransientBackendError(f"Timeout calling {method} {url}: {e}")
        except requests.exceptions.ConnectionError as e:
            raise TransientBackendError(f"Cannot connect for {method} {url}: {e}")
        except requests.exceptions.RequestException as e:
            raise PermanentBackendError(f"Request {method} {url} failed: {e}")

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        """Parse an error response body ({"error": {"code", "message"}})."""
        try:
            error = resp.json().get('error', {})
            if isinstance(error, dict) and error.get('message'):
                return f"{error.get('code', resp.status_code)}: {error['message']}"
        except ValueError:
            pass
        return f"{resp.status_code}: {resp.text[:200]}"

    def _check(self, resp: requests.Response, what: str) -> None:
        if resp.ok:
            return
        message = f"{what} failed with {self._error_message(resp)}"
        if resp.status_code in TRANSIENT_STATUS or resp.status_code >= 500:
            raise TransientBackendError(message)
        raise PermanentBackendError(message)

    @staticmethod
    def _json(resp: requests.Response) -> dict:
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            raise PermanentBackendError(f"Invalid JSON from {resp.url}")
        if not isinstance(data, dict):
            raise PermanentBackendError(f"Expected JSON object from {resp.url}")
        return data

    def create(self, kind: str, attrs: dict) -> tuple[str, dict]:
        resp = self._request('POST', self._url(kind), {'attributes': attrs})
        self._check(resp, f"create {kind}")
        data = self._json(resp)
        if not data.get('id'):
            raise PermanentBackendError(f"create {kind} returned no id")
        return str(data['id']), data.get('outputs', {})

    def read(self, kind: str, resource_id: str) -> dict:
        resp = self._request('GET', self._url(kind, resource_id))
        if resp.status_code == 404:
            raise ResourceNotFound(f"{kind} {resource_id} not found")
        self._check(resp, f"read {kind} {resource_id}")
        return self._json(resp).get('attributes', {})

    def update(self, kind: str, resource_id: str, changes: dict, attrs: dict) -> dict:
        resp = self._request('PATCH', self._url(kind, resource_id),
                             {'changes': changes, 'attributes': attrs})
        if resp.status_code == 404:
            raise PermanentBackendError(f"update {kind} {resource_id}: object no longer exists")
        self._check(resp, f"update {kind} {resource_id}")
        return self._json(resp).get('outputs', {})

    def destroy(self, kind: str, resource_id: str) -> None:
        resp = self._request('DELETE', self._url(kind, resource_id))
        if resp.status_code == 404:
            logger.info(f"{kind} {resource_id} already gone")
            return
        self._check(resp, f"destroy {kind} {resource_id}")

    def cancel(self) -> None:
        """Refuse further requests and close pooled connections."""
        self._cancelled.set()
        self.session.close()
