"""Docker Engine API client over the Unix socket.

Only the calls orbitd needs: container listing, inspect, lifecycle
(stop/start/rename/remove/create), network connect and image pull, inspect
and removal. Every failure surfaces as EngineOperationError.
"""

import json
import logging
import os
import socket as _socket
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter as _HTTPAdapter
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool

from orbitd.errors import EngineOperationError, NotFoundError, PullFailedError


logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = '/var/run/docker.sock'
REQUEST_TIMEOUT = 30
PULL_TIMEOUT = 900
STOP_TIMEOUT = 10


def socket_path_from_env(environ: Optional[Dict[str, str]] = None) -> str:
    """Resolve the engine socket from DOCKER_SOCKET or a unix:// DOCKER_HOST."""
    env = os.environ if environ is None else environ
    if env.get('DOCKER_SOCKET'):
        return env['DOCKER_SOCKET']
    host = env.get('DOCKER_HOST', '')
    if host.startswith('unix://'):
        return host[len('unix://'):]
    return DEFAULT_SOCKET_PATH


class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects via a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool backed by a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path)


class _UnixSocketAdapter(_HTTPAdapter):
    """requests adapter that routes all requests through a Unix socket."""

    def __init__(self, socket_path: str):
        self._socket_path = socket_path
        super().__init__()

    def get_connection(self, url: str, proxies=None):
        return _UnixSocketPool(self._socket_path)

    # Needed in requests >= 2.32 / urllib3 >= 2.x
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return _UnixSocketPool(self._socket_path)


def _reason(error: requests.RequestException) -> str:
    response = getattr(error, 'response', None)
    if response is not None:
        try:
            message = response.json().get('message')
        except ValueError:
            message = None
        if message:
            return f"{response.status_code} {message}"
        return f"{response.status_code} {response.reason}"
    return str(error)


class EngineClient:
    """Minimal Docker Engine API v1.41 client."""

    def __init__(self, socket_path: Optional[str] = None,
                 session: Optional[requests.Session] = None,
                 stop_timeout: int = STOP_TIMEOUT, pull_timeout: float = PULL_TIMEOUT):
        self.socket_path = socket_path or socket_path_from_env()
        self.stop_timeout = stop_timeout
        self.pull_timeout = pull_timeout
        if session is None:
            session = requests.Session()
            session.mount('http+unix://', _UnixSocketAdapter(self.socket_path))
        self._session = session

    def _url(self, path: str) -> str:
        return f'http+unix://docker{path}'

    def _request(self, method: str, path: str, operation: str, target: str,
                 timeout: float = REQUEST_TIMEOUT, **kwargs) -> requests.Response:
        try:
            r = self._session.request(method, self._url(path), timeout=timeout, **kwargs)
            r.raise_for_status()
            return r
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            error_cls = NotFoundError if status == 404 else EngineOperationError
            raise error_cls(operation, target, _reason(e), status) from e
        except requests.RequestException as e:
            raise EngineOperationError(operation, target, _reason(e)) from e

    # -- containers ---------------------------------------------------------

    def list_containers(self, include_stopped: bool = False) -> List[Dict[str, Any]]:
        """Container summaries; only running containers unless ``include_stopped``."""
        params = {'all': '1'} if include_stopped else {}
        return self._request('GET', '/containers/json', 'list', 'containers', params=params).json()

    def inspect_container(self, container: str) -> Dict[str, Any]:
        return self._request('GET', f'/containers/{container}/json', 'inspect', container).json()

    def stop_container(self, container: str) -> None:
        # Request must outlive the engine's own SIGTERM grace period
        self._request('POST', f'/containers/{container}/stop', 'stop', container,
                      timeout=REQUEST_TIMEOUT + self.stop_timeout,
                      params={'t': str(self.stop_timeout)})

    def start_container(self, container: str) -> None:
        self._request('POST', f'/containers/{container}/start', 'start', container)

    def rename_container(self, container: str, new_name: str) -> None:
        self._request('POST', f'/containers/{container}/rename', 'rename', container,
                      params={'name': new_name})

    def remove_container(self, container: str, force: bool = False) -> None:
        params = {'force': '1'} if force else {}
        self._request('DELETE', f'/containers/{container}', 'remove', container, params=params)

    def create_container(self, name: str, body: Dict[str, Any]) -> str:
        """Create (not start) a container and return its ID."""
        r = self._request('POST', '/containers/create', 'create', name,
                          params={'name': name}, json=body)
        try:
            return r.json()['Id']
        except (ValueError, KeyError, TypeError) as e:
            raise EngineOperationError('create', name, f"unexpected response: {e!r}",
                                       r.status_code) from e

    def connect_network(self, network: str, container: str,
                        endpoint_config: Optional[Dict[str, Any]] = None) -> None:
        self._request('POST', f'/networks/{network}/connect', 'connect', f'{container} to {network}',
                      json={'Container': container, 'EndpointConfig': endpoint_config or {}})

    # -- images -------------------------------------------------------------

    def pull_image(self, image: str) -> None:
        """
        Pull an image reference ('repo:tag' or 'repo@digest').

        Raises:
            PullFailedError: transport failure, HTTP error or an error event in the stream
        """
        try:
            response = self._session.post(
                self._url('/images/create'),
                params={'fromImage': image},
                stream=True,
                timeout=self.pull_timeout,
            )
            response.raise_for_status()

            # Consume the stream; detect errors reported in the JSON event stream
            for line in response.iter_lines():
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if 'error' in event:
                    raise PullFailedError(image, event['error'])
        except requests.RequestException as e:
            raise PullFailedError(image, _reason(e)) from e
        logger.debug("Pulled %s", image)

    def inspect_image(self, image: str) -> Dict[str, Any]:
        return self._request('GET', f'/images/{image}/json', 'inspect image', image).json()

    def remove_image(self, image: str) -> List[Dict[str, str]]:
        """Remove an image (not forced, parents pruned); returns the engine's deleted/untagged list."""
        r = self._request('DELETE', f'/images/{image}', 'remove image', image,
                          params={'force': '0', 'noprune': '0'})
        return r.json() or []
