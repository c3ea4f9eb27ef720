"""Shared fakes for the Docker Engine and the registry."""

import hashlib
import itertools
import json
from typing import Any, Dict, List, Optional

import pytest
import requests

from orbitd.config import Config
from orbitd.errors import (
    EngineOperationError,
    NotFoundError,
    PullFailedError,
    RegistryUnavailableError,
)
from orbitd.reference import parse_reference


def make_id(seed: str) -> str:
    return hashlib.sha256(seed.encode()).hexdigest()


def make_image(repo: str, content: str) -> Dict[str, Any]:
    """An image inspect result whose registry digest is derived from ``content``."""
    return {
        'Id': f"sha256:{make_id('id-' + content)}",
        'RepoDigests': [f"{repo}@sha256:{make_id('digest-' + content)}"],
    }


def make_container_info(name: str, image: str, image_id: str, **overrides) -> Dict[str, Any]:
    """Build a minimal docker inspect result with sensible defaults."""
    container_id = make_id(name)
    info = {
        'Id': container_id,
        'Name': f'/{name}',
        'Image': image_id,
        'State': {'Running': True, 'Status': 'running'},
        'Config': {
            'Hostname': container_id[:12],
            'User': '',
            'WorkingDir': '',
            'Env': ['PATH=/usr/bin:/bin', 'APP_MODE=production'],
            'Labels': {},
            'Cmd': ['serve', '--port', '8080'],
            'Image': image,
            'ExposedPorts': {'8080/tcp': {}},
        },
        'HostConfig': {
            'RestartPolicy': {'Name': 'unless-stopped', 'MaximumRetryCount': 0},
            'NetworkMode': 'bridge',
            'PortBindings': {'8080/tcp': [{'HostIp': '', 'HostPort': '8080'}]},
            'Binds': ['/srv/data:/data:rw'],
            'Privileged': False,
            'CapAdd': ['NET_ADMIN'],
            'CapDrop': None,
        },
        'Mounts': [{'Type': 'bind', 'Source': '/srv/data', 'Destination': '/data', 'Mode': 'rw'}],
        'NetworkSettings': {'Networks': {'bridge': {'Aliases': None, 'NetworkID': 'net-bridge'}}},
    }
    # Apply overrides by merging into nested dicts
    for key, value in overrides.items():
        if key in info and isinstance(info[key], dict) and isinstance(value, dict):
            info[key].update(value)
        else:
            info[key] = value
    return info


class FakeEngine:
    """In-memory Docker Engine with name uniqueness and injectable failures."""

    def __init__(self):
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.images: Dict[str, Dict[str, Any]] = {}
        self.remote_images: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Optional[str]]] = {}
        self._ids = itertools.count(1)

    # -- test helpers -------------------------------------------------------

    def add_container(self, name: str, image: str, content: str = 'v1',
                      labels: Optional[Dict[str, str]] = None, running: bool = True,
                      **overrides) -> str:
        reference = parse_reference(image)
        image_info = make_image(reference.repository, content)
        self.images[image] = image_info
        self.images[str(reference)] = image_info
        self.images[image_info['Id']] = image_info
        info = make_container_info(name, image, image_info['Id'], **overrides)
        info['Config']['Labels'] = dict(labels or {})
        info['State'] = {'Running': running, 'Status': 'running' if running else 'exited'}
        self.containers[info['Id']] = info
        return info['Id']

    def publish(self, image: str, content: str) -> None:
        """Make ``image`` resolve to new content on the next pull."""
        self.remote_images[image] = make_image(parse_reference(image).repository, content)

    def fail(self, operation: str, target: Optional[str] = None) -> None:
        """Fail the next ``operation`` on ``target`` (any target when None)."""
        self.failures.setdefault(operation, []).append(target)

    def by_name(self, name: str) -> Optional[Dict[str, Any]]:
        for info in self.containers.values():
            if info['Name'] == f'/{name}':
                return info
        return None

    def ops(self, operation: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == operation]

    def mutating_calls(self) -> List[tuple]:
        readonly = {'list', 'inspect', 'inspect_image', 'pull'}
        return [c for c in self.calls if c[0] not in readonly]

    # -- internals ----------------------------------------------------------

    def _check_failure(self, operation: str, target: str) -> None:
        pending = self.failures.get(operation) or []
        for index, wanted in enumerate(pending):
            if wanted is None or wanted == target:
                pending.pop(index)
                raise EngineOperationError(operation, target, 'injected failure', 500)

    def _resolve(self, operation: str, ref: str) -> Dict[str, Any]:
        if ref in self.containers:
            return self.containers[ref]
        info = self.by_name(ref)
        if info is None:
            raise NotFoundError(operation, ref, 'No such container', 404)
        return info

    # -- EngineClient surface -----------------------------------------------

    def list_containers(self, include_stopped: bool = False) -> List[Dict[str, Any]]:
        self.calls.append(('list',))
        self._check_failure('list', 'containers')
        result = []
        for info in self.containers.values():
            if not include_stopped and not info['State']['Running']:
                continue
            result.append({
                'Id': info['Id'],
                'Names': [info['Name']],
                'Image': info['Config']['Image'],
                'ImageID': info['Image'],
                'Labels': info['Config']['Labels'],
                'State': 'running' if info['State']['Running'] else 'exited',
            })
        return result

    def inspect_container(self, container: str) -> Dict[str, Any]:
        self.calls.append(('inspect', container))
        self._check_failure('inspect', container)
        return self._resolve('inspect', container)

    def stop_container(self, container: str) -> None:
        self.calls.append(('stop', container))
        self._check_failure('stop', container)
        self._resolve('stop', container)['State'] = {'Running': False, 'Status': 'exited'}

    def start_container(self, container: str) -> None:
        self.calls.append(('start', container))
        self._check_failure('start', container)
        self._resolve('start', container)['State'] = {'Running': True, 'Status': 'running'}

    def rename_container(self, container: str, new_name: str) -> None:
        self.calls.append(('rename', container, new_name))
        self._check_failure('rename', container)
        info = self._resolve('rename', container)
        existing = self.by_name(new_name)
        if existing is not None and existing is not info:
            raise EngineOperationError('rename', container, f'name {new_name} in use', 409)
        info['Name'] = f'/{new_name}'

    def remove_container(self, container: str, force: bool = False) -> None:
        self.calls.append(('remove', container))
        self._check_failure('remove', container)
        info = self._resolve('remove', container)
        if info['State']['Running'] and not force:
            raise EngineOperationError('remove', container, 'container is running', 409)
        del self.containers[info['Id']]

    def create_container(self, name: str, body: Dict[str, Any]) -> str:
        self.calls.append(('create', name, body))
        self._check_failure('create', name)
        if self.by_name(name) is not None:
            raise EngineOperationError('create', name, f'name {name} in use', 409)
        image_info = self.images.get(body['Image'], {})
        new_id = make_id(f'new-{next(self._ids)}')
        self.containers[new_id] = {
            'Id': new_id,
            'Name': f'/{name}',
            'Image': image_info.get('Id', ''),
            'State': {'Running': False, 'Status': 'created'},
            'Config': {k: v for k, v in body.items() if k not in ('HostConfig', 'NetworkingConfig')},
            'HostConfig': body.get('HostConfig', {}),
            'NetworkSettings': {'Networks': {}},
        }
        return new_id

    def connect_network(self, network: str, container: str, endpoint_config=None) -> None:
        self.calls.append(('connect', network, container))
        self._check_failure('connect', network)

    def pull_image(self, image: str) -> None:
        self.calls.append(('pull', image))
        pending = self.failures.get('pull') or []
        for index, wanted in enumerate(pending):
            if wanted is None or wanted == image:
                pending.pop(index)
                raise PullFailedError(image, 'manifest unknown')
        if image in self.remote_images:
            info = self.remote_images[image]
            self.images[image] = info
            self.images[info['Id']] = info

    def inspect_image(self, image: str) -> Dict[str, Any]:
        self.calls.append(('inspect_image', image))
        if image not in self.images:
            raise NotFoundError('inspect image', image, 'No such image', 404)
        return self.images[image]

    def remove_image(self, image: str) -> List[Dict[str, str]]:
        self.calls.append(('remove_image', image))
        self._check_failure('remove_image', image)
        return [{'Deleted': image}]


def registry_response(status=200, body=None, headers=None, url=''):
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(body if body is not None else {}).encode()
    response.headers.update(headers or {})
    response.url = url
    return response


class ScriptedSession:
    """Answers GETs from a queue and records what was asked."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def get(self, url, headers=None, timeout=None):
        self.requests.append((url, dict(headers or {}), timeout))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        item.url = url
        return item


class FakeRegistry:
    """Serves fixed tag lists per repository."""

    def __init__(self, tags: Optional[Dict[str, List[str]]] = None, error: Exception = None):
        self.tags = tags or {}
        self.error = error
        self.calls: List[str] = []

    def list_tags(self, reference, timeout=None) -> List[str]:
        self.calls.append(reference.repository)
        if self.error is not None:
            raise self.error
        if reference.repository not in self.tags:
            raise RegistryUnavailableError(f"unknown repository {reference.repository}")
        return list(self.tags[reference.repository])


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def config():
    return Config(pace=0, cleanup=True)
