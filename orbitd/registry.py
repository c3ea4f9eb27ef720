"""Registry HTTP API v2 client: anonymous tag listing with a time budget."""

import logging
import re
import time
from typing import Dict, List, Optional

import requests

from orbitd.errors import RegistryTimeoutError, RegistryUnavailableError
from orbitd.reference import DEFAULT_REGISTRY, ImageReference


logger = logging.getLogger(__name__)

DEFAULT_LIST_TIMEOUT = 10.0
DOCKER_HUB_API = "registry-1.docker.io"
DOCKER_HUB_AUTH_URL = "https://auth.docker.io/token"
PAGE_SIZE = 1000

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def registry_host(registry: str) -> str:
    """API host for a registry name as it appears in image references."""
    if registry == DEFAULT_REGISTRY:
        return DOCKER_HUB_API
    return registry


def _scheme(host: str) -> str:
    hostname = host.split(':', 1)[0]
    if hostname == 'localhost' or hostname.startswith('127.'):
        return 'http'
    return 'https'


def parse_challenge(header: str) -> Dict[str, str]:
    """Parse a ``WWW-Authenticate: Bearer realm=...,service=...`` header into its parameters."""
    if not header or not header.lower().startswith('bearer'):
        return {}
    return dict(_CHALLENGE_PARAM.findall(header))


def _page_tags(data, name: str) -> List[str]:
    """The ``tags`` of one tag-list page; a null list means no tags."""
    if not isinstance(data, dict):
        raise RegistryUnavailableError(f"Invalid tag list from {name}: expected an object")
    tags = data.get('tags') or []
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise RegistryUnavailableError(f"Invalid tag list from {name}: tags is not a list of strings")
    return tags


class RegistryClient:
    """Lists repository tags. No credentials are sent; public repositories only."""

    def __init__(self, timeout: float = DEFAULT_LIST_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout
        self._session = session or requests.Session()

    def _token_url(self, host: str, path: str, challenge: Dict[str, str]) -> Optional[str]:
        scope = f"repository:{path}:pull"
        if challenge.get('realm'):
            service = challenge.get('service', host)
            return f"{challenge['realm']}?service={service}&scope={challenge.get('scope', scope)}"
        # Well-known endpoints when the registry sent no usable challenge
        if host == DOCKER_HUB_API:
            return f"{DOCKER_HUB_AUTH_URL}?service=registry.docker.io&scope={scope}"
        if host in ("ghcr.io", "lscr.io"):
            # lscr.io delegates auth to ghcr.io
            return f"https://ghcr.io/token?service=ghcr.io&scope={scope}"
        return None

    def _get_token(self, host: str, path: str, challenge: Dict[str, str],
                   timeout: float) -> Optional[str]:
        auth_url = self._token_url(host, path, challenge)
        if not auth_url:
            return None
        response = self._session.get(auth_url, timeout=timeout)
        response.raise_for_status()
        data = response.json()
        return data.get('token') or data.get('access_token')

    def list_tags(self, reference: ImageReference, timeout: Optional[float] = None) -> List[str]:
        """
        Get all tags of the reference's repository.

        Args:
            reference: Any reference into the repository; tag and digest are ignored
            timeout: Overall budget in seconds across token and page requests

        Returns:
            Tags in registry order

        Raises:
            RegistryTimeoutError: the budget ran out
            RegistryUnavailableError: network failure or error response
        """
        budget = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        host = registry_host(reference.registry)
        path = reference.path
        name = f"{host}/{path}"

        def remaining() -> float:
            left = deadline - time.monotonic()
            if left <= 0:
                raise RegistryTimeoutError(f"Listing tags for {name} exceeded {budget:.0f}s")
            return left

        url: Optional[str] = f"{_scheme(host)}://{host}/v2/{path}/tags/list?n={PAGE_SIZE}"
        headers: Dict[str, str] = {}
        token_attempted = False
        tags: List[str] = []

        try:
            while url:
                response = self._session.get(url, headers=headers, timeout=remaining())
                if response.status_code == 401 and not token_attempted:
                    token_attempted = True
                    challenge = parse_challenge(response.headers.get('WWW-Authenticate', ''))
                    token = self._get_token(host, path, challenge, remaining())
                    if token:
                        headers['Authorization'] = f'Bearer {token}'
                        continue
                response.raise_for_status()
                tags.extend(_page_tags(response.json(), name))
                next_link = response.links.get('next', {}).get('url')
                url = requests.compat.urljoin(url, next_link) if next_link else None
        except requests.Timeout as e:
            raise RegistryTimeoutError(f"Listing tags for {name} timed out: {e}") from e
        except requests.RequestException as e:
            raise RegistryUnavailableError(f"Error getting tags for {name}: {e}") from e
        except ValueError as e:
            raise RegistryUnavailableError(f"Invalid tag list from {name}: {e}") from e

        logger.debug("Listed %d tags for %s", len(tags), name)
        return tags
