"""Image reference parsing.

Splits an image string such as ``ghcr.io/org/app:1.2.3`` or
``postgres@sha256:...`` into repository, tag and digest, applying Docker's
defaults: no tag means ``latest`` and no registry means Docker Hub.
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

from orbitd.errors import MalformedReferenceError


DEFAULT_REGISTRY = "docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"

_PATH_COMPONENT = re.compile(r'^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$', re.ASCII)
_DOMAIN = re.compile(
    r'^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?'
    r'(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)*'
    r'|\[[0-9a-fA-F:]+\])(?::[0-9]+)?$'
)
_TAG = re.compile(r'^[\w][\w.-]{0,127}$', re.ASCII)
_DIGEST = re.compile(r'^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}$', re.ASCII)
_IMAGE_ID = re.compile(r'^sha256:[0-9a-f]{64}$')


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference.

    ``repository`` is the name as written (registry prefix included when the
    user gave one). Digest-pinned references carry ``tag=None``.
    """
    repository: str
    tag: Optional[str] = DEFAULT_TAG
    digest: Optional[str] = None

    @property
    def is_digest_pinned(self) -> bool:
        return self.digest is not None

    @property
    def registry(self) -> str:
        return _split_domain(self.repository)[0]

    @property
    def path(self) -> str:
        """Repository path on its registry, with Docker Hub's implicit ``library/``."""
        registry, remainder = _split_domain(self.repository)
        if registry == DEFAULT_REGISTRY and '/' not in remainder:
            return f"{DEFAULT_NAMESPACE}/{remainder}"
        return remainder

    def with_tag(self, tag: str) -> 'ImageReference':
        return ImageReference(repository=self.repository, tag=tag)

    def same_repository(self, other: 'ImageReference') -> bool:
        return (self.registry, self.path) == (other.registry, other.path)

    def __str__(self) -> str:
        if self.digest:
            return f"{self.repository}@{self.digest}"
        return f"{self.repository}:{self.tag}"


def is_image_id(image: str) -> bool:
    """True for a bare local image ID, which containers report when their tag was removed."""
    return bool(_IMAGE_ID.match(image))


def _split_domain(repository: str) -> Tuple[str, str]:
    parts = repository.split('/', 1)
    first = parts[0]
    # Registry indicators: contains '.', is localhost, or has port ':'
    if len(parts) > 1 and ('.' in first or ':' in first or first == 'localhost'):
        registry = first
        remainder = parts[1]
    else:
        registry = DEFAULT_REGISTRY
        remainder = repository
    if registry in ('index.docker.io', 'registry-1.docker.io'):
        registry = DEFAULT_REGISTRY
    return registry, remainder


def parse_reference(image: str) -> ImageReference:
    """
    Parse an image string into an ImageReference.

    Args:
        image: Reference such as 'nginx', 'linuxserver/sonarr:4.0.1',
            'localhost:5000/app:dev' or 'postgres@sha256:...'

    Returns:
        The parsed reference. A missing tag becomes 'latest'; a digest wins
        over a tag given alongside it.

    Raises:
        MalformedReferenceError: the string is not a valid reference
    """
    if not image or image != image.strip() or any(c.isspace() for c in image):
        raise MalformedReferenceError(image, "empty or contains whitespace")

    name = image
    digest = None
    if '@' in name:
        name, digest = name.split('@', 1)
        if not _DIGEST.match(digest):
            raise MalformedReferenceError(image, f"invalid digest '{digest}'")

    tag = None
    # Only a colon after the last slash separates a tag; earlier ones are a registry port
    last_slash = name.rfind('/')
    last_colon = name.rfind(':')
    if last_colon > last_slash:
        name, tag = name[:last_colon], name[last_colon + 1:]
        if not _TAG.match(tag):
            raise MalformedReferenceError(image, f"invalid tag '{tag}'")

    if not name:
        raise MalformedReferenceError(image, "missing repository name")

    parts = name.split('/', 1)
    if len(parts) > 1 and ('.' in parts[0] or ':' in parts[0] or parts[0] == 'localhost'):
        if not _DOMAIN.match(parts[0]):
            raise MalformedReferenceError(image, f"invalid registry '{parts[0]}'")
        path = parts[1]
    else:
        path = name

    for component in path.split('/'):
        if not _PATH_COMPONENT.match(component):
            raise MalformedReferenceError(image, f"invalid repository component '{component}'")

    if len(name) > 255:
        raise MalformedReferenceError(image, "repository name longer than 255 characters")

    if digest:
        return ImageReference(repository=name, tag=None, digest=digest)
    return ImageReference(repository=name, tag=tag or DEFAULT_TAG)
