"""Decide whether a freshly pulled image differs from what a container runs."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from orbitd.errors import MalformedReferenceError
from orbitd.reference import ImageReference, parse_reference


@dataclass(frozen=True)
class ImageIdentity:
    """Registry content digest (when the image came from a registry) and local image ID."""
    digest: Optional[str]
    image_id: str


def normalize_digest(value: str) -> str:
    """Canonical ``sha256:<hex>`` form of a RepoDigest entry, digest or image ID."""
    value = value.strip()
    if '@' in value:
        value = value.rsplit('@', 1)[1]
    value = value.lower()
    if ':' not in value:
        value = f"sha256:{value}"
    return value


def changed(before: Optional[str], after: str) -> bool:
    """True unless both sides name the same content. An unknown ``before`` always counts as changed."""
    if not before:
        return True
    return normalize_digest(before) != normalize_digest(after)


def image_identity(inspect: Dict[str, Any],
                   repository: Optional[ImageReference] = None) -> ImageIdentity:
    """
    Identity of an inspected image.

    The registry content digest is preferred because it is the same on every
    host; RepoDigests may list several repositories, so the entry for
    ``repository`` wins when there is one.
    """
    repo_digests = inspect.get('RepoDigests') or []
    chosen = None
    if repository is not None:
        for entry in repo_digests:
            try:
                if parse_reference(entry).same_repository(repository):
                    chosen = entry
                    break
            except MalformedReferenceError:
                continue
    if chosen is None and repo_digests:
        chosen = repo_digests[0]
    return ImageIdentity(
        digest=normalize_digest(chosen) if chosen else None,
        image_id=normalize_digest(inspect.get('Id', '')) if inspect.get('Id') else '',
    )


def identity_changed(before: Optional[ImageIdentity], after: ImageIdentity) -> bool:
    """Compare content digests when both sides have one, otherwise local image IDs."""
    if before is None:
        return True
    if before.digest and after.digest:
        return changed(before.digest, after.digest)
    return changed(before.image_id, after.image_id)
