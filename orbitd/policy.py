"""Per-container update policy and target image resolution."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from orbitd.errors import RegistryError, RegistryTimeoutError
from orbitd.reference import ImageReference, parse_reference
from orbitd.versions import SemVer, UpdatePolicy, resolve


logger = logging.getLogger(__name__)

ENABLE_LABEL = 'orbitd.enable'
POLICY_LABEL = 'orbitd.policy'


@dataclass(frozen=True)
class ContainerDescriptor:
    """One entry of the engine's container listing, rebuilt every cycle."""
    id: str
    name: str
    image: str
    image_id: str = ''
    labels: Dict[str, str] = field(default_factory=dict)
    state: str = 'running'

    @property
    def running(self) -> bool:
        return self.state == 'running'

    @classmethod
    def from_summary(cls, summary: Dict[str, Any]) -> 'ContainerDescriptor':
        """Build from a ``GET /containers/json`` entry."""
        # API returns Names as a list with leading slashes, e.g. ["/mycontainer"]
        names = summary.get('Names') or []
        name = names[0].lstrip('/') if names else summary.get('Id', '')[:12]
        return cls(
            id=summary.get('Id', ''),
            name=name,
            image=summary.get('Image', ''),
            image_id=summary.get('ImageID', ''),
            labels=dict(summary.get('Labels') or {}),
            state=summary.get('State', ''),
        )


@dataclass(frozen=True)
class UpdateDecision:
    """Which reference to pull for a container this cycle.

    ``changed`` is set when a newer tag was selected; digest-level changes of
    the same tag are only known after the pull.
    """
    target: ImageReference
    changed: bool
    policy: UpdatePolicy


def is_enabled(labels: Dict[str, str], require_label: bool = False) -> bool:
    """
    Whether a container is monitored.

    Only the exact value ``false`` disables; absence or any other value
    means monitored. In require-label mode only the exact value ``true``
    enables.
    """
    value = labels.get(ENABLE_LABEL)
    if value == 'false':
        return False
    if require_label:
        return value == 'true'
    return True


def container_policy(labels: Dict[str, str], global_policy: UpdatePolicy) -> UpdatePolicy:
    """The container's label override when it is a valid policy, else the global policy."""
    value = labels.get(POLICY_LABEL)
    if value is not None and not UpdatePolicy.is_valid(value):
        logger.debug("Ignoring invalid %s label '%s'", POLICY_LABEL, value)
    return UpdatePolicy.parse(value, default=global_policy)


def decide(container: ContainerDescriptor, global_policy: UpdatePolicy,
           registry, list_timeout: Optional[float] = None) -> UpdateDecision:
    """
    Compute the image a container should run under its policy.

    Args:
        container: Container to check
        global_policy: Policy for containers without a valid label override
        registry: Object with ``list_tags(reference, timeout)``
        list_timeout: Budget for the tag listing, in seconds

    Returns:
        The decision. The current reference is returned (and re-pulled) for
        digest policy, digest-pinned images, non-semver tags, and whenever
        the registry cannot be queried.

    Raises:
        MalformedReferenceError: the container's image string is invalid
    """
    current = parse_reference(container.image)
    policy = container_policy(container.labels, global_policy)
    unchanged = UpdateDecision(target=current, changed=False, policy=policy)

    if policy is UpdatePolicy.DIGEST or current.is_digest_pinned:
        return unchanged

    current_version = SemVer.parse(current.tag)
    if current_version is None:
        logger.debug(f"Tag '{current.tag}' of {container.name} is not a semantic version, "
                     f"using digest policy")
        return unchanged

    try:
        tags = registry.list_tags(current, timeout=list_timeout)
        best = resolve(current_version, policy, tags)
    except RegistryTimeoutError as e:
        logger.warning(f"Tag listing for {current.repository} timed out, "
                       f"no version update this cycle: {e}")
        return unchanged
    except RegistryError as e:
        logger.warning(f"Could not list tags for {current.repository}, "
                       f"no version update this cycle: {e}")
        return unchanged
    except Exception as e:
        logger.warning(f"Unusable tag list for {current.repository}, "
                       f"no version update this cycle: {e!r}")
        return unchanged

    if best is None:
        logger.debug(f"No newer {policy.value} version for {current}")
        return unchanged

    target = current.with_tag(best.original)
    logger.info(f"Found update for {container.name}: {current} -> {target} (policy {policy.value})")
    return UpdateDecision(target=target, changed=True, policy=policy)
