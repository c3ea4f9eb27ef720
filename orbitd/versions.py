"""Semantic version handling for image tags.

Tags are parsed leniently the way container tags are written in practice:
'v1.2.3', '1.2', '15' and '1.2.3-rc.1' all count; 'latest', 'alpine' and
'1.2.3.4' do not.
"""

import re
from dataclasses import dataclass
from enum import Enum
from functools import total_ordering
from typing import Iterable, Optional, Tuple


_SEMVER = re.compile(
    r'^v?(?P<major>[0-9]+)(?:\.(?P<minor>[0-9]+))?(?:\.(?P<patch>[0-9]+))?'
    r'(?:-(?P<prerelease>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?'
    r'(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$'
)


class UpdatePolicy(Enum):
    """Which newer images a container may move to."""
    DIGEST = 'digest'  # same tag, new build
    PATCH = 'patch'    # 1.2.x
    MINOR = 'minor'    # 1.x.x
    MAJOR = 'major'    # anything newer

    @classmethod
    def parse(cls, value: Optional[str],
              default: Optional['UpdatePolicy'] = None) -> 'UpdatePolicy':
        """Map text to a policy; anything unrecognised becomes ``default`` (DIGEST if unset)."""
        fallback = default if default is not None else cls.DIGEST
        if value is None:
            return fallback
        try:
            return cls(value.strip().lower())
        except ValueError:
            return fallback

    @classmethod
    def is_valid(cls, value: Optional[str]) -> bool:
        return value is not None and value.strip().lower() in {p.value for p in cls}


@total_ordering
@dataclass(frozen=True, eq=False)
class SemVer:
    """A parsed version. ``original`` keeps the tag text so it can be pulled as written."""
    major: int
    minor: int
    patch: int
    prerelease: Tuple[str, ...] = ()
    build: str = ''
    original: str = ''

    @classmethod
    def parse(cls, tag: str) -> Optional['SemVer']:
        """Return the version a tag names, or None when it is not a semantic version."""
        match = _SEMVER.match(tag or '')
        if not match:
            return None
        prerelease = match.group('prerelease')
        return cls(
            major=int(match.group('major')),
            minor=int(match.group('minor') or 0),
            patch=int(match.group('patch') or 0),
            prerelease=tuple(prerelease.split('.')) if prerelease else (),
            build=match.group('build') or '',
            original=tag,
        )

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    def _precedence(self) -> tuple:
        # A release sorts above any of its pre-releases; numeric identifiers
        # sort below alphanumeric ones. Build metadata never participates.
        if not self.prerelease:
            return (self.major, self.minor, self.patch, 1, ())
        identifiers = tuple(
            (0, int(part), '') if part.isdigit() else (1, 0, part)
            for part in self.prerelease
        )
        return (self.major, self.minor, self.patch, 0, identifiers)

    def __eq__(self, other):
        if not isinstance(other, SemVer):
            return NotImplemented
        return self._precedence() == other._precedence()

    def __lt__(self, other):
        if not isinstance(other, SemVer):
            return NotImplemented
        return self._precedence() < other._precedence()

    def __hash__(self):
        return hash(self._precedence())

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += '-' + '.'.join(self.prerelease)
        if self.build:
            text += '+' + self.build
        return text


def satisfies(candidate: SemVer, current: SemVer, policy: UpdatePolicy) -> bool:
    """Whether ``candidate`` is an acceptable upgrade from ``current`` under ``policy``."""
    if not candidate > current:
        return False
    # Plain version constraints only admit pre-releases when the current version is one
    if candidate.is_prerelease and not current.is_prerelease:
        return False
    if policy is UpdatePolicy.PATCH:
        return (candidate.major, candidate.minor) == (current.major, current.minor)
    if policy is UpdatePolicy.MINOR:
        return candidate.major == current.major
    if policy is UpdatePolicy.MAJOR:
        return True
    return False


def resolve(current: SemVer, policy: UpdatePolicy,
            candidate_tags: Iterable[str]) -> Optional[SemVer]:
    """
    Pick the highest tag the policy allows.

    Args:
        current: Version the container runs now
        policy: PATCH, MINOR or MAJOR; DIGEST never selects a tag
        candidate_tags: Tags listed by the registry

    Returns:
        The best strictly-newer version, or None when the container is
        already up to date. Non-semver tags are ignored.
    """
    best: Optional[SemVer] = None
    for tag in candidate_tags:
        version = SemVer.parse(tag)
        if version is None or not satisfies(version, current, policy):
            continue
        if best is None or version > best:
            best = version
    return best
