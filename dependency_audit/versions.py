"""
Version parsing and ordering.

Versions follow the PEP 440 scheme: ``[N!]N(.N)*[{a|b|rc}N][.postN][.devN][+local]``
including the alternate spellings PEP 440 normalizes.  Strings that do not
match are kept as :class:`OpaqueVersion` values, which sort after every
structured version and lexicographically among themselves.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import total_ordering
from typing import Optional, Tuple, Union


WILDCARD = "*"

VERSION_PATTERN = re.compile(
    r"""
    (?:(?P<epoch>\d+)!)?
    (?P<release>\d+(?:\.\d+)*(?:\.\*)?)
    (?:                                   # pre-release
        [._-]?
        (?P<pre_group>alpha|a|beta|b|preview|pre|c|rc)
        [._-]?
        (?P<pre_n>\d*)
    )?
    (?:                                   # post-release
        (?:[._-]?(?:post|rev|r)[._-]? | -)
        (?P<post>(?:(?<![._-])|\d)\d*)
    )?
    (?:                                   # development release
        [._-]?
        dev
        (?P<dev>\d*)
    )?
    (?:                                   # local version label
        \+
        (?P<local>[a-z0-9]+(?:[._-][a-z0-9]+)*)
    )?
    """,
    re.VERBOSE,
)

_PRE_GROUPS = {
    "alpha": "a",
    "beta": "b",
    "c": "rc",
    "pre": "rc",
    "preview": "rc",
}

_LOCAL_SEPARATORS = re.compile(r"[._-]")

ReleaseSegment = Union[int, str]
LocalSegment = Union[int, str]


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def _numeral(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    return int(value) if value else 0


@total_ordering
class BaseVersion:
    """Common ordering protocol for structured and opaque versions."""

    def compare(self, other: "BaseVersion") -> int:
        raise NotImplementedError

    @property
    def is_prerelease(self) -> bool:
        return False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BaseVersion):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, BaseVersion):
            return NotImplemented
        return self.compare(other) < 0


@dataclass(frozen=True, eq=False)
class Version(BaseVersion):
    """A structured (PEP 440) version."""

    release: Tuple[ReleaseSegment, ...]
    epoch: int = 0
    pre: Optional[Tuple[str, int]] = None
    post: Optional[int] = None
    dev: Optional[int] = None
    local: Optional[Tuple[LocalSegment, ...]] = None
    text: str = ""

    @property
    def major(self) -> int:
        first = self.release[0] if self.release else 0
        return first if isinstance(first, int) else 0

    @property
    def is_prerelease(self) -> bool:
        return self.pre is not None or self.dev is not None

    @property
    def is_wildcard(self) -> bool:
        return WILDCARD in self.release

    def compare(self, other: BaseVersion) -> int:
        if isinstance(other, OpaqueVersion):
            return -1
        if not isinstance(other, Version):
            raise TypeError(f"Cannot compare Version with {type(other).__name__}")
        steps = (
            lambda: _cmp(self.epoch, other.epoch),
            lambda: _compare_release(self.release, other.release),
            lambda: _cmp(_pre_key(self), _pre_key(other)),
            lambda: _cmp(_post_key(self.post), _post_key(other.post)),
            lambda: _cmp(_dev_key(self.dev), _dev_key(other.dev)),
            lambda: _compare_local(self.local, other.local),
        )
        for step in steps:
            result = step()
            if result:
                return result
        return 0

    def normalized(self) -> str:
        """Canonical string form of this version."""
        parts = []
        if self.epoch:
            parts.append(f"{self.epoch}!")
        parts.append(".".join(str(seg) for seg in self.release))
        if self.pre is not None:
            parts.append(f"{self.pre[0]}{self.pre[1]}")
        if self.post is not None:
            parts.append(f".post{self.post}")
        if self.dev is not None:
            parts.append(f".dev{self.dev}")
        if self.local is not None:
            parts.append("+" + ".".join(str(seg) for seg in self.local))
        return "".join(parts)

    def __str__(self) -> str:
        return self.text or self.normalized()

    def __repr__(self) -> str:
        return f"<Version {str(self)!r}>"

    def __hash__(self) -> int:
        if self.is_wildcard:
            # Equal to every version in the series, so no hash can agree with __eq__.
            raise TypeError(f"Wildcard version {self} is unhashable")
        release = list(self.release)
        while release and release[-1] == 0:
            release.pop()
        return hash((self.epoch, tuple(release), self.pre, self.post, self.dev, self.local))


@dataclass(frozen=True, eq=False)
class OpaqueVersion(BaseVersion):
    """A version string that does not follow the structured scheme."""

    text: str

    def compare(self, other: BaseVersion) -> int:
        if isinstance(other, OpaqueVersion):
            return _cmp(self.text, other.text)
        if isinstance(other, Version):
            return 1
        raise TypeError(f"Cannot compare OpaqueVersion with {type(other).__name__}")

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"<OpaqueVersion {self.text!r}>"

    def __hash__(self) -> int:
        return hash(("opaque", self.text))


AnyVersion = Union[Version, OpaqueVersion]


def parse_version(text: Union[str, BaseVersion]) -> AnyVersion:
    """Parse ``text`` into a :class:`Version`, or wrap it in :class:`OpaqueVersion`.

    Never raises for string input.
    """
    if isinstance(text, BaseVersion):
        return text
    raw = str(text)
    match = VERSION_PATTERN.fullmatch(raw.strip().lower())
    if match is None:
        return OpaqueVersion(raw)

    try:
        return _structured_version(match, raw)
    except ValueError:
        # A numeral too long for int() under the interpreter's digit limit.
        return OpaqueVersion(raw)


def _structured_version(match: re.Match, raw: str) -> Version:
    release = tuple(
        WILDCARD if seg == WILDCARD else int(seg)
        for seg in match.group("release").split(".")
    )
    pre = None
    pre_group = match.group("pre_group")
    if pre_group is not None:
        pre = (_PRE_GROUPS.get(pre_group, pre_group), _numeral(match.group("pre_n")))
    local = None
    if match.group("local") is not None:
        local = tuple(
            int(seg) if seg.isdigit() else seg
            for seg in _LOCAL_SEPARATORS.split(match.group("local"))
        )

    return Version(
        release=release,
        epoch=int(match.group("epoch") or 0),
        pre=pre,
        post=_numeral(match.group("post")),
        dev=_numeral(match.group("dev")),
        local=local,
        text=raw,
    )


def series(version: Version) -> Version:
    """Return the release series of ``version``: its last release segment as ``*``.

    Only the epoch and the release prefix take part in the result, so
    ``series(2.2.post3)`` is ``2.*``.
    """
    release = version.release[:-1] + (WILDCARD,)
    return Version(release=release, epoch=version.epoch)


def public_release(version: Version) -> Version:
    """``version`` reduced to its epoch and release segments."""
    return Version(release=version.release, epoch=version.epoch)


def nonpatch_segments(version: Version) -> Tuple[int, int, int]:
    """The (epoch, major, minor) triple naming the release line of ``version``."""
    numbers = [seg if isinstance(seg, int) else 0 for seg in version.release[:2]]
    numbers += [0] * (2 - len(numbers))
    return (version.epoch, numbers[0], numbers[1])


def _compare_release(left: Tuple[ReleaseSegment, ...], right: Tuple[ReleaseSegment, ...]) -> int:
    for index in range(max(len(left), len(right))):
        a = left[index] if index < len(left) else 0
        b = right[index] if index < len(right) else 0
        if a == WILDCARD or b == WILDCARD:
            return 0
        result = _cmp(a, b)
        if result:
            return result
    return 0


def _pre_key(version: Version) -> Tuple:
    # A bare dev release sorts before every pre-release of the same release,
    # and a final release after all of them.
    if version.pre is not None:
        return (1,) + version.pre
    if version.post is None and version.dev is not None:
        return (0,)
    return (2,)


def _post_key(post: Optional[int]) -> int:
    return -1 if post is None else post


def _dev_key(dev: Optional[int]) -> float:
    return float("inf") if dev is None else dev


def _local_key(segment: LocalSegment) -> Tuple[int, Union[int, str]]:
    # Textual local segments sort before numeric ones.
    if isinstance(segment, int):
        return (1, segment)
    return (0, segment)


def _compare_local(
    left: Optional[Tuple[LocalSegment, ...]], right: Optional[Tuple[LocalSegment, ...]]
) -> int:
    if left is None or right is None:
        return _cmp(left is not None, right is not None)
    return _cmp([_local_key(s) for s in left], [_local_key(s) for s in right])
