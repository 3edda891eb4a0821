"""
Grammar for requirement lines.

A line is parsed into one of two shapes:

* :class:`ConstraintSet` -- ``name[extras] (op version, ...) ; marker``
* :class:`DirectReference` -- ``name[extras] @ uri ; marker`` or, for a line
  holding nothing but an absolute URL, a reference without a name.

The parser is a small recursive-descent implementation of the PEP 508
grammar.  Environment markers are parsed into a tree of
:class:`MarkerComparison` / :class:`MarkerBoolean` nodes but never evaluated.
Direct references use the RFC 3986 ``URI-reference`` grammar.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, TypeVar, Union

from .constraints import Constraint
from .errors import GrammarAmbiguity, RequirementParseError


T = TypeVar("T")

ACCEPTED_URI_SCHEMES = (
    "http",
    "https",
    "git",
    "git+git",
    "git+http",
    "git+https",
    "git+ssh",
)

COMPARATORS = ("<=", "<", "!=", "===", "==", ">=", ">", "~=")

ENVIRONMENT_VARIABLES = (
    "python_version",
    "python_full_version",
    "os_name",
    "sys_platform",
    "platform_release",
    "platform_system",
    "platform_version",
    "platform_machine",
    "platform_python_implementation",
    "implementation_name",
    "implementation_version",
    "extra",
)

# RFC 3986, appendix A
_UNRESERVED = r"[A-Za-z0-9._~-]"
_PCT_ENCODED = r"%[0-9A-Fa-f]{2}"
_SUB_DELIMS = r"[!$&'()*+,;=]"
_PCHAR = rf"(?:{_UNRESERVED}|{_PCT_ENCODED}|{_SUB_DELIMS}|[:@])"
_SEGMENT = rf"{_PCHAR}*"
_SEGMENT_NZ = rf"{_PCHAR}+"
_SEGMENT_NZ_NC = rf"(?:{_UNRESERVED}|{_PCT_ENCODED}|{_SUB_DELIMS}|@)+"
_SCHEME = r"[A-Za-z][A-Za-z0-9+.-]*"
_USERINFO = rf"(?:{_UNRESERVED}|{_PCT_ENCODED}|{_SUB_DELIMS}|:)*"
_DEC_OCTET = r"(?:25[0-5]|2[0-4][0-9]|1[0-9]{2}|[1-9][0-9]|[0-9])"
_IPV4 = rf"{_DEC_OCTET}(?:\.{_DEC_OCTET}){{3}}"
_H16 = r"[0-9A-Fa-f]{1,4}"
_LS32 = rf"(?:{_H16}:{_H16}|{_IPV4})"
_IPV6 = "|".join([
    rf"(?:{_H16}:){{6}}{_LS32}",
    rf"::(?:{_H16}:){{5}}{_LS32}",
    rf"(?:{_H16})?::(?:{_H16}:){{4}}{_LS32}",
    rf"(?:(?:{_H16}:){{0,1}}{_H16})?::(?:{_H16}:){{3}}{_LS32}",
    rf"(?:(?:{_H16}:){{0,2}}{_H16})?::(?:{_H16}:){{2}}{_LS32}",
    rf"(?:(?:{_H16}:){{0,3}}{_H16})?::{_H16}:{_LS32}",
    rf"(?:(?:{_H16}:){{0,4}}{_H16})?::{_LS32}",
    rf"(?:(?:{_H16}:){{0,5}}{_H16})?::{_H16}",
    rf"(?:(?:{_H16}:){{0,6}}{_H16})?::",
])
_IPVFUTURE = rf"v[0-9A-Fa-f]+\.(?:{_UNRESERVED}|{_SUB_DELIMS}|:)+"
_IP_LITERAL = rf"\[(?:{_IPV6}|{_IPVFUTURE})\]"
_REG_NAME = rf"(?:{_UNRESERVED}|{_PCT_ENCODED}|{_SUB_DELIMS})*"
_HOST = rf"(?:{_IP_LITERAL}|{_IPV4}|{_REG_NAME})"
_AUTHORITY = rf"(?:{_USERINFO}@)?{_HOST}(?::[0-9]*)?"
_PATH_ABEMPTY = rf"(?:/{_SEGMENT})*"
_PATH_ABSOLUTE = rf"/(?:{_SEGMENT_NZ}(?:/{_SEGMENT})*)?"
_PATH_NOSCHEME = rf"{_SEGMENT_NZ_NC}(?:/{_SEGMENT})*"
_PATH_ROOTLESS = rf"{_SEGMENT_NZ}(?:/{_SEGMENT})*"
_QUERY = rf"(?:{_PCHAR}|[/?])*"
_HIER_PART = rf"(?://{_AUTHORITY}{_PATH_ABEMPTY}|{_PATH_ABSOLUTE}|{_PATH_ROOTLESS}|)"
_RELATIVE_PART = rf"(?://{_AUTHORITY}{_PATH_ABEMPTY}|{_PATH_ABSOLUTE}|{_PATH_NOSCHEME}|)"
_URI = rf"{_SCHEME}:{_HIER_PART}(?:\?{_QUERY})?(?:#{_QUERY})?"
_RELATIVE_REF = rf"{_RELATIVE_PART}(?:\?{_QUERY})?(?:#{_QUERY})?"

URI_PATTERN = re.compile(_URI)
URI_REFERENCE_PATTERN = re.compile(rf"(?:{_URI}|{_RELATIVE_REF})(?=[ \t]|$)")

_WSP = re.compile(r"[ \t]*")
_WSP_REQUIRED = re.compile(r"[ \t]+")
_IDENTIFIER = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9._-]*[A-Za-z0-9])?")
_COMPARATOR = re.compile("|".join(re.escape(op) for op in COMPARATORS))
_VERSION = re.compile(r"[A-Za-z0-9_.*+!-]+")
_ENV_VAR = re.compile(
    "(?:"
    + "|".join(sorted(ENVIRONMENT_VARIABLES, key=len, reverse=True))
    + r")(?![A-Za-z0-9_])"
)
_STRING_CHARS = r"[ \tA-Za-z0-9().{}_*#:;,/?\[\]!~`@$%^&=+|<>-]"
_PYTHON_STRING = re.compile(rf"'((?:{_STRING_CHARS}|\")*)'|\"((?:{_STRING_CHARS}|')*)\"")
_KEYWORD_END = r"(?![A-Za-z0-9_])"
_KEYWORDS = {
    word: re.compile(word + _KEYWORD_END) for word in ("and", "or", "in", "not")
}


@dataclass(frozen=True)
class MarkerVariable:
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class MarkerString:
    value: str

    def __str__(self) -> str:
        return repr(self.value)


MarkerValue = Union[MarkerVariable, MarkerString]


@dataclass(frozen=True)
class MarkerComparison:
    left: MarkerValue
    op: str
    right: MarkerValue

    def __str__(self) -> str:
        return f"{self.left} {self.op} {self.right}"


@dataclass(frozen=True)
class MarkerBoolean:
    op: str
    left: "MarkerNode"
    right: "MarkerNode"

    def __str__(self) -> str:
        return f"({self.left} {self.op} {self.right})"


MarkerNode = Union[MarkerComparison, MarkerBoolean]


@dataclass(frozen=True)
class ConstraintSet:
    """A named requirement with version constraints."""

    name: str
    extras: Tuple[str, ...] = ()
    constraints: Tuple[Constraint, ...] = ()
    marker: Optional[MarkerNode] = None


@dataclass(frozen=True)
class DirectReference:
    """A requirement satisfied by a URL; ``name`` is None for a bare URL line."""

    url: str
    name: Optional[str] = None
    extras: Tuple[str, ...] = ()
    marker: Optional[MarkerNode] = None

    @property
    def scheme(self) -> Optional[str]:
        scheme, sep, _ = self.url.partition(":")
        return scheme.lower() if sep and re.fullmatch(_SCHEME, scheme) else None


ParsedRequirement = Union[ConstraintSet, DirectReference]


class _Backtrack(Exception):
    pass


class RequirementParser:
    """Recursive-descent parser for a single requirement line."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0
        self._furthest = 0
        self._expected = ""

    def parse(self) -> ParsedRequirement:
        self._match(_WSP)
        result = self._attempt(self._url_req)
        if result is None:
            result = self._attempt(self._name_req)
        if result is not None:
            self._match(_WSP)
            if self.pos == len(self.text):
                return result
            self._note_failure("end of line")
        raise RequirementParseError(self.text, self._furthest, self._expected)

    # -- requirement forms -------------------------------------------------

    def _url_req(self) -> DirectReference:
        name = self._expect(_IDENTIFIER, "package name")
        self._match(_WSP)
        extras = self._optional(self._extras) or ()
        self._match(_WSP)
        self._literal("@")
        self._match(_WSP)
        url = self._expect(URI_REFERENCE_PATTERN, "URI")
        if not url:
            self._fail("URI")
        marker = None
        if self.pos < len(self.text):
            self._expect(_WSP_REQUIRED, "whitespace after URI")
            marker = self._optional(self._quoted_marker)
        if not URI_PATTERN.fullmatch(url):
            raise GrammarAmbiguity(f"Direct reference for {name} is not an absolute URI: {url}")
        return DirectReference(url=url, name=name, extras=extras, marker=marker)

    def _name_req(self) -> ConstraintSet:
        name = self._expect(_IDENTIFIER, "package name")
        self._match(_WSP)
        extras = self._optional(self._extras) or ()
        self._match(_WSP)
        constraints = self._optional(self._versionspec) or ()
        self._match(_WSP)
        marker = self._optional(self._quoted_marker)
        return ConstraintSet(name=name, extras=extras, constraints=constraints, marker=marker)

    def _extras(self) -> Tuple[str, ...]:
        self._literal("[")
        self._match(_WSP)
        extras = []
        if self._peek("]"):
            self._literal("]")
            return ()
        extras.append(self._expect(_IDENTIFIER, "extra name"))
        while True:
            extra = self._attempt(self._comma_identifier)
            if extra is None:
                break
            extras.append(extra)
        self._match(_WSP)
        self._literal("]")
        return tuple(extras)

    def _comma_identifier(self) -> str:
        self._match(_WSP)
        self._literal(",")
        self._match(_WSP)
        return self._expect(_IDENTIFIER, "extra name")

    def _versionspec(self) -> Tuple[Constraint, ...]:
        if self._peek("("):
            self._literal("(")
            constraints = self._version_many()
            self._match(_WSP)
            self._literal(")")
            return constraints
        return self._version_many()

    def _version_many(self) -> Tuple[Constraint, ...]:
        constraints = [self._version_one()]
        while True:
            clause = self._attempt(self._comma_version)
            if clause is None:
                return tuple(constraints)
            constraints.append(clause)

    def _comma_version(self) -> Constraint:
        self._match(_WSP)
        self._literal(",")
        return self._version_one()

    def _version_one(self) -> Constraint:
        self._match(_WSP)
        op = self._expect(_COMPARATOR, "version comparator")
        self._match(_WSP)
        version = self._expect(_VERSION, "version")
        return Constraint(op, version)

    # -- environment markers -----------------------------------------------

    def _quoted_marker(self) -> MarkerNode:
        self._literal(";")
        self._match(_WSP)
        return self._marker()

    def _marker(self) -> MarkerNode:
        return self._binary(self._marker_and, "or")

    def _marker_and(self) -> MarkerNode:
        return self._binary(self._marker_expr, "and")

    def _binary(self, operand: Callable[[], MarkerNode], keyword: str) -> MarkerNode:
        node = operand()

        def tail() -> MarkerNode:
            self._match(_WSP)
            self._expect(_KEYWORDS[keyword], keyword)
            return operand()

        while True:
            right = self._attempt(tail)
            if right is None:
                return node
            node = MarkerBoolean(keyword, node, right)

    def _marker_expr(self) -> MarkerNode:
        comparison = self._attempt(self._marker_comparison)
        if comparison is not None:
            return comparison
        self._match(_WSP)
        self._literal("(")
        node = self._marker()
        self._match(_WSP)
        self._literal(")")
        return node

    def _marker_comparison(self) -> MarkerComparison:
        left = self._marker_var()
        op = self._marker_op()
        right = self._marker_var()
        return MarkerComparison(left, op, right)

    def _marker_var(self) -> MarkerValue:
        self._match(_WSP)
        name = self._match(_ENV_VAR)
        if name is not None:
            return MarkerVariable(name)
        match = _PYTHON_STRING.match(self.text, self.pos)
        if match is None:
            self._fail("marker variable or string")
        self.pos = match.end()
        value = match.group(1) if match.group(1) is not None else match.group(2)
        return MarkerString(value)

    def _marker_op(self) -> str:
        self._match(_WSP)
        op = self._match(_COMPARATOR)
        if op is not None:
            return op
        if self._match(_KEYWORDS["in"]) is not None:
            return "in"
        self._expect(_KEYWORDS["not"], "marker operator")
        self._expect(_WSP_REQUIRED, "whitespace")
        self._expect(_KEYWORDS["in"], "in")
        return "not in"

    # -- primitives --------------------------------------------------------

    def _attempt(self, production: Callable[[], T]) -> Optional[T]:
        saved = self.pos
        try:
            return production()
        except _Backtrack:
            self.pos = saved
            return None

    def _optional(self, production: Callable[[], T]) -> Optional[T]:
        return self._attempt(production)

    def _peek(self, literal: str) -> bool:
        return self.text.startswith(literal, self.pos)

    def _literal(self, literal: str) -> None:
        if not self._peek(literal):
            self._fail(repr(literal))
        self.pos += len(literal)

    def _match(self, pattern: "re.Pattern[str]") -> Optional[str]:
        match = pattern.match(self.text, self.pos)
        if match is None:
            return None
        self.pos = match.end()
        return match.group(0)

    def _expect(self, pattern: "re.Pattern[str]", description: str) -> str:
        value = self._match(pattern)
        if value is None:
            self._fail(description)
        return value

    def _note_failure(self, description: str) -> None:
        if self.pos >= self._furthest:
            self._furthest = self.pos
            self._expected = description

    def _fail(self, description: str) -> None:
        self._note_failure(description)
        raise _Backtrack()


def parse_requirement(line: str) -> ParsedRequirement:
    """Parse a requirement line.

    Raises:
        RequirementParseError: the line does not match the grammar.
        GrammarAmbiguity: a named direct reference has a relative URI.
    """
    return RequirementParser(line).parse()


def is_accepted_url(text: str) -> bool:
    """True if ``text`` is an absolute URI with an accepted scheme."""
    if not URI_PATTERN.fullmatch(text):
        return False
    scheme = text.split(":", 1)[0].lower()
    return scheme in ACCEPTED_URI_SCHEMES


def parse_manifest_line(line: str) -> ParsedRequirement:
    """Parse a manifest entry, accepting bare URLs as anonymous references."""
    try:
        return parse_requirement(line)
    except RequirementParseError:
        candidate = line.strip()
        if is_accepted_url(candidate):
            return DirectReference(url=candidate)
        raise
