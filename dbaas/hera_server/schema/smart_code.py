"""
Smart code parsing and validation.

A smart code is the semantic tag attached to every entity, relationship,
transaction, line and dynamic field:

    HERA.SALON.POS.SALE.TXN.RETAIL.v1
    ^    ^     ^              ^     ^
    |    |     family segments      version
    |    domain
    prefix

Invariants:
    - validate() never raises; it returns a SmartCodeValidation
    - Segments are uppercase alphanumerics or underscore
    - The version suffix is a literal lowercase 'v' followed by a positive integer
    - At least two segments follow the prefix (domain + one family segment)

How to change safely:
    - New domains are added to the registry, never to the grammar
    - Loosening the grammar must keep every previously valid code valid
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

HERA_PREFIX = "HERA"

# Domains observed across the existing tenant data
DEFAULT_DOMAINS: frozenset[str] = frozenset(
    {
        "ACCOUNTING",
        "AUTO",
        "BEAU",
        "CRM",
        "EDU",
        "FIN",
        "FINANCE",
        "GL",
        "HCM",
        "HLTH",
        "HR",
        "ICE",
        "INVENTORY",
        "JEWELRY",
        "MFG",
        "O2C",
        "ORG",
        "PLATFORM",
        "PROC",
        "PROF",
        "PURCHASE",
        "REL",
        "REST",
        "RETAIL",
        "SALES",
        "SALON",
        "SVC",
        "TAX",
        "TXN",
        "UNIV",
        "UNIVERSAL",
    }
)

_SEGMENT = re.compile(r"^[A-Z0-9_]+$")
_VERSION = re.compile(r"^v([1-9][0-9]*)$")

MIN_SEGMENTS = 2


@dataclass(frozen=True)
class SmartCodeValidation:
    """Result of validating a smart code string."""

    valid: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.valid


@dataclass(frozen=True)
class SmartCode:
    """Parsed, validated smart code.

    Attributes:
        prefix: Leading namespace segment (HERA in strict mode)
        segments: Segments between prefix and version, domain first
        version: Integer version from the ``v<N>`` suffix
    """

    prefix: str
    segments: tuple[str, ...]
    version: int

    @classmethod
    def parse(cls, code: str, strict: bool = True) -> SmartCode:
        """Parse a smart code string.

        Raises:
            ValueError: If the code does not follow the grammar
        """
        result, parsed = _parse(code, strict)
        if parsed is None:
            raise ValueError(result.reason)
        return parsed

    @property
    def domain(self) -> str:
        return self.segments[0]

    @property
    def family(self) -> tuple[str, ...]:
        return self.segments[1:]

    @property
    def is_gl(self) -> bool:
        """Whether the code denotes a general-ledger posting."""
        return "GL" in self.segments

    def __str__(self) -> str:
        return ".".join((self.prefix, *self.segments, f"v{self.version}"))


@dataclass(frozen=True)
class SmartCodeClass:
    """Classification used for business-rule dispatch and reporting."""

    domain: str
    family: tuple[str, ...]
    version: int
    is_gl: bool


class SmartCodeRegistry:
    """Registry of known smart code domains.

    Example:
        >>> registry = SmartCodeRegistry()
        >>> registry.register("JEWELRY")
        >>> validate("HERA.JEWELRY.ITEM.RING.v1", registry=registry).valid
        True
    """

    def __init__(self, domains: Iterable[str] | None = None) -> None:
        self._domains = set(DEFAULT_DOMAINS if domains is None else domains)

    def register(self, domain: str) -> None:
        if not _SEGMENT.match(domain):
            raise ValueError(f"Invalid smart code domain: {domain!r}")
        self._domains.add(domain)

    def is_known(self, domain: str) -> bool:
        return domain in self._domains

    @property
    def domains(self) -> frozenset[str]:
        return frozenset(self._domains)


def _parse(code: object, strict: bool) -> tuple[SmartCodeValidation, SmartCode | None]:
    if not isinstance(code, str) or not code.strip():
        return SmartCodeValidation(False, "smart code is empty"), None

    parts = code.split(".")
    match = _VERSION.match(parts[-1])
    if match is None:
        return SmartCodeValidation(False, f"missing version suffix (.v<N>) in {code!r}"), None

    prefix, segments = parts[0], tuple(parts[1:-1])
    if strict and prefix != HERA_PREFIX:
        return SmartCodeValidation(False, f"smart code must start with {HERA_PREFIX}."), None
    if not _SEGMENT.match(prefix) or not prefix[0].isalpha():
        return SmartCodeValidation(False, f"invalid prefix {prefix!r}"), None
    if len(segments) < MIN_SEGMENTS:
        return (
            SmartCodeValidation(False, f"expected at least {MIN_SEGMENTS} segments before version"),
            None,
        )
    for segment in segments:
        if not _SEGMENT.match(segment):
            return SmartCodeValidation(False, f"invalid segment {segment!r}"), None
    if not segments[0][0].isalpha():
        return SmartCodeValidation(False, f"domain {segments[0]!r} must start with a letter"), None

    return SmartCodeValidation(True), SmartCode(prefix, segments, int(match.group(1)))


def validate(
    code: object,
    strict: bool = True,
    registry: SmartCodeRegistry | None = None,
) -> SmartCodeValidation:
    """Validate a smart code without raising.

    Args:
        code: Candidate smart code
        strict: Require the HERA prefix
        registry: Optional registry of known domains

    Returns:
        SmartCodeValidation with the first failure reason, if any
    """
    result, parsed = _parse(code, strict)
    if parsed is None:
        return result
    if registry is not None and not registry.is_known(parsed.domain):
        return SmartCodeValidation(False, f"unknown smart code domain {parsed.domain!r}")
    return result


def classify(code: str, strict: bool = True) -> SmartCodeClass:
    """Classify a smart code.

    Raises:
        ValueError: If the code is invalid
    """
    parsed = SmartCode.parse(code, strict=strict)
    return SmartCodeClass(
        domain=parsed.domain,
        family=parsed.family,
        version=parsed.version,
        is_gl=parsed.is_gl,
    )
