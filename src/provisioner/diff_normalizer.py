"""Diff normalization for desired vs last-applied configuration.

The planner compares a declaration's resolved configuration with the one
recorded in the state snapshot. Plain equality reports spurious updates,
and for immutable fields spurious replacements, whenever the two differ
only in spelling.

Rules are scoped by resource kind and config path. Both accept globs:
``*`` stays inside one dotted segment, ``**`` spans any number of them.

Differences absorbed by the default rules:
1. Empty tags {} vs missing tags
2. String "true" vs boolean true
3. Region spelling ("East US" vs "eastus")
4. SKU name case ("b1" vs "B1")
5. Trailing slashes in repository URLs
6. Address prefix ordering
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """How a matched value is rewritten before comparison."""

    EMPTY_EQUIVALENCE = "empty_equivalence"  # [], {}, "" -> None
    BOOLEAN_NORMALIZE = "boolean_normalize"  # "True", "yes", 1 -> True
    NUMERIC_STRING = "numeric_string"  # "100" -> 100
    CASE_INSENSITIVE = "case_insensitive"  # "East US" -> "eastus"
    URL_NORMALIZE = "url_normalize"  # scheme case, trailing slash
    ARRAY_UNORDERED = "array_unordered"  # compare lists as sorted
    DEFAULT_VALUE = "default_value"  # missing -> params["default"]


@lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    parts = re.split(r"(\*\*|\*)", pattern.lower())
    regex = "".join(
        ".*" if part == "**" else "[^.]*" if part == "*" else re.escape(part) for part in parts
    )
    return re.compile(f"^{regex}$")


@dataclass(frozen=True)
class NormalizationRule:
    """One normalization applied to matching kinds and config paths.

    Attributes:
        kind: Resource kind glob, ``*`` for all kinds
        path_pattern: Dotted config path glob, ``*`` for every path
        normalization_type: Rewrite to apply
        params: Rewrite parameters (``default`` for DEFAULT_VALUE)
        reason: Why the difference is insignificant
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, kind: str, path: str) -> bool:
        if self.kind != "*" and not _compile_glob(self.kind).match(kind.lower()):
            return False
        return self.path_pattern == "*" or bool(
            _compile_glob(self.path_pattern).match(path.lower())
        )


def _rule(
    kind: str, path: str, normalization: NormalizationType, reason: str, **params: Any
) -> NormalizationRule:
    return NormalizationRule(kind, path, normalization, params, reason)


# Defaults for the kinds in the Azure catalog
DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    _rule("*", "tags", NormalizationType.EMPTY_EQUIVALENCE, "No tags is the same as {}"),
    _rule(
        "*", "**.dnsServers", NormalizationType.EMPTY_EQUIVALENCE, "No custom DNS means Azure DNS"
    ),
    _rule("*", "delegations", NormalizationType.EMPTY_EQUIVALENCE, "No subnet delegations"),
    _rule("*", "**.enabled", NormalizationType.BOOLEAN_NORMALIZE, "Flags written as strings"),
    _rule("*", "httpsOnly", NormalizationType.BOOLEAN_NORMALIZE, "Flag written as a string"),
    _rule("*", "reserved", NormalizationType.BOOLEAN_NORMALIZE, "Linux plan flag as a string"),
    _rule(
        "Microsoft.Consumption/budgets",
        "amount",
        NormalizationType.NUMERIC_STRING,
        "Budget amount written as a string",
    ),
    _rule("*", "sku.capacity", NormalizationType.NUMERIC_STRING, "Instance count as a string"),
    _rule("*", "location", NormalizationType.CASE_INSENSITIVE, "Region display vs short name"),
    _rule("*", "sku.name", NormalizationType.CASE_INSENSITIVE, "SKU names ignore case"),
    _rule("*", "sku.tier", NormalizationType.CASE_INSENSITIVE, "SKU tiers ignore case"),
    _rule(
        "*", "publicNetworkAccess", NormalizationType.CASE_INSENSITIVE, "Enabled/Disabled enum"
    ),
    _rule(
        "Microsoft.Web/sites/sourcecontrols",
        "repoUrl",
        NormalizationType.URL_NORMALIZE,
        "Trailing slash on the repository URL",
    ),
    _rule(
        "Microsoft.Network/privateDnsZones/virtualNetworkLinks",
        "registrationEnabled",
        NormalizationType.DEFAULT_VALUE,
        "Auto-registration is off unless requested",
        default=False,
    ),
    _rule(
        "Microsoft.Web/sites",
        "httpsOnly",
        NormalizationType.DEFAULT_VALUE,
        "Web apps accept plain HTTP unless requested",
        default=False,
    ),
    _rule(
        "Microsoft.Network/virtualNetworks",
        "addressSpace.addressPrefixes",
        NormalizationType.ARRAY_UNORDERED,
        "Address prefixes form a set",
    ),
    _rule("*", "**.contactEmails", NormalizationType.ARRAY_UNORDERED, "Recipients form a set"),
]


# =============================================================================
# Value rewrites
# =============================================================================

_TRUE_STRINGS = frozenset({"true", "yes", "on", "1"})
_FALSE_STRINGS = frozenset({"false", "no", "off", "0"})


def _empty_to_none(value: Any, params: dict[str, Any]) -> Any:
    return None if value in ("", [], {}) else value


def _to_bool(value: Any, params: dict[str, Any]) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    elif type(value) is int and value in (0, 1):
        return bool(value)
    return value


def _to_number(value: Any, params: dict[str, Any]) -> Any:
    if not isinstance(value, str):
        return value
    for parse in (int, float):
        try:
            return parse(value)
        except ValueError:
            continue
    return value


def _fold_case(value: Any, params: dict[str, Any]) -> Any:
    return value.lower().replace(" ", "") if isinstance(value, str) else value


def _canonical_url(value: Any, params: dict[str, Any]) -> Any:
    if not isinstance(value, str) or "://" not in value:
        return value
    scheme, rest = value.split("://", 1)
    if scheme.lower() not in ("http", "https"):
        return value
    return f"{scheme.lower()}://{rest.rstrip('/')}"


def _sorted_list(value: Any, params: dict[str, Any]) -> Any:
    return sorted(value, key=str) if isinstance(value, list) else value


def _fill_default(value: Any, params: dict[str, Any]) -> Any:
    return params.get("default") if value is None else value


_REWRITES: dict[NormalizationType, Callable[[Any, dict[str, Any]], Any]] = {
    NormalizationType.EMPTY_EQUIVALENCE: _empty_to_none,
    NormalizationType.BOOLEAN_NORMALIZE: _to_bool,
    NormalizationType.NUMERIC_STRING: _to_number,
    NormalizationType.CASE_INSENSITIVE: _fold_case,
    NormalizationType.URL_NORMALIZE: _canonical_url,
    NormalizationType.ARRAY_UNORDERED: _sorted_list,
    NormalizationType.DEFAULT_VALUE: _fill_default,
}


@dataclass(frozen=True)
class FieldChange:
    """A top-level configuration field whose value differs.

    ``before``/``after`` hold the raw (un-normalized) values; None stands
    for "absent".
    """

    field: str
    before: Any
    after: Any


class DiffNormalizer:
    """Compares configurations while ignoring purely syntactic differences."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        defaults = DEFAULT_NORMALIZATION_RULES if enable_default_rules else []
        self._rules = [*defaults, *(rules or [])]

    def normalize_value(self, value: Any, kind: str, path: str) -> Any:
        """Rewrite ``value`` and its children into a comparable form."""
        if isinstance(value, dict):
            children = (
                (key, self.normalize_value(child, kind, f"{path}.{key}" if path else key))
                for key, child in value.items()
            )
            # A child that normalizes to None counts as absent
            value = {key: child for key, child in children if child is not None}
        elif isinstance(value, list):
            value = [self.normalize_value(item, kind, path) for item in value]

        for rule in self._rules:
            if rule.matches(kind, path):
                value = _REWRITES[rule.normalization_type](value, rule.params)
        return value

    def are_equivalent(self, before: Any, after: Any, kind: str, path: str) -> bool:
        return self.normalize_value(before, kind, path) == self.normalize_value(after, kind, path)

    def diff(
        self,
        kind: str,
        before: dict[str, Any],
        after: dict[str, Any],
        skip_fields: set[str] | None = None,
    ) -> list[FieldChange]:
        """Compare two configurations field by field.

        Args:
            kind: Resource kind, used to select rules.
            before: Last-applied configuration.
            after: Desired configuration.
            skip_fields: Fields whose desired value is not known yet.

        Returns:
            Changed top-level fields, desired fields first and removed ones last.
        """
        skip_fields = skip_fields or set()
        keys = [*after, *(k for k in before if k not in after)]

        changes = [
            FieldChange(field=key, before=before.get(key), after=after.get(key))
            for key in keys
            if key not in skip_fields
            and not self.are_equivalent(before.get(key), after.get(key), kind, key)
        ]

        if changes:
            logger.debug(
                "Configuration differs",
                extra={"kind": kind, "fields": [c.field for c in changes]},
            )
        return changes


@dataclass
class NormalizationConfig:
    """Normalizer settings read from the environment.

    Attributes:
        rules: Rules added on top of the defaults.
        enable_default_rules: Whether DEFAULT_NORMALIZATION_RULES apply.
    """

    rules: list[NormalizationRule] = field(default_factory=list)
    enable_default_rules: bool = True

    @classmethod
    def from_env(cls) -> NormalizationConfig:
        """Read ENABLE_DEFAULT_NORMALIZATION_RULES ("false", "0" or "no" disables)."""
        flag = os.environ.get("ENABLE_DEFAULT_NORMALIZATION_RULES", "").strip().lower()
        return cls(enable_default_rules=flag not in ("false", "0", "no"))


def create_normalizer_from_env() -> DiffNormalizer:
    config = NormalizationConfig.from_env()
    return DiffNormalizer(rules=config.rules, enable_default_rules=config.enable_default_rules)
