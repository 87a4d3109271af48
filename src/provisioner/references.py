"""References between declarations and their resolution.

A declaration's configuration values may be plain literals or may point at
something that is only known later:

- ``${vnet.name}`` -> ResourceReference: an output attribute of another
  resource, known once that resource has been provisioned.
- ``${config.location}`` -> ConfigReference: a deployment setting, known
  when the graph is built.
- ``https://${language.name}.cognitiveservices.azure.com/`` ->
  Interpolation: literal text mixed with references.

Values nest arbitrarily inside lists and dicts. Resolution walks the value
and substitutes whatever the lookup can answer; anything it cannot answer
becomes UNKNOWN so that callers can tell "not known yet" apart from None.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any

# Reserved reference root for deployment settings
CONFIG_ROOT = "config"

REFERENCE_PATTERN = re.compile(
    r"\$\{([A-Za-z][A-Za-z0-9_-]*)\.([A-Za-z0-9_-]+(?:\.[A-Za-z0-9_-]+)*)\}"
)


class _Unknown:
    """Placeholder for a value that cannot be resolved yet."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<unknown>"

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class ResourceReference:
    """Pointer to an output attribute of another declared resource.

    Attributes:
        resource: Logical name of the referenced resource.
        attribute: Output attribute; dotted paths walk nested outputs
            (e.g. ``keys.key1``).
    """

    resource: str
    attribute: str

    def __str__(self) -> str:
        return f"${{{self.resource}.{self.attribute}}}"


@dataclass(frozen=True)
class ConfigReference:
    """Pointer to a deployment setting or stack variable."""

    key: str

    def __str__(self) -> str:
        return f"${{{CONFIG_ROOT}.{self.key}}}"


@dataclass(frozen=True)
class Interpolation:
    """A string assembled from literal text and references."""

    parts: tuple[str | ResourceReference | ConfigReference, ...]

    def __str__(self) -> str:
        return "".join(str(p) for p in self.parts)


Reference = ResourceReference | ConfigReference


def _make_reference(root: str, attribute: str) -> Reference:
    if root == CONFIG_ROOT:
        return ConfigReference(attribute)
    return ResourceReference(root, attribute)


def parse_string(value: str) -> Any:
    """Parse ``${...}`` placeholders in a string.

    Returns the string itself when it has no placeholders, a bare reference
    when the whole string is one placeholder, and an Interpolation otherwise.
    """
    matches = list(REFERENCE_PATTERN.finditer(value))
    if not matches:
        return value

    if len(matches) == 1 and matches[0].span() == (0, len(value)):
        return _make_reference(matches[0].group(1), matches[0].group(2))

    parts: list[str | ResourceReference | ConfigReference] = []
    position = 0
    for match in matches:
        if match.start() > position:
            parts.append(value[position : match.start()])
        parts.append(_make_reference(match.group(1), match.group(2)))
        position = match.end()
    if position < len(value):
        parts.append(value[position:])
    return Interpolation(tuple(parts))


def parse_value(value: Any) -> Any:
    """Recursively turn ``${...}`` strings into reference objects."""
    if isinstance(value, str):
        return parse_string(value)
    if isinstance(value, list):
        return [parse_value(v) for v in value]
    if isinstance(value, dict):
        return {k: parse_value(v) for k, v in value.items()}
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference contained in a value, in document order."""
    if isinstance(value, ResourceReference | ConfigReference):
        yield value
    elif isinstance(value, Interpolation):
        for part in value.parts:
            if not isinstance(part, str):
                yield part
    elif isinstance(value, list):
        for item in value:
            yield from iter_references(item)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)


def iter_resource_references(value: Any) -> Iterator[ResourceReference]:
    """Yield only the resource references contained in a value."""
    for ref in iter_references(value):
        if isinstance(ref, ResourceReference):
            yield ref


def contains_unknown(value: Any) -> bool:
    """Check whether a resolved value still has UNKNOWN anywhere inside it."""
    if value is UNKNOWN:
        return True
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    return False


def lookup_path(data: Any, path: str) -> tuple[bool, Any]:
    """Walk a dotted path through nested dicts.

    Returns:
        Tuple of (found, value).
    """
    current = data
    for segment in path.split("."):
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        else:
            return False, None
    return True, current


def resolve_value(value: Any, lookup: Callable[[Reference], tuple[bool, Any]]) -> Any:
    """Substitute references using ``lookup``.

    Args:
        value: Declared value, possibly containing references.
        lookup: Returns (found, resolved) for a reference.

    Returns:
        The value with every answerable reference substituted and every
        unanswerable one replaced by UNKNOWN.
    """
    if isinstance(value, ResourceReference | ConfigReference):
        found, resolved = lookup(value)
        return resolved if found else UNKNOWN

    if isinstance(value, Interpolation):
        pieces: list[str] = []
        for part in value.parts:
            if isinstance(part, str):
                pieces.append(part)
                continue
            found, resolved = lookup(part)
            if not found:
                return UNKNOWN
            pieces.append(str(resolved))
        return "".join(pieces)

    if isinstance(value, list):
        return [resolve_value(v, lookup) for v in value]

    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}

    return value


def resolve_config_references(value: Any, lookup: Callable[[str], tuple[bool, Any]]) -> Any:
    """Substitute only ConfigReferences, leaving resource references intact.

    Raises:
        KeyError: With the missing key when a setting does not exist.
    """
    if isinstance(value, ConfigReference):
        found, resolved = lookup(value.key)
        if not found:
            raise KeyError(value.key)
        return resolved

    if isinstance(value, Interpolation):
        parts: list[str | ResourceReference | ConfigReference] = []
        for part in value.parts:
            if isinstance(part, ConfigReference):
                found, resolved = lookup(part.key)
                if not found:
                    raise KeyError(part.key)
                part = str(resolved)
            if isinstance(part, str) and parts and isinstance(parts[-1], str):
                parts[-1] = parts[-1] + part
            else:
                parts.append(part)
        if all(isinstance(p, str) for p in parts):
            return "".join(parts)  # type: ignore[arg-type]
        return Interpolation(tuple(parts))

    if isinstance(value, list):
        return [resolve_config_references(v, lookup) for v in value]

    if isinstance(value, dict):
        return {k: resolve_config_references(v, lookup) for k, v in value.items()}

    return value


def render_value(value: Any) -> Any:
    """Convert references back to their ``${...}`` text for display or JSON."""
    if isinstance(value, ResourceReference | ConfigReference | Interpolation):
        return str(value)
    if value is UNKNOWN:
        return "(known after apply)"
    if isinstance(value, list):
        return [render_value(v) for v in value]
    if isinstance(value, dict):
        return {k: render_value(v) for k, v in value.items()}
    return value


SENSITIVE = "(sensitive value)"


def mask_value(value: Any) -> Any:
    """Hide a secret for display; an absent value stays absent."""
    return None if value is None else SENSITIVE


def redact_fields(values: dict[str, Any], sensitive: Iterable[str]) -> dict[str, Any]:
    """Copy of ``values`` with the named top-level fields masked."""
    hidden = set(sensitive)
    return {k: mask_value(v) if k in hidden else v for k, v in values.items()}
