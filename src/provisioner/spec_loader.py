"""Stack file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_STACK_FILE_SIZE_BYTES
from .models import StackSpec

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when stack loading or validation fails."""

    pass


def _read_yaml(path: Path) -> Any:
    if not path.exists():
        raise SpecLoadError(f"Stack file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat stack file {path}: {e}") from e

    if file_size > MAX_STACK_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Stack file exceeds maximum size of {MAX_STACK_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read stack file {path}: {e}") from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e


def parse_stack(raw_data: Any, source: str = "<stack>") -> StackSpec:
    """Validate already-parsed YAML data as a stack.

    Both a flat document and a Kubernetes-style wrapper
    (``apiVersion``/``kind``/``metadata``/``spec``) are accepted; in the
    wrapped form ``metadata.name`` provides the stack name when ``spec``
    has none.

    Raises:
        SpecLoadError: If the data is not a valid stack.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Stack file must contain a YAML mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        stack_data = raw_data.get("spec") or {}
        if not isinstance(stack_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
        metadata = raw_data.get("metadata") or {}
        if "name" not in stack_data and isinstance(metadata, dict) and "name" in metadata:
            stack_data = {"name": metadata["name"], **stack_data}
    else:
        stack_data = raw_data

    try:
        stack = StackSpec.model_validate(stack_data)
        # Resource names are validated on the declarations
        stack.to_declarations()
        return stack
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_stack(path: Path) -> StackSpec:
    """Load and validate a stack from YAML.

    Args:
        path: Stack file path.

    Returns:
        Validated stack.

    Raises:
        SpecLoadError: If the stack cannot be loaded or fails validation.
    """
    path = Path(path)
    stack = parse_stack(_read_yaml(path), source=str(path))
    logger.info(
        "Loaded stack '%s' from %s",
        stack.name,
        path,
        extra={"resource_count": len(stack.resources)},
    )
    return stack
