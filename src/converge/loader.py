"""Declaration file loading with validation.

The front end that evaluates expressions lives elsewhere; this loader reads
an already-resolved document. References are written as
``{ref: <type>.<name>, output: <key>}`` mappings.

Example:
```yaml
resources:
  - type: bucket
    name: site
    attributes:
      bucket: www.example.com
  - type: bucket_policy
    name: site
    attributes:
      bucket: {ref: bucket.site, output: id}
```

SECURITY: File size is checked before reading and YAML is parsed with
``safe_load`` only.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DECLARATION_FILE_SIZE_BYTES
from .models import ResourceNode

logger = logging.getLogger(__name__)


class DeclarationLoadError(Exception):
    """Raised when declaration loading or validation fails."""

    pass


def parse_declarations(data: Any, source: str = "<memory>") -> list[ResourceNode]:
    """Validate a parsed document into resource declarations.

    Raises:
        DeclarationLoadError: If the document shape or any resource is invalid.
    """
    if not isinstance(data, dict) or "resources" not in data:
        raise DeclarationLoadError(f"{source}: expected a mapping with a 'resources' list")

    raw_resources = data["resources"] or []
    if not isinstance(raw_resources, list):
        raise DeclarationLoadError(f"{source}: 'resources' must be a list")

    nodes: list[ResourceNode] = []
    for index, raw in enumerate(raw_resources):
        try:
            nodes.append(ResourceNode.model_validate(raw))
        except ValidationError as e:
            raise DeclarationLoadError(f"{source}: resource #{index} is invalid:\n{e}") from e
    return nodes


def load_declarations(path: Path) -> list[ResourceNode]:
    """Load and validate resource declarations from YAML.

    Args:
        path: Declaration file.

    Returns:
        Resource declarations in file order.

    Raises:
        DeclarationLoadError: If the file cannot be loaded or fails validation.
    """
    if not path.exists():
        raise DeclarationLoadError(f"Declaration file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise DeclarationLoadError(f"Cannot stat declaration file {path}: {e}") from e

    if file_size > MAX_DECLARATION_FILE_SIZE_BYTES:
        raise DeclarationLoadError(
            f"Declaration file {path} exceeds maximum size "
            f"({file_size} > {MAX_DECLARATION_FILE_SIZE_BYTES} bytes)"
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DeclarationLoadError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise DeclarationLoadError(f"Cannot read declaration file {path}: {e}") from e

    nodes = parse_declarations(data, source=str(path))
    logger.info(
        "Declarations loaded",
        extra={"path": str(path), "resource_count": len(nodes)},
    )
    return nodes
