"""
Mirror field mapping loader.

Loads the Shopify -> Contentful field mapping from config/mirror_fields.yml
(or MIRROR_FIELDS_PATH) and applies it to product snapshots.

Usage:
    from catalog_sync.config.mirror_fields import MirrorFieldMapping

    mapping = MirrorFieldMapping.from_yaml()
    fields = mapping.transform({"id": "p1", "title": "Shirt"})  # {"title": "Shirt"}
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

_DEFAULT_PATH = Path(__file__).with_name("mirror_fields.yml")

# Used if the YAML file is missing or unreadable
_FALLBACK_FIELDS = {
    "title": "title",
    "description": "description",
}


def _resolve_path(source: Dict[str, Any], path: str) -> Any:
    value: Any = source
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
        if value is None:
            return None
    return value


class MirrorFieldMapping:
    """Maps an upstream product snapshot onto mirror fields."""

    def __init__(self, fields: Dict[str, str]):
        self.fields = dict(fields)

    @classmethod
    def from_yaml(cls, config_path: Optional[str] = None) -> "MirrorFieldMapping":
        path = Path(config_path) if config_path else _DEFAULT_PATH
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Mirror field mapping not loaded, using fallback", extra={
                "path": str(path), "error": str(e),
            })
            return cls(_FALLBACK_FIELDS)

        fields = raw.get("fields") or {}
        if not isinstance(fields, dict) or not fields:
            logger.warning("Mirror field mapping is empty, using fallback", extra={
                "path": str(path),
            })
            return cls(_FALLBACK_FIELDS)

        return cls({str(k): str(v) for k, v in fields.items()})

    def transform(self, entity: Dict[str, Any]) -> Dict[str, Any]:
        """Project the entity onto mirror fields, skipping absent values."""
        result: Dict[str, Any] = {}
        for target, source_path in self.fields.items():
            value = _resolve_path(entity, source_path)
            if value is not None:
                result[target] = value
        return result

