"""
Document loader - reads JSON/YAML traceability documents and normalizes them.

Three input shapes reduce to the same nested tree before validation:

- nested ``children`` lists
- nested ``scopes`` -> ``user_stories`` -> ``tech_specs`` lists
- a flat list whose entries point at their parent via ``parent_key`` / ``parent_id``
"""

import json
from pathlib import Path
from typing import Any, Literal, Mapping, Optional, Union

import yaml
from pydantic import ValidationError

from tracematrix.core.constants import JSON_EXTENSIONS, YAML_EXTENSIONS, RequirementType
from tracematrix.core.exceptions import (
    DocumentShapeError,
    InvalidRequirementTypeError,
    ReferentialIntegrityError,
)
from tracematrix.core.logging import get_logger
from tracematrix.models.document import RTMDocument

logger = get_logger(__name__)

DocumentFormat = Literal["json", "yaml"]

_KEY_FIELDS = ("key", "id", "requirement_key")
_PARENT_FIELDS = ("parent_key", "parent_id")
_NESTED_CHILD_FIELDS = (
    ("children", None),
    ("user_stories", RequirementType.USER_STORY),
    ("tech_specs", RequirementType.TECH_SPEC),
)


def _raw_key(item: Mapping[str, Any]) -> Optional[str]:
    for field in _KEY_FIELDS:
        if item.get(field) is not None:
            return str(item[field])
    return None


def _raw_parent(item: Mapping[str, Any]) -> Optional[str]:
    for field in _PARENT_FIELDS:
        if item.get(field) is not None:
            return str(item[field])
    return None


# =============================================================================
# Requirement shapes
# =============================================================================


def _unflatten(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Rebuild a nested forest from entries linked by parent key."""
    by_key: dict[str, dict[str, Any]] = {}
    parent_of: dict[str, Optional[str]] = {}
    order: list[str] = []
    for item in items:
        key = _raw_key(item)
        if key is None:
            raise DocumentShapeError("Requirement without a key in flat document")
        if key in by_key:
            raise DocumentShapeError(f"Duplicate requirement key '{key}'", entity_key=key)
        node = {k: v for k, v in item.items() if k not in _PARENT_FIELDS}
        node["children"] = list(node.get("children") or [])
        by_key[key] = node
        parent_of[key] = _raw_parent(item)
        order.append(key)

    for key in order:
        parent = parent_of[key]
        if parent is not None and parent not in by_key:
            raise ReferentialIntegrityError(
                f"Requirement '{key}' references unknown parent '{parent}'",
                entity_key=key,
                stage="parse",
                reference=parent,
            )
        seen = {key}
        while parent is not None:
            if parent in seen:
                raise DocumentShapeError(f"Parent cycle through '{parent}'", entity_key=key)
            seen.add(parent)
            parent = parent_of[parent]

    roots = []
    for key in order:
        parent = parent_of[key]
        if parent is None:
            roots.append(by_key[key])
        else:
            by_key[parent]["children"].append(by_key[key])
    return roots


def _normalize_node(
    raw: Any,
    default_type: Optional[RequirementType],
) -> Any:
    if not isinstance(raw, Mapping):
        # Left for validation to report with its location
        return raw

    node = dict(raw)
    raw_type = node.get("type", node.get("requirement_type"))
    node.pop("requirement_type", None)
    if raw_type is not None:
        try:
            requirement_type = RequirementType.parse(raw_type)
        except ValueError:
            error = InvalidRequirementTypeError(str(raw_type))
            error.details["entity_key"] = _raw_key(node)
            raise error from None
    else:
        requirement_type = default_type
    if requirement_type is not None:
        node["type"] = requirement_type.value

    children: list[Any] = []
    child_default = requirement_type.child_type if requirement_type else None
    for field, field_type in _NESTED_CHILD_FIELDS:
        nested = node.pop(field, None)
        if not nested:
            continue
        if not isinstance(nested, list):
            raise DocumentShapeError(
                f"'{field}' must be a list",
                entity_key=_raw_key(node),
            )
        children.extend(_normalize_node(child, field_type or child_default) for child in nested)
    if children:
        node["children"] = children
    return node


def normalize_requirements(
    items: Any,
    default_type: RequirementType = RequirementType.SCOPE,
) -> list[Any]:
    """Normalize any accepted requirement shape to a nested ``children`` forest.

    Type tags are upper-cased; a node without a type takes the only legal
    type for its position (``default_type`` for roots).

    Raises:
        DocumentShapeError: Not a list, duplicate keys or a parent cycle.
        InvalidRequirementTypeError: Unknown type tag.
        ReferentialIntegrityError: A flat entry names a parent that is not in the list.
    """
    if items is None:
        return []
    if not isinstance(items, list):
        raise DocumentShapeError("'requirements' must be a list")

    entries = [item for item in items if isinstance(item, Mapping)]
    if any(_raw_parent(item) is not None for item in entries):
        if len(entries) != len(items):
            raise DocumentShapeError("Flat requirement lists may only contain mappings")
        items = _unflatten([dict(item) for item in entries])

    return [_normalize_node(item, default_type) for item in items]


# =============================================================================
# Documents
# =============================================================================


def _locate_entity(data: Any, loc: tuple) -> Optional[str]:
    """Key of the innermost requirement/component on a validation error path."""
    entity_key = None
    current = data
    for part in loc:
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and isinstance(part, int) and part < len(current):
            current = current[part]
        else:
            # Union tag segments have no counterpart in the raw data
            continue
        if isinstance(current, Mapping):
            entity_key = _raw_key(current) or entity_key
    return entity_key


def _resolve_project(data: Mapping[str, Any], project_key_override: Optional[str]) -> Any:
    project = data.get("project")
    metadata = data.get("metadata")
    meta_project = metadata.get("project") if isinstance(metadata, Mapping) else None

    has_meta_key = (
        isinstance(meta_project, str)
        or isinstance(meta_project, Mapping)
        and (_raw_key(meta_project) or meta_project.get("project_key")) is not None
    )
    if has_meta_key:
        if isinstance(project, Mapping) and isinstance(meta_project, Mapping):
            project = {
                **{k: v for k, v in project.items() if k not in _KEY_FIELDS + ("project_key",)},
                **meta_project,
            }
        else:
            project = meta_project

    if project_key_override:
        if isinstance(project, Mapping):
            project = {k: v for k, v in project.items() if k not in _KEY_FIELDS + ("project_key",)}
            project["key"] = project_key_override
        else:
            project = {"key": project_key_override}

    if project is None:
        raise DocumentShapeError("Document has no project")
    return project


def parse_document(
    data: Any,
    project_key_override: Optional[str] = None,
) -> RTMDocument:
    """Normalize and validate a decoded document.

    Args:
        data: Decoded JSON/YAML mapping
        project_key_override: Project key that replaces the document's own

    Returns:
        Validated document

    Raises:
        DocumentShapeError: The document is malformed
        ReferentialIntegrityError: A flat entry references an unknown parent
    """
    if not isinstance(data, Mapping):
        raise DocumentShapeError("Document must be a mapping")

    payload = dict(data)
    if isinstance(payload.get("metadata"), Mapping):
        payload["metadata"] = {
            k: v for k, v in payload["metadata"].items() if k != "project"
        }
    payload["project"] = _resolve_project(data, project_key_override)

    if payload.get("requirements") is None and payload.get("scopes") is not None:
        payload["requirements"] = payload.pop("scopes")
    payload["requirements"] = normalize_requirements(payload.get("requirements"))

    try:
        document = RTMDocument.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        entity_key = _locate_entity(payload, tuple(first["loc"]))
        raise DocumentShapeError(
            f"Invalid document: {first['msg']}",
            entity_key=entity_key,
            errors=[
                {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                for err in e.errors()
            ],
        ) from e

    logger.debug(
        "Document parsed",
        project_key=document.project.key,
        components=len(document.components),
        requirements=sum(1 for _ in document.iter_nodes()),
    )
    return document


def load_document(
    path: Union[str, Path],
    project_key_override: Optional[str] = None,
) -> RTMDocument:
    """Read a ``.json``, ``.yaml`` or ``.yml`` document from disk."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in JSON_EXTENSIONS | YAML_EXTENSIONS:
        raise DocumentShapeError(f"Unsupported document format: '{path.suffix}'")

    try:
        with open(path, "r", encoding="utf-8") as f:
            if suffix in JSON_EXTENSIONS:
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except OSError as e:
        raise DocumentShapeError(f"Cannot read {path}: {e.strerror or e}") from e
    except (UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise DocumentShapeError(f"Failed to decode {path.name}: {e}") from e

    logger.info("Loaded document", path=str(path))
    return parse_document(data, project_key_override)


def dump_document(document: RTMDocument, fmt: DocumentFormat = "json") -> str:
    """Serialize a document in a form ``parse_document`` accepts."""
    payload = document.model_dump(mode="json", exclude_none=True)
    if fmt == "json":
        return json.dumps(payload, indent=2, ensure_ascii=False)
    if fmt == "yaml":
        return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unsupported document format: {fmt}")


def write_document(
    document: RTMDocument,
    path: Union[str, Path],
    fmt: Optional[DocumentFormat] = None,
) -> Path:
    """Write a document, picking the format from the file extension unless given."""
    path = Path(path)
    if fmt is None:
        fmt = "yaml" if path.suffix.lower() in YAML_EXTENSIONS else "json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_document(document, fmt), encoding="utf-8")
    logger.info("Wrote document", path=str(path), format=fmt)
    return path
