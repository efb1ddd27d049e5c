"""
Exporter - rebuilds the requirement hierarchy from the relational store.

The exported document has the same shape the reconciler accepts, so
re-importing it in update mode leaves the store unchanged.
"""

from __future__ import annotations

import re
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tracematrix.core.constants import EXPORT_GENERATED_BY, RequirementType
from tracematrix.core.exceptions import ProjectNotFoundError
from tracematrix.core.logging import LogContext, get_logger
from tracematrix.database.config import get_async_session
from tracematrix.database.models import (
    ApiEndpointDB,
    ComponentDB,
    ImplementationDB,
    ImplementationLayerDB,
    ProjectDB,
    RequirementDB,
    utcnow,
)
from tracematrix.models.document import RTMDocument
from tracematrix.repositories.rtm_repo import ComponentSummary, CoverageRow, RTMRepository
from tracematrix.services.document_loader import DocumentFormat, write_document

logger = get_logger(__name__)

DEFAULT_TEST_LAYER = "default"

_DIGITS = re.compile(r"(\d+)")


def natural_sort_key(key: str) -> tuple:
    """Sort key ordering ``SCOPE-2`` before ``SCOPE-10``."""
    return tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in _DIGITS.split(key)
        if part
    )


def _implementation_block(
    rows: Sequence[ImplementationDB],
    layer_rows: Sequence[ImplementationLayerDB] = (),
) -> dict[str, Any]:
    layers: dict[str, dict[str, Any]] = {}
    for row in rows:
        layers.setdefault(row.layer, {"files": []})["files"].append(
            {"path": row.file_path, "functions": list(row.functions or [])}
        )
    for row in layer_rows:
        block = layers.setdefault(row.layer, {"files": []})
        if row.api_calls:
            block["api_calls"] = list(row.api_calls)
        if row.tables:
            block["tables"] = list(row.tables)
    return layers


def _tests_block(rows: Sequence[CoverageRow]) -> dict[str, Any]:
    layers: dict[str, dict[str, dict[str, Any]]] = {}
    for row in rows:
        files = layers.setdefault(row.layer or DEFAULT_TEST_LAYER, {})
        reference = files.setdefault(
            row.file_path,
            {"file": row.file_path, "functions": [], "type": row.test_type},
        )
        reference["functions"].append(row.test_name)
    return {layer: list(files.values()) for layer, files in layers.items()}


def build_document(
    project: ProjectDB,
    components: Sequence[ComponentDB],
    nodes: Sequence[RequirementDB],
    implementations: Sequence[ImplementationDB],
    coverage: Sequence[CoverageRow],
    generated_at: Optional[datetime] = None,
    layer_details: Sequence[ImplementationLayerDB] = (),
    api_endpoints: Sequence[ApiEndpointDB] = (),
) -> RTMDocument:
    """Assemble a document from the flat rows of one project."""
    component_keys = {component.id: component.component_key for component in components}
    component_order = {component.id: index for index, component in enumerate(components)}
    node_ids = {node.id for node in nodes}

    implementations_by_node: dict[str, list[ImplementationDB]] = defaultdict(list)
    for implementation in implementations:
        implementations_by_node[implementation.requirement_id].append(implementation)

    layers_by_node: dict[str, list[ImplementationLayerDB]] = defaultdict(list)
    for layer_row in layer_details:
        layers_by_node[layer_row.requirement_id].append(layer_row)

    coverage_by_node: dict[str, list[CoverageRow]] = defaultdict(list)
    for row in coverage:
        coverage_by_node[row.requirement_id].append(row)

    children_by_parent: dict[str, list[RequirementDB]] = defaultdict(list)
    roots: list[RequirementDB] = []
    for node in nodes:
        if node.parent_requirement_id is None or node.parent_requirement_id not in node_ids:
            roots.append(node)
        else:
            children_by_parent[node.parent_requirement_id].append(node)

    def assemble(node: RequirementDB) -> dict[str, Any]:
        requirement_type = RequirementType(node.requirement_type)
        data: dict[str, Any] = {
            "key": node.requirement_key,
            "type": requirement_type.value,
            "component_key": component_keys.get(node.component_id),
            "title": node.title,
            "description": node.description,
            "category": node.category,
            "priority": node.priority,
            "status": node.status,
            "acceptance_criteria": list(node.acceptance_criteria or []),
        }
        if implementations_by_node.get(node.id) or layers_by_node.get(node.id):
            data["implementation"] = _implementation_block(
                implementations_by_node.get(node.id, []),
                layers_by_node.get(node.id, []),
            )
        if coverage_by_node.get(node.id):
            data["tests"] = _tests_block(coverage_by_node[node.id])
        if requirement_type.child_type is not None:
            children = sorted(
                children_by_parent.get(node.id, []),
                key=lambda child: natural_sort_key(child.requirement_key),
            )
            data["children"] = [assemble(child) for child in children]
        return data

    roots.sort(
        key=lambda node: (
            component_order.get(node.component_id, len(component_order)),
            natural_sort_key(node.requirement_key),
        )
    )

    project_data = {
        "key": project.project_key,
        "name": project.name,
        "description": project.description,
        "repository": project.repository_url,
        "version": project.version,
    }
    generated_at = generated_at or utcnow()

    return RTMDocument.model_validate(
        {
            "metadata": {
                "generated_at": generated_at.isoformat() + "Z",
                "generated_by": EXPORT_GENERATED_BY,
                "project": project_data,
            },
            "project": project_data,
            "components": [
                {
                    "key": component.component_key,
                    "name": component.name,
                    "type": component.component_type,
                    "technology": component.technology,
                    "description": component.description,
                }
                for component in components
            ],
            "requirements": [assemble(root) for root in roots],
            "api_endpoints": [
                {
                    "method": endpoint.method,
                    "path": endpoint.path,
                    "handler": endpoint.handler,
                    "description": endpoint.description,
                }
                for endpoint in api_endpoints
            ],
        }
    )


class Exporter:
    """Reads a project back out of the store as a document."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or utcnow

    async def export(self, project_key: str) -> RTMDocument:
        """
        Export a project's full hierarchy.

        Args:
            project_key: Project identity key

        Returns:
            Document with components, nested requirements and their annotations

        Raises:
            ProjectNotFoundError: No project with that key
        """
        with LogContext(project_key=project_key):
            async with get_async_session(self._session_factory) as session:
                repo = RTMRepository(session)
                project = await repo.get_project_by_key(project_key)
                if project is None:
                    raise ProjectNotFoundError(project_key)

                components = await repo.list_components(project.id)
                nodes = await repo.list_requirements(project.id)
                implementations = await repo.implementations_for_project(project.id)
                coverage = await repo.coverage_for_project(project.id)
                layer_details = await repo.implementation_layers_for_project(project.id)
                api_endpoints = await repo.list_api_endpoints(project.id)

            document = build_document(
                project,
                components,
                nodes,
                implementations,
                coverage,
                generated_at=self._clock(),
                layer_details=layer_details,
                api_endpoints=api_endpoints,
            )
            logger.info(
                "Export complete",
                components=len(components),
                requirements=len(nodes),
                implementations=len(implementations),
                coverage_links=len(coverage),
                api_endpoints=len(api_endpoints),
            )
            return document

    async def export_to_file(
        self,
        project_key: str,
        path: Union[str, Path],
        fmt: Optional[DocumentFormat] = None,
    ) -> Path:
        """Export a project and write it as JSON or YAML."""
        document = await self.export(project_key)
        return write_document(document, path, fmt)

    async def component_summaries(self, project_key: str) -> list[ComponentSummary]:
        """Per-component requirement, implementation and test counts."""
        async with get_async_session(self._session_factory) as session:
            repo = RTMRepository(session)
            project = await repo.get_project_by_key(project_key)
            if project is None:
                raise ProjectNotFoundError(project_key)
            return await repo.component_summaries(project.id)
