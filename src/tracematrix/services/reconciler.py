"""
Reconciler - merges a traceability document into the relational store.

One call is one transaction: the project is upserted, overwrite mode
purges the project's existing data, components are inserted when missing,
and the requirement forest is walked depth-first, each child receiving
its parent's freshly resolved identifier. Any failure rolls the whole
import back.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tracematrix.core.config import get_settings
from tracematrix.core.constants import (
    DEFAULT_TEST_TYPE,
    ChangeType,
    ReconcileMode,
    RequirementType,
)
from tracematrix.core.exceptions import (
    InvalidReconcileModeError,
    ReferentialIntegrityError,
    StorageError,
    TraceMatrixError,
)
from tracematrix.core.logging import LogContext, get_logger
from tracematrix.database.config import get_async_session
from tracematrix.database.models import (
    ApiEndpointDB,
    ComponentDB,
    ProjectDB,
    RequirementDB,
    new_id,
    utcnow,
)
from tracematrix.models.document import RequirementNodeBase, RTMDocument
from tracematrix.repositories.rtm_repo import RTMRepository
from tracematrix.services.audit_service import AuditService
from tracematrix.services.document_loader import parse_document

logger = get_logger(__name__)

ImplementationRow = tuple[str, str, list[str]]
CoverageRowSpec = tuple[str, str, str, str]
LayerDetailRow = tuple[str, list[dict[str, str]], list[str]]


@dataclass
class ReconcileResult:
    """Counters describing what one reconciliation changed."""

    project_key: str
    project_id: str = ""
    mode: ReconcileMode = ReconcileMode.UPDATE
    project_created: bool = False
    project_updated: bool = False
    components_created: int = 0
    api_endpoints_created: int = 0
    created: int = 0
    updated: int = 0
    relinked: int = 0
    unchanged: int = 0
    deleted: int = 0
    implementations: int = 0
    coverage_links: int = 0

    @property
    def changed(self) -> bool:
        """True when the import altered persisted state."""
        return bool(
            self.project_created
            or self.project_updated
            or self.components_created
            or self.api_endpoints_created
            or self.created
            or self.updated
            or self.relinked
            or self.deleted
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data


def implementation_rows(node: RequirementNodeBase) -> list[ImplementationRow]:
    """Flatten a node's implementation mapping to (layer, path, functions) rows."""
    rows: list[ImplementationRow] = []
    for layer, layer_impl in (node.implementation or {}).items():
        for file_impl in layer_impl.files:
            rows.append((layer, file_impl.path, list(file_impl.functions)))
    return rows


def layer_detail_rows(node: RequirementNodeBase) -> list[LayerDetailRow]:
    """Layers of a node carrying API calls or tables, as (layer, api_calls, tables)."""
    rows: list[LayerDetailRow] = []
    for layer, layer_impl in (node.implementation or {}).items():
        api_calls = [call.model_dump() for call in layer_impl.api_calls or []]
        tables = list(layer_impl.tables or [])
        if api_calls or tables:
            rows.append((layer, api_calls, tables))
    return rows


def coverage_rows(node: RequirementNodeBase) -> list[CoverageRowSpec]:
    """Flatten a node's test mapping to (layer, file, type, test name) rows.

    A test case listed twice for the same node is linked once.
    """
    rows: list[CoverageRowSpec] = []
    seen: set[tuple[str, str]] = set()
    for layer, references in (node.tests or {}).items():
        for reference in references:
            for test_name in reference.functions:
                if (reference.file, test_name) in seen:
                    continue
                seen.add((reference.file, test_name))
                rows.append((layer, reference.file, reference.type or DEFAULT_TEST_TYPE, test_name))
    return rows


class _ReconcileRun:
    """State of a single reconciliation inside its transaction."""

    def __init__(
        self,
        reconciler: "Reconciler",
        session: AsyncSession,
        document: RTMDocument,
        project_key: str,
        mode: ReconcileMode,
    ) -> None:
        self.session = session
        self.document = document
        self.mode = mode
        self.audit = reconciler.audit
        self.clock = reconciler.clock
        self.repo = RTMRepository(session, id_factory=reconciler.new_id)
        self.result = ReconcileResult(project_key=project_key, mode=mode)
        self.project: Optional[ProjectDB] = None
        self.components: dict[str, str] = {}
        self.restructured = False
        self.stage = "project"
        self.entity_key: Optional[str] = project_key

    async def execute(self) -> ReconcileResult:
        await self._upsert_project()
        if self.mode == ReconcileMode.OVERWRITE:
            await self._purge()
        await self._upsert_components()
        await self._upsert_api_endpoints()

        self.stage = "requirement"
        for root in self.document.requirements:
            await self._reconcile_node(root, component_id=None, parent_id=None)
        if self.restructured:
            await self._check_hierarchy()

        self.stage = "commit"
        self.entity_key = self.result.project_key
        return self.result

    # =========================================================================
    # Project / purge / components
    # =========================================================================

    async def _upsert_project(self) -> None:
        self.stage = "project"
        descriptor = self.document.project
        project_key = self.result.project_key
        fields = {
            "name": descriptor.name or project_key,
            "description": descriptor.description,
            "repository_url": descriptor.repository,
            "version": descriptor.version,
        }

        project = await self.repo.get_project_by_key(project_key)
        if project is None:
            now = self.clock()
            project = await self.repo.add_project(
                ProjectDB(
                    id=self.repo.new_id(),
                    project_key=project_key,
                    created_at=now,
                    updated_at=now,
                    **fields,
                )
            )
            self.result.project_created = True
            logger.debug("Project created", project_id=project.id)
        elif any(getattr(project, name) != value for name, value in fields.items()):
            for name, value in fields.items():
                setattr(project, name, value)
            project.updated_at = self.clock()
            await self.repo.flush(project_key, "project")
            self.result.project_updated = True
            logger.debug("Project updated", project_id=project.id)

        self.project = project
        self.result.project_id = project.id

    async def _purge(self) -> None:
        """Delete every node, annotation and component of the project."""
        self.stage = "purge"
        nodes = await self.repo.list_requirements(self.project.id)
        for node in nodes:
            self.entity_key = node.requirement_key
            await self.audit.record(
                self.session,
                project_id=self.project.id,
                requirement_id=node.id,
                requirement_key=node.requirement_key,
                change_type=ChangeType.DELETED,
                old_values=node.to_snapshot(),
                reason="overwrite import",
            )
        self.entity_key = self.result.project_key
        await self.repo.purge_project_data(self.project.id)
        self.result.deleted = len(nodes)
        logger.info("Project data purged", deleted=len(nodes))

    async def _upsert_components(self) -> None:
        self.stage = "component"
        for descriptor in self.document.components:
            if descriptor.key in self.components:
                continue
            self.entity_key = descriptor.key
            component = await self.repo.get_component(self.project.id, descriptor.key)
            if component is None:
                component = await self.repo.add_component(
                    ComponentDB(
                        id=self.repo.new_id(),
                        project_id=self.project.id,
                        component_key=descriptor.key,
                        name=descriptor.name or descriptor.key,
                        component_type=descriptor.type,
                        technology=descriptor.technology,
                        description=descriptor.description,
                        created_at=self.clock(),
                    )
                )
                self.result.components_created += 1
            self.components[descriptor.key] = component.id

    async def _upsert_api_endpoints(self) -> None:
        """Insert endpoints missing from the project; existing ones are kept as stored."""
        self.stage = "api_endpoint"
        seen: set[tuple[str, str]] = set()
        for descriptor in self.document.api_endpoints:
            identity = (descriptor.method, descriptor.path)
            if identity in seen:
                continue
            seen.add(identity)
            self.entity_key = f"{descriptor.method} {descriptor.path}"
            if await self.repo.get_api_endpoint(self.project.id, *identity) is not None:
                continue
            await self.repo.add_api_endpoint(
                ApiEndpointDB(
                    id=self.repo.new_id(),
                    project_id=self.project.id,
                    method=descriptor.method,
                    path=descriptor.path,
                    handler=descriptor.handler,
                    description=descriptor.description,
                    created_at=self.clock(),
                )
            )
            self.result.api_endpoints_created += 1

    # =========================================================================
    # Requirement nodes
    # =========================================================================

    def _resolve_component(
        self,
        node: RequirementNodeBase,
        inherited_component_id: Optional[str],
    ) -> str:
        self.stage = "component"
        if node.component_key is not None:
            component_id = self.components.get(node.component_key)
            if component_id is None:
                raise ReferentialIntegrityError(
                    f"Requirement '{node.key}' references undeclared component "
                    f"'{node.component_key}'",
                    entity_key=node.key,
                    stage="component",
                    reference=node.component_key,
                )
            return component_id
        if inherited_component_id is None:
            raise ReferentialIntegrityError(
                f"Requirement '{node.key}' has no component",
                entity_key=node.key,
                stage="component",
            )
        return inherited_component_id

    async def _reconcile_node(
        self,
        node: RequirementNodeBase,
        component_id: Optional[str],
        parent_id: Optional[str],
    ) -> None:
        self.entity_key = node.key
        component_id = self._resolve_component(node, component_id)
        self.stage = "requirement"

        values = {
            "project_id": self.project.id,
            "component_id": component_id,
            "parent_requirement_id": parent_id,
            "requirement_key": node.key,
            "requirement_type": node.requirement_type,
            "title": node.title,
            "description": node.description,
            "category": node.category,
            "priority": node.priority,
            "status": node.status,
            "acceptance_criteria": list(node.acceptance_criteria),
        }

        existing = None
        if self.mode == ReconcileMode.UPDATE:
            existing = await self.repo.get_requirement_by_key(self.project.id, node.key)

        if existing is None:
            requirement = await self._insert(node, values)
        else:
            requirement = await self._update(existing, node, values)

        for child in node.child_nodes():
            await self._reconcile_node(child, component_id, requirement.id)
            self.entity_key = node.key

    async def _insert(self, node: RequirementNodeBase, values: dict[str, Any]) -> RequirementDB:
        now = self.clock()
        requirement = await self.repo.add_requirement(
            RequirementDB(id=self.repo.new_id(), created_at=now, updated_at=now, **values)
        )
        await self.audit.record(
            self.session,
            project_id=self.project.id,
            requirement_id=requirement.id,
            requirement_key=requirement.requirement_key,
            change_type=ChangeType.CREATED,
            new_values=requirement.to_snapshot(),
        )
        self.result.created += 1
        await self._attach(requirement, node)
        return requirement

    async def _update(
        self,
        requirement: RequirementDB,
        node: RequirementNodeBase,
        values: dict[str, Any],
    ) -> RequirementDB:
        old = requirement.to_snapshot()
        candidate = {**old, **values, "requirement_type": node.requirement_type.value}
        fields_changed = candidate != old
        attachments_changed = await self._attachments_differ(requirement.id, node)

        if not fields_changed and not attachments_changed:
            self.result.unchanged += 1
            return requirement

        if fields_changed:
            if (
                candidate["requirement_type"] != old["requirement_type"]
                or candidate["parent_requirement_id"] != old["parent_requirement_id"]
            ):
                self.restructured = True
            for name, value in values.items():
                setattr(requirement, name, value)
            requirement.updated_at = self.clock()
            await self.repo.flush(node.key, "requirement")
            await self.audit.record(
                self.session,
                project_id=self.project.id,
                requirement_id=requirement.id,
                requirement_key=requirement.requirement_key,
                change_type=ChangeType.UPDATED,
                old_values=old,
                new_values=requirement.to_snapshot(),
            )
            self.result.updated += 1
        else:
            self.result.relinked += 1

        await self.repo.delete_attachments(requirement.id)
        await self._attach(requirement, node)
        return requirement

    async def _check_hierarchy(self) -> None:
        """Reject a store left with a node under a parent of the wrong type.

        Update mode can retype or move a node whose stored children the
        document never mentions; those children keep their old parent.
        """
        self.stage = "requirement"
        await self.repo.flush(self.result.project_key, "requirement")
        nodes = await self.repo.list_requirements(self.project.id)
        by_id = {node.id: node for node in nodes}
        for node in nodes:
            parent = by_id.get(node.parent_requirement_id)
            if parent is None:
                continue
            node_type = RequirementType(node.requirement_type)
            parent_type = RequirementType(parent.requirement_type)
            if parent_type != node_type.parent_type:
                self.entity_key = node.requirement_key
                raise ReferentialIntegrityError(
                    f"{node_type.value} '{node.requirement_key}' cannot be a child of "
                    f"{parent_type.value} '{parent.requirement_key}'",
                    entity_key=node.requirement_key,
                    stage="requirement",
                    reference=parent.requirement_key,
                )

    # =========================================================================
    # Implementations and test coverage
    # =========================================================================

    async def _attachments_differ(self, requirement_id: str, node: RequirementNodeBase) -> bool:
        """Compare stored annotations with the document's, ignoring order."""
        implementations = await self.repo.implementations_for(requirement_id)
        stored_implementations = sorted(
            (impl.layer, impl.file_path, tuple(impl.functions or [])) for impl in implementations
        )
        wanted_implementations = sorted(
            (layer, path, tuple(functions)) for layer, path, functions in implementation_rows(node)
        )
        if stored_implementations != wanted_implementations:
            return True

        coverage = await self.repo.coverage_for(requirement_id)
        stored_coverage = sorted((row.file_path, row.test_name) for row in coverage)
        wanted_coverage = sorted((path, name) for _, path, _, name in coverage_rows(node))
        if stored_coverage != wanted_coverage:
            return True

        layers = await self.repo.implementation_layers_for(requirement_id)
        stored_layers = sorted((row.layer, row.api_calls or [], row.tables or []) for row in layers)
        return stored_layers != sorted(layer_detail_rows(node))

    async def _attach(self, requirement: RequirementDB, node: RequirementNodeBase) -> None:
        self.stage = "implementation"
        implementations = implementation_rows(node)
        for position, (layer, path, functions) in enumerate(implementations):
            await self.repo.add_implementation(requirement.id, layer, path, functions, position)
        layer_details = layer_detail_rows(node)
        for layer, api_calls, tables in layer_details:
            await self.repo.add_implementation_layer(requirement.id, layer, api_calls, tables)
        if implementations or layer_details:
            await self.repo.flush(node.key, "implementation")
        self.result.implementations += len(implementations)

        self.stage = "test_coverage"
        coverage = coverage_rows(node)
        for position, (layer, path, test_type, test_name) in enumerate(coverage):
            test_file = await self.repo.ensure_test_file(self.project.id, path, layer, test_type)
            test_case = await self.repo.ensure_test_case(test_file.id, test_name, test_type)
            await self.repo.add_coverage_link(requirement.id, test_case.id, position)
        if coverage:
            await self.repo.flush(node.key, "test_coverage")
        self.result.coverage_links += len(coverage)
        self.stage = "requirement"


class Reconciler:
    """Persists traceability documents with update or overwrite semantics."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        changed_by: Optional[str] = None,
    ) -> None:
        """
        Initialize the reconciler.

        Args:
            session_factory: Session factory; the configured database when omitted
            id_factory: Identifier allocator for new rows (UUID4 strings by default)
            clock: Timestamp source for new rows and audit entries
            changed_by: Author recorded on audit entries
        """
        self._session_factory = session_factory
        self.new_id = id_factory or new_id
        self.clock = clock or utcnow
        self.audit = AuditService(
            session_factory,
            clock=self.clock,
            changed_by=changed_by,
        )

    async def reconcile(
        self,
        document: Union[RTMDocument, Mapping[str, Any]],
        project_key_override: Optional[str] = None,
        mode: Union[ReconcileMode, str, None] = None,
    ) -> ReconcileResult:
        """
        Merge a document into the store atomically.

        Args:
            document: Validated document, or a decoded mapping to validate first
            project_key_override: Project key replacing the document's own
            mode: ``update`` (upsert by key) or ``overwrite`` (purge then insert);
                defaults to the configured import mode

        Returns:
            Counters for the committed changes

        Raises:
            InvalidReconcileModeError: Unknown mode (nothing is opened)
            DocumentShapeError: The mapping is not a valid document (nothing is opened)
            ReferentialIntegrityError: Undeclared or missing component, or a
                stored child left under a parent of the wrong type
            UniquenessConflictError: Duplicate key while inserting
            StorageError: Any other store failure, including commit
        """
        requested = mode or get_settings().importing.default_mode
        try:
            mode = ReconcileMode.parse(requested)
        except ValueError:
            raise InvalidReconcileModeError(str(requested)) from None
        if not isinstance(document, RTMDocument):
            document = parse_document(document, project_key_override)
        project_key = project_key_override or document.project.key

        with LogContext(project_key=project_key, mode=mode.value):
            logger.info("Reconciliation started")
            run: Optional[_ReconcileRun] = None
            try:
                async with get_async_session(self._session_factory) as session:
                    run = _ReconcileRun(self, session, document, project_key, mode)
                    result = await run.execute()
            except TraceMatrixError as e:
                logger.error("Reconciliation failed", code=e.code, error=e.message, **e.details)
                raise
            except SQLAlchemyError as e:
                stage = run.stage if run else "commit"
                entity_key = run.entity_key if run else project_key
                logger.error("Reconciliation failed", stage=stage, entity_key=entity_key, error=str(e))
                raise StorageError(str(e), entity_key=entity_key, stage=stage) from e

            logger.info(
                "Reconciliation complete",
                created=result.created,
                updated=result.updated,
                relinked=result.relinked,
                unchanged=result.unchanged,
                deleted=result.deleted,
                components_created=result.components_created,
            )
            return result
