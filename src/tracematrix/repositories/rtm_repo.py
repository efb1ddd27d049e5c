"""
Traceability repository: every query and mutation the engine issues.

One repository wraps one ``AsyncSession``; the caller owns the transaction
boundary (see ``tracematrix.database.config.get_async_session``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tracematrix.core.constants import RequirementType
from tracematrix.core.exceptions import (
    ReferentialIntegrityError,
    StorageError,
    UniquenessConflictError,
)
from tracematrix.core.logging import get_logger
from tracematrix.database.models import (
    ApiEndpointDB,
    ComponentDB,
    CoverageLinkDB,
    ImplementationDB,
    ImplementationLayerDB,
    ProjectDB,
    RequirementDB,
    TestCaseDB,
    TestFileDB,
    new_id,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class CoverageRow:
    """One coverage link joined with its test case and file."""

    requirement_id: str
    layer: Optional[str]
    file_path: str
    test_type: Optional[str]
    test_name: str
    position: int


@dataclass(frozen=True)
class ComponentSummary:
    """Per-component requirement, implementation and test counts."""

    component_key: str
    name: str
    component_type: Optional[str]
    technology: Optional[str]
    scope_count: int = 0
    user_story_count: int = 0
    tech_spec_count: int = 0
    implementation_count: int = 0
    test_case_count: int = 0

    @property
    def total_requirements(self) -> int:
        return self.scope_count + self.user_story_count + self.tech_spec_count


class RTMRepository:
    """Persistence access for projects, components, requirements and their annotations."""

    def __init__(
        self,
        session: AsyncSession,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.session = session
        self.new_id = id_factory or new_id

    async def flush(self, entity_key: Optional[str] = None, stage: Optional[str] = None) -> None:
        """Flush pending writes, translating driver errors into engine errors."""
        try:
            await self.session.flush()
        except IntegrityError as e:
            message = str(e.orig).lower()
            if "unique" in message or "duplicate" in message:
                raise UniquenessConflictError(entity_key or "?", stage=stage) from e
            raise ReferentialIntegrityError(
                f"Integrity violation: {e.orig}",
                entity_key=entity_key,
                stage=stage,
            ) from e
        except SQLAlchemyError as e:
            raise StorageError(str(e), entity_key=entity_key, stage=stage) from e

    def _expunge(self, *models: type, ids: Optional[set[str]] = None) -> None:
        """Detach cached instances of rows removed by bulk deletes."""
        for obj in list(self.session.identity_map.values()):
            if isinstance(obj, models) and (ids is None or obj.id in ids):
                self.session.expunge(obj)

    # =========================================================================
    # Projects
    # =========================================================================

    async def get_project_by_key(self, project_key: str) -> Optional[ProjectDB]:
        result = await self.session.execute(
            select(ProjectDB).where(ProjectDB.project_key == project_key)
        )
        return result.scalar_one_or_none()

    async def get_project(self, project_id: str) -> Optional[ProjectDB]:
        return await self.session.get(ProjectDB, project_id)

    async def list_projects(self) -> Sequence[ProjectDB]:
        result = await self.session.execute(select(ProjectDB).order_by(ProjectDB.project_key))
        return result.scalars().all()

    async def add_project(self, project: ProjectDB) -> ProjectDB:
        if not project.id:
            project.id = self.new_id()
        self.session.add(project)
        await self.flush(project.project_key, "project")
        return project

    async def delete_project(self, project_id: str) -> None:
        """Delete a project and everything it owns; audit entries are untouched."""
        await self.purge_project_data(project_id)
        await self.session.execute(delete(ProjectDB).where(ProjectDB.id == project_id))
        self._expunge(ProjectDB, ids={project_id})

    async def purge_project_data(self, project_id: str) -> None:
        """Delete all descendant data of a project in dependency order."""
        requirement_ids = select(RequirementDB.id).where(RequirementDB.project_id == project_id)
        test_file_ids = select(TestFileDB.id).where(TestFileDB.project_id == project_id)

        await self.session.execute(
            delete(CoverageLinkDB)
            .where(CoverageLinkDB.requirement_id.in_(requirement_ids))
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(TestCaseDB)
            .where(TestCaseDB.test_file_id.in_(test_file_ids))
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(TestFileDB)
            .where(TestFileDB.project_id == project_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(ImplementationDB)
            .where(ImplementationDB.requirement_id.in_(requirement_ids))
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(ImplementationLayerDB)
            .where(ImplementationLayerDB.requirement_id.in_(requirement_ids))
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(RequirementDB)
            .where(RequirementDB.project_id == project_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(ComponentDB)
            .where(ComponentDB.project_id == project_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(ApiEndpointDB)
            .where(ApiEndpointDB.project_id == project_id)
            .execution_options(synchronize_session=False)
        )
        self._expunge(
            CoverageLinkDB,
            TestCaseDB,
            TestFileDB,
            ImplementationDB,
            ImplementationLayerDB,
            RequirementDB,
            ComponentDB,
            ApiEndpointDB,
        )

    # =========================================================================
    # Components
    # =========================================================================

    async def get_component(self, project_id: str, component_key: str) -> Optional[ComponentDB]:
        result = await self.session.execute(
            select(ComponentDB).where(
                ComponentDB.project_id == project_id,
                ComponentDB.component_key == component_key,
            )
        )
        return result.scalar_one_or_none()

    async def get_component_by_id(self, component_id: str) -> Optional[ComponentDB]:
        return await self.session.get(ComponentDB, component_id)

    async def list_components(self, project_id: str) -> Sequence[ComponentDB]:
        result = await self.session.execute(
            select(ComponentDB)
            .where(ComponentDB.project_id == project_id)
            .order_by(ComponentDB.component_key)
        )
        return result.scalars().all()

    async def add_component(self, component: ComponentDB) -> ComponentDB:
        if not component.id:
            component.id = self.new_id()
        self.session.add(component)
        await self.flush(component.component_key, "component")
        return component

    # =========================================================================
    # API endpoints
    # =========================================================================

    async def get_api_endpoint(
        self, project_id: str, method: str, path: str
    ) -> Optional[ApiEndpointDB]:
        result = await self.session.execute(
            select(ApiEndpointDB).where(
                ApiEndpointDB.project_id == project_id,
                ApiEndpointDB.method == method,
                ApiEndpointDB.path == path,
            )
        )
        return result.scalar_one_or_none()

    async def list_api_endpoints(self, project_id: str) -> Sequence[ApiEndpointDB]:
        result = await self.session.execute(
            select(ApiEndpointDB)
            .where(ApiEndpointDB.project_id == project_id)
            .order_by(ApiEndpointDB.path, ApiEndpointDB.method)
        )
        return result.scalars().all()

    async def add_api_endpoint(self, endpoint: ApiEndpointDB) -> ApiEndpointDB:
        if not endpoint.id:
            endpoint.id = self.new_id()
        self.session.add(endpoint)
        await self.flush(f"{endpoint.method} {endpoint.path}", "api_endpoint")
        return endpoint

    # =========================================================================
    # Requirements
    # =========================================================================

    async def get_requirement(self, requirement_id: str) -> Optional[RequirementDB]:
        return await self.session.get(RequirementDB, requirement_id)

    async def get_requirement_by_key(
        self, project_id: str, requirement_key: str
    ) -> Optional[RequirementDB]:
        result = await self.session.execute(
            select(RequirementDB).where(
                RequirementDB.project_id == project_id,
                RequirementDB.requirement_key == requirement_key,
            )
        )
        return result.scalar_one_or_none()

    async def list_requirements(self, project_id: str) -> Sequence[RequirementDB]:
        """All requirement nodes of a project, ordered by key."""
        result = await self.session.execute(
            select(RequirementDB)
            .where(RequirementDB.project_id == project_id)
            .order_by(RequirementDB.requirement_key)
        )
        return result.scalars().all()

    async def list_children(self, parent_id: str) -> Sequence[RequirementDB]:
        result = await self.session.execute(
            select(RequirementDB)
            .where(RequirementDB.parent_requirement_id == parent_id)
            .order_by(RequirementDB.requirement_key)
        )
        return result.scalars().all()

    async def sibling_keys(
        self,
        project_id: str,
        requirement_type: RequirementType,
        component_id: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> list[str]:
        """Keys of same-type nodes sharing a component (scopes) or a parent (others)."""
        query = select(RequirementDB.requirement_key).where(
            RequirementDB.project_id == project_id,
            RequirementDB.requirement_type == requirement_type,
        )
        if parent_id is not None:
            query = query.where(RequirementDB.parent_requirement_id == parent_id)
        if component_id is not None:
            query = query.where(RequirementDB.component_id == component_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def add_requirement(self, requirement: RequirementDB) -> RequirementDB:
        if not requirement.id:
            requirement.id = self.new_id()
        self.session.add(requirement)
        await self.flush(requirement.requirement_key, "requirement")
        return requirement

    async def delete_requirements(self, requirement_ids: Iterable[str]) -> int:
        """Delete nodes with their coverage links and implementations.

        ``requirement_ids`` must list the whole subtree; the count returned is
        its length.
        """
        ids = list(requirement_ids)
        if not ids:
            return 0
        await self.session.execute(
            delete(CoverageLinkDB)
            .where(CoverageLinkDB.requirement_id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(ImplementationDB)
            .where(ImplementationDB.requirement_id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(ImplementationLayerDB)
            .where(ImplementationLayerDB.requirement_id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(RequirementDB)
            .where(RequirementDB.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        self._expunge(RequirementDB, ids=set(ids))
        return len(ids)

    # =========================================================================
    # Implementations and test coverage
    # =========================================================================

    async def delete_attachments(self, requirement_id: str) -> None:
        """Remove a node's implementation records and coverage links."""
        await self.session.execute(
            delete(CoverageLinkDB)
            .where(CoverageLinkDB.requirement_id == requirement_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(ImplementationDB)
            .where(ImplementationDB.requirement_id == requirement_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(ImplementationLayerDB)
            .where(ImplementationLayerDB.requirement_id == requirement_id)
            .execution_options(synchronize_session=False)
        )

    async def add_implementation(
        self,
        requirement_id: str,
        layer: str,
        file_path: str,
        functions: list[str],
        position: int,
    ) -> ImplementationDB:
        implementation = ImplementationDB(
            id=self.new_id(),
            requirement_id=requirement_id,
            layer=layer,
            file_path=file_path,
            functions=list(functions),
            position=position,
        )
        self.session.add(implementation)
        return implementation

    async def implementations_for(self, requirement_id: str) -> Sequence[ImplementationDB]:
        result = await self.session.execute(
            select(ImplementationDB)
            .where(ImplementationDB.requirement_id == requirement_id)
            .order_by(ImplementationDB.position)
        )
        return result.scalars().all()

    async def implementations_for_project(self, project_id: str) -> Sequence[ImplementationDB]:
        result = await self.session.execute(
            select(ImplementationDB)
            .join(RequirementDB, ImplementationDB.requirement_id == RequirementDB.id)
            .where(RequirementDB.project_id == project_id)
            .order_by(ImplementationDB.requirement_id, ImplementationDB.position)
        )
        return result.scalars().all()

    async def add_implementation_layer(
        self,
        requirement_id: str,
        layer: str,
        api_calls: list[dict],
        tables: list[str],
    ) -> ImplementationLayerDB:
        layer_details = ImplementationLayerDB(
            id=self.new_id(),
            requirement_id=requirement_id,
            layer=layer,
            api_calls=list(api_calls),
            tables=list(tables),
        )
        self.session.add(layer_details)
        return layer_details

    async def implementation_layers_for(self, requirement_id: str) -> Sequence[ImplementationLayerDB]:
        result = await self.session.execute(
            select(ImplementationLayerDB)
            .where(ImplementationLayerDB.requirement_id == requirement_id)
            .order_by(ImplementationLayerDB.layer)
        )
        return result.scalars().all()

    async def implementation_layers_for_project(
        self, project_id: str
    ) -> Sequence[ImplementationLayerDB]:
        result = await self.session.execute(
            select(ImplementationLayerDB)
            .join(RequirementDB, ImplementationLayerDB.requirement_id == RequirementDB.id)
            .where(RequirementDB.project_id == project_id)
            .order_by(ImplementationLayerDB.requirement_id, ImplementationLayerDB.layer)
        )
        return result.scalars().all()

    async def ensure_test_file(
        self,
        project_id: str,
        file_path: str,
        layer: Optional[str],
        test_type: Optional[str],
    ) -> TestFileDB:
        """Return the project's test file for ``file_path``, creating it if missing."""
        result = await self.session.execute(
            select(TestFileDB).where(
                TestFileDB.project_id == project_id,
                TestFileDB.file_path == file_path,
            )
        )
        test_file = result.scalar_one_or_none()
        if test_file is None:
            test_file = TestFileDB(
                id=self.new_id(),
                project_id=project_id,
                file_path=file_path,
                layer=layer,
                test_type=test_type,
            )
            self.session.add(test_file)
            await self.flush(file_path, "test_coverage")
        return test_file

    async def ensure_test_case(
        self,
        test_file_id: str,
        test_name: str,
        test_type: Optional[str],
    ) -> TestCaseDB:
        """Return the file's test case named ``test_name``, creating it if missing."""
        result = await self.session.execute(
            select(TestCaseDB).where(
                TestCaseDB.test_file_id == test_file_id,
                TestCaseDB.test_name == test_name,
            )
        )
        test_case = result.scalar_one_or_none()
        if test_case is None:
            test_case = TestCaseDB(
                id=self.new_id(),
                test_file_id=test_file_id,
                test_name=test_name,
                test_type=test_type,
            )
            self.session.add(test_case)
            await self.flush(test_name, "test_coverage")
        return test_case

    async def add_coverage_link(
        self,
        requirement_id: str,
        test_case_id: str,
        position: int,
    ) -> CoverageLinkDB:
        link = CoverageLinkDB(
            id=self.new_id(),
            requirement_id=requirement_id,
            test_case_id=test_case_id,
            position=position,
        )
        self.session.add(link)
        return link

    async def coverage_for(self, requirement_id: str) -> list[CoverageRow]:
        return await self._coverage_rows(CoverageLinkDB.requirement_id == requirement_id)

    async def coverage_for_project(self, project_id: str) -> list[CoverageRow]:
        return await self._coverage_rows(RequirementDB.project_id == project_id)

    async def _coverage_rows(self, condition) -> list[CoverageRow]:
        result = await self.session.execute(
            select(
                CoverageLinkDB.requirement_id,
                TestFileDB.layer,
                TestFileDB.file_path,
                TestFileDB.test_type,
                TestCaseDB.test_name,
                CoverageLinkDB.position,
            )
            .join(TestCaseDB, CoverageLinkDB.test_case_id == TestCaseDB.id)
            .join(TestFileDB, TestCaseDB.test_file_id == TestFileDB.id)
            .join(RequirementDB, CoverageLinkDB.requirement_id == RequirementDB.id)
            .where(condition)
            .order_by(CoverageLinkDB.requirement_id, CoverageLinkDB.position)
        )
        return [CoverageRow(*row) for row in result.all()]

    # =========================================================================
    # Status queries
    # =========================================================================

    async def count_rows(self, model, *conditions) -> int:
        query = select(func.count()).select_from(model)
        if conditions:
            query = query.where(*conditions)
        result = await self.session.execute(query)
        return int(result.scalar_one())

    async def component_summaries(self, project_id: str) -> list[ComponentSummary]:
        """Requirement / implementation / test-case counts per component."""
        type_counts = await self.session.execute(
            select(
                RequirementDB.component_id,
                RequirementDB.requirement_type,
                func.count(RequirementDB.id),
            )
            .where(RequirementDB.project_id == project_id)
            .group_by(RequirementDB.component_id, RequirementDB.requirement_type)
        )
        implementation_counts = await self.session.execute(
            select(RequirementDB.component_id, func.count(ImplementationDB.id))
            .join(ImplementationDB, ImplementationDB.requirement_id == RequirementDB.id)
            .where(RequirementDB.project_id == project_id)
            .group_by(RequirementDB.component_id)
        )
        test_counts = await self.session.execute(
            select(RequirementDB.component_id, func.count(func.distinct(CoverageLinkDB.test_case_id)))
            .join(CoverageLinkDB, CoverageLinkDB.requirement_id == RequirementDB.id)
            .where(RequirementDB.project_id == project_id)
            .group_by(RequirementDB.component_id)
        )

        by_type: dict[str, dict[RequirementType, int]] = {}
        for component_id, requirement_type, count in type_counts.all():
            by_type.setdefault(component_id, {})[RequirementType(requirement_type)] = count
        implementations = dict(implementation_counts.all())
        tests = dict(test_counts.all())

        summaries = []
        for component in await self.list_components(project_id):
            counts = by_type.get(component.id, {})
            summaries.append(
                ComponentSummary(
                    component_key=component.component_key,
                    name=component.name,
                    component_type=component.component_type,
                    technology=component.technology,
                    scope_count=counts.get(RequirementType.SCOPE, 0),
                    user_story_count=counts.get(RequirementType.USER_STORY, 0),
                    tech_spec_count=counts.get(RequirementType.TECH_SPEC, 0),
                    implementation_count=implementations.get(component.id, 0),
                    test_case_count=tests.get(component.id, 0),
                )
            )
        return summaries
