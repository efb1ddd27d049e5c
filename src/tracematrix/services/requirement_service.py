"""
Requirement Service - interactive management of projects, components and nodes.

Every mutating call runs in its own transaction and writes its audit
entries through the same session.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tracematrix.core.constants import (
    DEFAULT_PRIORITY,
    DEFAULT_STATUS,
    ChangeType,
    RequirementType,
)
from tracematrix.core.exceptions import (
    ComponentNotFoundError,
    InvalidRequirementTypeError,
    ProjectNotFoundError,
    ReferentialIntegrityError,
    RequirementNotFoundError,
    UniquenessConflictError,
)
from tracematrix.core.logging import get_logger
from tracematrix.database.config import get_async_session
from tracematrix.database.models import (
    ComponentDB,
    ProjectDB,
    RequirementDB,
    new_id,
    utcnow,
)
from tracematrix.repositories.rtm_repo import RTMRepository
from tracematrix.services.audit_service import AuditService
from tracematrix.services.key_generator import KeyGenerator

logger = get_logger(__name__)

UPDATABLE_FIELDS = frozenset(
    {"title", "description", "category", "priority", "status", "acceptance_criteria"}
)


class RequirementService:
    """CRUD operations over the traceability store."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        changed_by: Optional[str] = None,
    ) -> None:
        self._session_factory = session_factory
        self._new_id = id_factory or new_id
        self._clock = clock or utcnow
        self.audit = AuditService(
            session_factory,
            clock=self._clock,
            changed_by=changed_by,
        )

    def _repo(self, session: AsyncSession) -> RTMRepository:
        return RTMRepository(session, id_factory=self._new_id)

    # =========================================================================
    # Projects
    # =========================================================================

    async def create_project(
        self,
        project_key: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        repository_url: Optional[str] = None,
        version: Optional[str] = None,
    ) -> ProjectDB:
        """Create a project; its key must be unused."""
        async with get_async_session(self._session_factory) as session:
            repo = self._repo(session)
            if await repo.get_project_by_key(project_key) is not None:
                raise UniquenessConflictError(project_key, stage="project")
            now = self._clock()
            project = await repo.add_project(
                ProjectDB(
                    id=repo.new_id(),
                    project_key=project_key,
                    name=name or project_key,
                    description=description,
                    repository_url=repository_url,
                    version=version,
                    created_at=now,
                    updated_at=now,
                )
            )
        logger.info("Project created", project_key=project_key, project_id=project.id)
        return project

    async def get_project(self, project_key: str) -> ProjectDB:
        async with get_async_session(self._session_factory) as session:
            project = await self._repo(session).get_project_by_key(project_key)
        if project is None:
            raise ProjectNotFoundError(project_key)
        return project

    async def list_projects(self) -> Sequence[ProjectDB]:
        async with get_async_session(self._session_factory) as session:
            return await self._repo(session).list_projects()

    async def delete_project(self, project_key: str) -> int:
        """
        Delete a project and everything it owns.

        Every deleted node gets a ``deleted`` audit entry; audit history
        itself is kept.

        Returns:
            Number of requirement nodes removed
        """
        async with get_async_session(self._session_factory) as session:
            repo = self._repo(session)
            project = await repo.get_project_by_key(project_key)
            if project is None:
                raise ProjectNotFoundError(project_key)

            nodes = await repo.list_requirements(project.id)
            for node in nodes:
                await self.audit.record(
                    session,
                    project_id=project.id,
                    requirement_id=node.id,
                    requirement_key=node.requirement_key,
                    change_type=ChangeType.DELETED,
                    old_values=node.to_snapshot(),
                    reason="project deleted",
                )
            await repo.delete_project(project.id)

        logger.info("Project deleted", project_key=project_key, requirements=len(nodes))
        return len(nodes)

    # =========================================================================
    # Components
    # =========================================================================

    async def create_component(
        self,
        project_key: str,
        component_key: str,
        name: Optional[str] = None,
        component_type: Optional[str] = None,
        technology: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ComponentDB:
        """Create a component under a project; its key must be unused there."""
        async with get_async_session(self._session_factory) as session:
            repo = self._repo(session)
            project = await repo.get_project_by_key(project_key)
            if project is None:
                raise ProjectNotFoundError(project_key)
            if await repo.get_component(project.id, component_key) is not None:
                raise UniquenessConflictError(component_key, stage="component")
            component = await repo.add_component(
                ComponentDB(
                    id=repo.new_id(),
                    project_id=project.id,
                    component_key=component_key,
                    name=name or component_key,
                    component_type=component_type,
                    technology=technology,
                    description=description,
                    created_at=self._clock(),
                )
            )
        logger.info("Component created", project_key=project_key, component_key=component_key)
        return component

    async def list_components(self, project_key: str) -> Sequence[ComponentDB]:
        async with get_async_session(self._session_factory) as session:
            repo = self._repo(session)
            project = await repo.get_project_by_key(project_key)
            if project is None:
                raise ProjectNotFoundError(project_key)
            return await repo.list_components(project.id)

    # =========================================================================
    # Requirements
    # =========================================================================

    async def generate_key(
        self,
        project_id: str,
        component_id: str,
        requirement_type: RequirementType | str,
        parent_id: Optional[str] = None,
    ) -> str:
        """Next unused key for a node of ``requirement_type``."""
        async with get_async_session(self._session_factory) as session:
            return await KeyGenerator(self._repo(session)).generate(
                project_id, component_id, requirement_type, parent_id
            )

    async def create_requirement(
        self,
        project_id: str,
        component_id: str,
        requirement_type: RequirementType | str,
        title: str,
        parent_id: Optional[str] = None,
        requirement_key: Optional[str] = None,
        description: Optional[str] = None,
        category: Optional[str] = None,
        priority: Optional[str] = None,
        status: Optional[str] = None,
        acceptance_criteria: Optional[list[str]] = None,
    ) -> RequirementDB:
        """
        Create a requirement node.

        Args:
            project_id: Owning project
            component_id: Owning component
            requirement_type: SCOPE, USER_STORY or TECH_SPEC (any case)
            title: Node title
            parent_id: Parent node; must have the matching parent type
            requirement_key: Explicit key; generated when omitted
            description: Optional description
            category: Optional category
            priority: Defaults to ``medium``
            status: Defaults to ``not_started``
            acceptance_criteria: Ordered acceptance criteria

        Returns:
            The created node

        Raises:
            InvalidRequirementTypeError: Unknown type
            ReferentialIntegrityError: Missing project, component or parent, or wrong parent type
            UniquenessConflictError: Key already used in the project
        """
        try:
            requirement_type = RequirementType.parse(requirement_type)
        except ValueError:
            raise InvalidRequirementTypeError(str(requirement_type)) from None

        async with get_async_session(self._session_factory) as session:
            repo = self._repo(session)
            await self._check_owner(repo, project_id, component_id, requirement_key)

            if parent_id is not None:
                parent = await repo.get_requirement(parent_id)
                if parent is None or parent.project_id != project_id:
                    raise ReferentialIntegrityError(
                        f"Parent requirement '{parent_id}' not found",
                        entity_key=requirement_key,
                        stage="requirement",
                        reference=parent_id,
                    )
                if RequirementType(parent.requirement_type) != requirement_type.parent_type:
                    raise ReferentialIntegrityError(
                        f"{requirement_type.value} cannot be a child of "
                        f"{RequirementType(parent.requirement_type).value}",
                        entity_key=requirement_key,
                        stage="requirement",
                        reference=parent.requirement_key,
                    )

            if requirement_key is None:
                requirement_key = await KeyGenerator(repo).generate(
                    project_id, component_id, requirement_type, parent_id
                )
            elif await repo.get_requirement_by_key(project_id, requirement_key) is not None:
                raise UniquenessConflictError(requirement_key, stage="requirement")

            now = self._clock()
            requirement = await repo.add_requirement(
                RequirementDB(
                    id=repo.new_id(),
                    project_id=project_id,
                    component_id=component_id,
                    parent_requirement_id=parent_id,
                    requirement_key=requirement_key,
                    requirement_type=requirement_type,
                    title=title,
                    description=description,
                    category=category,
                    priority=priority or DEFAULT_PRIORITY,
                    status=status or DEFAULT_STATUS,
                    acceptance_criteria=list(acceptance_criteria or []),
                    created_at=now,
                    updated_at=now,
                )
            )
            await self.audit.record(
                session,
                project_id=project_id,
                requirement_id=requirement.id,
                requirement_key=requirement_key,
                change_type=ChangeType.CREATED,
                new_values=requirement.to_snapshot(),
            )

        logger.info(
            "Requirement created",
            requirement_key=requirement_key,
            requirement_type=requirement_type.value,
        )
        return requirement

    async def _check_owner(
        self,
        repo: RTMRepository,
        project_id: str,
        component_id: str,
        requirement_key: Optional[str],
    ) -> None:
        if await repo.get_project(project_id) is None:
            raise ReferentialIntegrityError(
                f"Project '{project_id}' not found",
                entity_key=requirement_key,
                stage="project",
                reference=project_id,
            )
        component = await repo.get_component_by_id(component_id)
        if component is None or component.project_id != project_id:
            raise ReferentialIntegrityError(
                f"Component '{component_id}' not found in project",
                entity_key=requirement_key,
                stage="component",
                reference=component_id,
            )

    async def get_requirement(self, requirement_id: str) -> RequirementDB:
        async with get_async_session(self._session_factory) as session:
            requirement = await self._repo(session).get_requirement(requirement_id)
        if requirement is None:
            raise RequirementNotFoundError(requirement_id)
        return requirement

    async def get_requirement_by_key(self, project_key: str, requirement_key: str) -> RequirementDB:
        async with get_async_session(self._session_factory) as session:
            repo = self._repo(session)
            project = await repo.get_project_by_key(project_key)
            if project is None:
                raise ProjectNotFoundError(project_key)
            requirement = await repo.get_requirement_by_key(project.id, requirement_key)
        if requirement is None:
            raise RequirementNotFoundError(requirement_key)
        return requirement

    async def list_children(self, requirement_id: str) -> Sequence[RequirementDB]:
        """Direct children of a node, ordered by key."""
        async with get_async_session(self._session_factory) as session:
            repo = self._repo(session)
            if await repo.get_requirement(requirement_id) is None:
                raise RequirementNotFoundError(requirement_id)
            return await repo.list_children(requirement_id)

    async def update_requirement(
        self,
        requirement_id: str,
        reason: Optional[str] = None,
        **changes: Any,
    ) -> RequirementDB:
        """
        Update mutable fields of a node.

        Only ``title``, ``description``, ``category``, ``priority``, ``status``
        and ``acceptance_criteria`` may change. An update that changes nothing
        writes no audit entry.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        async with get_async_session(self._session_factory) as session:
            repo = self._repo(session)
            requirement = await repo.get_requirement(requirement_id)
            if requirement is None:
                raise RequirementNotFoundError(requirement_id)

            old = requirement.to_snapshot()
            for name, value in changes.items():
                if name == "acceptance_criteria":
                    value = list(value or [])
                setattr(requirement, name, value)
            new = requirement.to_snapshot()

            if new != old:
                requirement.updated_at = self._clock()
                await repo.flush(requirement.requirement_key, "requirement")
                await self.audit.record(
                    session,
                    project_id=requirement.project_id,
                    requirement_id=requirement.id,
                    requirement_key=requirement.requirement_key,
                    change_type=ChangeType.UPDATED,
                    old_values=old,
                    new_values=new,
                    reason=reason,
                )
                logger.info("Requirement updated", requirement_key=requirement.requirement_key)

        return requirement

    async def update_description(
        self,
        requirement_id: str,
        description: str,
        reason: Optional[str] = None,
    ) -> RequirementDB:
        return await self.update_requirement(requirement_id, reason=reason, description=description)

    async def delete_requirement(self, requirement_id: str, reason: Optional[str] = None) -> int:
        """
        Delete a node and all of its descendants.

        Implementation records and coverage links of the whole subtree go
        with it; each removed node gets a ``deleted`` audit entry.

        Returns:
            Number of nodes removed
        """
        async with get_async_session(self._session_factory) as session:
            repo = self._repo(session)
            root = await repo.get_requirement(requirement_id)
            if root is None:
                raise RequirementNotFoundError(requirement_id)

            subtree = [root]
            pending = [root.id]
            while pending:
                children = await repo.list_children(pending.pop())
                subtree.extend(children)
                pending.extend(child.id for child in children)

            for node in subtree:
                await self.audit.record(
                    session,
                    project_id=node.project_id,
                    requirement_id=node.id,
                    requirement_key=node.requirement_key,
                    change_type=ChangeType.DELETED,
                    old_values=node.to_snapshot(),
                    reason=reason,
                )
            deleted = await repo.delete_requirements(node.id for node in subtree)

        logger.info(
            "Requirement deleted",
            requirement_key=root.requirement_key,
            deleted=deleted,
        )
        return deleted

    async def get_component(self, component_id: str) -> ComponentDB:
        async with get_async_session(self._session_factory) as session:
            component = await self._repo(session).get_component_by_id(component_id)
        if component is None:
            raise ComponentNotFoundError(component_id)
        return component
