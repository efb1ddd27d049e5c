"""SQLAlchemy database models for the requirements traceability store."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from tracematrix.core.constants import ChangeType, RequirementType


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class ProjectDB(Base):
    """Project being tracked.

    Created or updated on import; never implicitly deleted.
    """
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    repository_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    version: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="active", nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    components: Mapped[list["ComponentDB"]] = relationship(
        "ComponentDB",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )


class ComponentDB(Base):
    """Deployable system component, unique by key within its project."""
    __tablename__ = "system_components"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    component_key: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    component_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    technology: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    project: Mapped["ProjectDB"] = relationship(
        "ProjectDB",
        back_populates="components",
        lazy="raise",
    )

    __table_args__ = (
        UniqueConstraint("project_id", "component_key", name="uq_components_project_key"),
    )


class RequirementDB(Base):
    """Requirement node: Scope, UserStory or TechSpec.

    ``parent_requirement_id`` is a self reference; deleting a node cascades
    to its descendants and their implementation / coverage rows.
    """
    __tablename__ = "requirements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    component_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("system_components.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    parent_requirement_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("requirements.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    requirement_key: Mapped[str] = mapped_column(String(255), nullable=False)
    requirement_type: Mapped[RequirementType] = mapped_column(
        Enum(RequirementType),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    priority: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    acceptance_criteria: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    implementations: Mapped[list["ImplementationDB"]] = relationship(
        "ImplementationDB",
        back_populates="requirement",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ImplementationDB.position",
        lazy="raise",
    )

    __table_args__ = (
        UniqueConstraint("project_id", "requirement_key", name="uq_requirements_project_key"),
        Index("ix_requirements_project_type", "project_id", "requirement_type"),
    )

    def to_snapshot(self) -> dict:
        """Serializable state used for audit entries and change detection."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "component_id": self.component_id,
            "parent_requirement_id": self.parent_requirement_id,
            "requirement_key": self.requirement_key,
            "requirement_type": RequirementType(self.requirement_type).value,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "priority": self.priority,
            "status": self.status,
            "acceptance_criteria": list(self.acceptance_criteria or []),
        }


class ImplementationDB(Base):
    """Source file implementing a requirement in one layer."""
    __tablename__ = "implementations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    requirement_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("requirements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    layer: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    functions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    requirement: Mapped["RequirementDB"] = relationship(
        "RequirementDB",
        back_populates="implementations",
        lazy="raise",
    )


class ImplementationLayerDB(Base):
    """Layer-level implementation details: frontend API calls, database tables."""
    __tablename__ = "implementation_layers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    requirement_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("requirements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    layer: Mapped[str] = mapped_column(String(50), nullable=False)
    api_calls: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    tables: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("requirement_id", "layer", name="uq_implementation_layers_requirement_layer"),
    )


class ApiEndpointDB(Base):
    """API endpoint exposed by the project, unique per method and path."""
    __tablename__ = "api_endpoints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    path: Mapped[str] = mapped_column(String(1024), nullable=False)
    handler: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("project_id", "method", "path", name="uq_api_endpoints_project_method_path"),
    )


class TestFileDB(Base):
    """Test file, deduplicated per project by path."""
    __tablename__ = "test_files"
    __test__ = False

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    test_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    layer: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("project_id", "file_path", name="uq_test_files_project_path"),
    )


class TestCaseDB(Base):
    """Individual test case, deduplicated per file by name."""
    __tablename__ = "test_cases"
    __test__ = False

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    test_file_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("test_files.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    test_name: Mapped[str] = mapped_column(String(512), nullable=False)
    test_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("test_file_id", "test_name", name="uq_test_cases_file_name"),
    )


class CoverageLinkDB(Base):
    """Many-to-many link between a requirement and a test case."""
    __tablename__ = "requirement_test_coverage"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    requirement_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("requirements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    test_case_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("test_cases.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    coverage_type: Mapped[str] = mapped_column(String(50), default="requirement", nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("requirement_id", "test_case_id", name="uq_coverage_requirement_case"),
    )


class RequirementChangeDB(Base):
    """Append-only audit entry for a requirement mutation.

    Deliberately carries no foreign keys: audit history outlives the
    project and requirement it describes.
    """
    __tablename__ = "requirement_changes"

    # Autoincrement key doubles as the insertion order of the history
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    requirement_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    requirement_key: Mapped[str] = mapped_column(String(255), nullable=False)

    change_type: Mapped[ChangeType] = mapped_column(Enum(ChangeType), nullable=False)
    old_values: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    new_values: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    changed_by: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
    change_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
