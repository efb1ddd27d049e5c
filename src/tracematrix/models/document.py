"""Document models for requirement-traceability import and export.

A document is a project descriptor, its components and a forest of
requirement nodes. Nodes are a tagged variant with exactly three cases:

    ScopeNode      -> children: list[UserStoryNode]
    UserStoryNode  -> children: list[TechSpecNode]
    TechSpecNode   -> no children

so a TechSpec under a Scope (or any other illegal nesting) fails
validation instead of being accepted as a relaxed hierarchy.
"""

from typing import Annotated, Any, ClassVar, Iterator, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    field_validator,
    model_validator,
)

from tracematrix.core.constants import RequirementType


class DocumentModel(BaseModel):
    """Base for document models: field names or legacy aliases, extra keys ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# =============================================================================
# Implementation / test coverage annotations
# =============================================================================


class FileImplementation(DocumentModel):
    """A source file and the functions in it that implement a requirement."""

    path: str
    functions: list[str] = Field(default_factory=list)


class ApiCall(DocumentModel):
    """An API call made by frontend code."""

    method: str
    endpoint: str

    @field_validator("method")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return v.strip().upper()


class LayerImplementation(DocumentModel):
    """Implementation files for one layer (backend, frontend, database...).

    Frontend layers may list the API calls they make; database layers the
    tables they touch.
    """

    files: list[FileImplementation] = Field(default_factory=list)
    api_calls: Optional[list[ApiCall]] = None
    tables: Optional[list[str]] = None


class TestFileReference(DocumentModel):
    """A test file and the test cases in it covering a requirement."""

    __test__ = False

    file: str
    functions: list[str] = Field(default_factory=list)
    type: Optional[str] = Field(default=None, description="unit, integration, e2e...")


Implementation = dict[str, LayerImplementation]
TestCoverage = dict[str, list[TestFileReference]]


# =============================================================================
# Requirement nodes
# =============================================================================


def _normalize_type(value: Any) -> Any:
    try:
        return RequirementType.parse(value).value
    except ValueError:
        return value


class RequirementNodeBase(DocumentModel):
    """Fields shared by all three requirement levels."""

    requirement_type: ClassVar[RequirementType]

    key: str = Field(validation_alias=AliasChoices("key", "id", "requirement_key"))
    component_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("component_key", "component_id"),
    )
    title: str = Field(default="", validation_alias=AliasChoices("title", "name"))
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    acceptance_criteria: list[str] = Field(default_factory=list)
    implementation: Optional[Implementation] = None
    tests: Optional[TestCoverage] = Field(
        default=None,
        validation_alias=AliasChoices("tests", "test_coverage"),
    )

    @field_validator("type", mode="before", check_fields=False)
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        return _normalize_type(v)

    def child_nodes(self) -> list["RequirementNodeBase"]:
        """Children in document order (empty for TechSpecs)."""
        return list(getattr(self, "children", []))

    def walk(self) -> Iterator["RequirementNodeBase"]:
        """Depth-first, pre-order traversal of this subtree."""
        yield self
        for child in self.child_nodes():
            yield from child.walk()


class TechSpecNode(RequirementNodeBase):
    """Leaf level: a technical specification."""

    requirement_type: ClassVar[RequirementType] = RequirementType.TECH_SPEC

    type: Literal["TECH_SPEC"] = "TECH_SPEC"

    @model_validator(mode="before")
    @classmethod
    def reject_children(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("children"):
            raise ValueError("TECH_SPEC nodes cannot have children")
        return data


class UserStoryNode(RequirementNodeBase):
    """Middle level: a user story owning tech specs."""

    requirement_type: ClassVar[RequirementType] = RequirementType.USER_STORY

    type: Literal["USER_STORY"] = "USER_STORY"
    children: list[TechSpecNode] = Field(default_factory=list)


class ScopeNode(RequirementNodeBase):
    """Top level: a scope owning user stories."""

    requirement_type: ClassVar[RequirementType] = RequirementType.SCOPE

    type: Literal["SCOPE"] = "SCOPE"
    children: list[UserStoryNode] = Field(default_factory=list)


def _node_tag(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        raw = value.get("type")
    else:
        raw = getattr(value, "type", None)
    if raw is None:
        return None
    normalized = _normalize_type(raw)
    return normalized if isinstance(normalized, str) else None


RequirementNode = Annotated[
    Union[
        Annotated[ScopeNode, Tag("SCOPE")],
        Annotated[UserStoryNode, Tag("USER_STORY")],
        Annotated[TechSpecNode, Tag("TECH_SPEC")],
    ],
    Discriminator(_node_tag),
]


# =============================================================================
# Project, components, document
# =============================================================================


class ProjectDescriptor(DocumentModel):
    """Project identity and mutable descriptive fields."""

    key: str = Field(validation_alias=AliasChoices("key", "id", "project_key"))
    name: str = ""
    description: Optional[str] = None
    repository: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("repository", "repository_url"),
    )
    version: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def accept_bare_key(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"key": data}
        return data

    @model_validator(mode="after")
    def default_name(self) -> "ProjectDescriptor":
        if not self.name:
            self.name = self.key
        return self


class ComponentDescriptor(DocumentModel):
    """A system component declared by the document."""

    key: str = Field(validation_alias=AliasChoices("key", "id", "component_key"))
    name: str = ""
    type: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("type", "component_type"),
    )
    technology: Optional[str] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def default_name(self) -> "ComponentDescriptor":
        if not self.name:
            self.name = self.key
        return self


class ApiEndpointDescriptor(DocumentModel):
    """An API endpoint exposed by the project."""

    method: str
    path: str
    handler: Optional[str] = None
    description: Optional[str] = None

    @field_validator("method")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return v.strip().upper()


class DocumentMetadata(DocumentModel):
    """Provenance block written on export."""

    generated_at: Optional[str] = None
    generated_by: Optional[str] = None
    project: Optional[ProjectDescriptor] = None


class RTMDocument(DocumentModel):
    """Requirements traceability document in normalized (nested) form."""

    metadata: Optional[DocumentMetadata] = None
    project: ProjectDescriptor
    components: list[ComponentDescriptor] = Field(
        default_factory=list,
        validation_alias=AliasChoices("components", "system_components"),
    )
    requirements: list[RequirementNode] = Field(default_factory=list)
    api_endpoints: list[ApiEndpointDescriptor] = Field(default_factory=list)

    def iter_nodes(self) -> Iterator[RequirementNodeBase]:
        """Every node in the document, depth-first in document order."""
        for root in self.requirements:
            yield from root.walk()

    def component_keys(self) -> list[str]:
        return [component.key for component in self.components]
