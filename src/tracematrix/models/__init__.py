"""Document models for import and export."""

from .document import (
    ComponentDescriptor,
    DocumentMetadata,
    FileImplementation,
    Implementation,
    LayerImplementation,
    ProjectDescriptor,
    RequirementNode,
    RequirementNodeBase,
    RTMDocument,
    ScopeNode,
    TechSpecNode,
    TestCoverage,
    TestFileReference,
    UserStoryNode,
)

__all__ = [
    "ComponentDescriptor",
    "DocumentMetadata",
    "FileImplementation",
    "Implementation",
    "LayerImplementation",
    "ProjectDescriptor",
    "RequirementNode",
    "RequirementNodeBase",
    "RTMDocument",
    "ScopeNode",
    "TechSpecNode",
    "TestCoverage",
    "TestFileReference",
    "UserStoryNode",
]
