"""
System-wide constants for the traceability engine.
"""

from enum import Enum


# =============================================================================
# Enums
# =============================================================================


class RequirementType(str, Enum):
    """The three fixed levels of the requirement hierarchy, coarse-to-fine."""

    SCOPE = "SCOPE"
    USER_STORY = "USER_STORY"
    TECH_SPEC = "TECH_SPEC"

    @classmethod
    def parse(cls, value: "str | RequirementType") -> "RequirementType":
        """Parse a type tag case-insensitively (``scope``, ``User_Story``...)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"unknown requirement type: {value!r}") from None

    @property
    def parent_type(self) -> "RequirementType | None":
        """Type a parent node must have, or None for roots."""
        return _PARENT_TYPES[self]

    @property
    def child_type(self) -> "RequirementType | None":
        """Only legal child type, or None for leaves."""
        return _CHILD_TYPES[self]


_PARENT_TYPES = {
    RequirementType.SCOPE: None,
    RequirementType.USER_STORY: RequirementType.SCOPE,
    RequirementType.TECH_SPEC: RequirementType.USER_STORY,
}

_CHILD_TYPES = {
    RequirementType.SCOPE: RequirementType.USER_STORY,
    RequirementType.USER_STORY: RequirementType.TECH_SPEC,
    RequirementType.TECH_SPEC: None,
}


class ReconcileMode(str, Enum):
    """Reconciliation modes."""

    UPDATE = "update"
    OVERWRITE = "overwrite"

    @classmethod
    def parse(cls, value: "str | ReconcileMode") -> "ReconcileMode":
        """Parse a mode name case-insensitively."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"unknown reconcile mode: {value!r}") from None


class ChangeType(str, Enum):
    """Kinds of audited requirement mutations."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class TestType(str, Enum):
    """Test artifact type tags."""

    __test__ = False

    UNIT = "unit"
    INTEGRATION = "integration"
    E2E = "e2e"


# =============================================================================
# Defaults
# =============================================================================

DEFAULT_PRIORITY = "medium"
DEFAULT_STATUS = "not_started"
DEFAULT_TEST_TYPE = TestType.UNIT.value
DEFAULT_CHANGED_BY = "system"

EXPORT_GENERATED_BY = "tracematrix export"

# =============================================================================
# Key conventions
# =============================================================================

SCOPE_KEY_PREFIX = "SCOPE-"
USER_STORY_KEY_INFIX = "-US-"
TECH_SPEC_KEY_INFIX = "-TS-"

# =============================================================================
# Document files
# =============================================================================

JSON_EXTENSIONS = frozenset({".json"})
YAML_EXTENSIONS = frozenset({".yaml", ".yml"})
