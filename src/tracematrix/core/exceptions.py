"""
Custom exception hierarchy for the traceability engine.
Provides structured errors carrying the offending entity and stage.
"""

from typing import Any, Optional


class TraceMatrixError(Exception):
    """Base exception for all traceability engine errors."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    @property
    def entity_key(self) -> Optional[str]:
        """Key of the entity that caused the failure, if known."""
        return self.details.get("entity_key")

    @property
    def stage(self) -> Optional[str]:
        """Reconciliation stage at which the failure happened, if known."""
        return self.details.get("stage")

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dictionary for callers and logs."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


def _context(
    entity_key: Optional[str],
    stage: Optional[str],
    extra: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    details: dict[str, Any] = {}
    if entity_key is not None:
        details["entity_key"] = entity_key
    if stage is not None:
        details["stage"] = stage
    if extra:
        details.update(extra)
    return details


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(TraceMatrixError):
    """Error in application configuration."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message=message, code="CONFIGURATION_ERROR", details=details)


# =============================================================================
# Parse / Shape Errors (raised before any transaction begins)
# =============================================================================


class DocumentShapeError(TraceMatrixError):
    """Malformed document: bad structure, unknown type or illegal nesting."""

    def __init__(
        self,
        message: str,
        entity_key: Optional[str] = None,
        errors: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        extra = {"errors": errors} if errors else None
        super().__init__(
            message=message,
            code="DOCUMENT_SHAPE_ERROR",
            details=_context(entity_key, "parse", extra),
        )


class InvalidRequirementTypeError(DocumentShapeError):
    """Requirement type outside {SCOPE, USER_STORY, TECH_SPEC}."""

    def __init__(self, requirement_type: str) -> None:
        super().__init__(message=f"Invalid requirement type: {requirement_type}")
        self.code = "INVALID_REQUIREMENT_TYPE"
        self.details["requirement_type"] = requirement_type


class InvalidReconcileModeError(TraceMatrixError):
    """Reconciliation mode outside {update, overwrite}."""

    def __init__(self, mode: str) -> None:
        super().__init__(
            message=f"Invalid reconcile mode: {mode}",
            code="INVALID_RECONCILE_MODE",
            details={"mode": mode},
        )


# =============================================================================
# Referential Errors
# =============================================================================


class ReferentialIntegrityError(TraceMatrixError):
    """A reference points at an undeclared, missing or wrong-type entity."""

    def __init__(
        self,
        message: str,
        entity_key: Optional[str] = None,
        stage: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> None:
        extra = {"reference": reference} if reference is not None else None
        super().__init__(
            message=message,
            code="REFERENTIAL_INTEGRITY_ERROR",
            details=_context(entity_key, stage, extra),
        )


class UniquenessConflictError(TraceMatrixError):
    """Duplicate key within its uniqueness scope."""

    def __init__(self, entity_key: str, stage: Optional[str] = None) -> None:
        super().__init__(
            message=f"Duplicate key '{entity_key}'",
            code="UNIQUENESS_CONFLICT",
            details=_context(entity_key, stage),
        )


# =============================================================================
# Not Found Errors
# =============================================================================


class NotFoundError(TraceMatrixError):
    """Requested entity not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        msg = message or f"{resource_type} not found"
        if resource_id:
            msg = f"{resource_type} '{resource_id}' not found"

        super().__init__(
            message=msg,
            code="NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class ProjectNotFoundError(NotFoundError):
    """Project not found."""

    def __init__(self, project_key: str) -> None:
        super().__init__(resource_type="Project", resource_id=project_key)
        self.code = "PROJECT_NOT_FOUND"


class ComponentNotFoundError(NotFoundError):
    """Component not found."""

    def __init__(self, component_id: str) -> None:
        super().__init__(resource_type="Component", resource_id=component_id)
        self.code = "COMPONENT_NOT_FOUND"


class RequirementNotFoundError(NotFoundError):
    """Requirement node not found."""

    def __init__(self, requirement_id: str) -> None:
        super().__init__(resource_type="Requirement", resource_id=requirement_id)
        self.code = "REQUIREMENT_NOT_FOUND"


# =============================================================================
# Storage Errors
# =============================================================================


class StorageError(TraceMatrixError):
    """Transactional store failure; fatal to the current operation."""

    def __init__(
        self,
        message: str,
        entity_key: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(
            message=message,
            code="STORAGE_ERROR",
            details=_context(entity_key, stage),
        )
