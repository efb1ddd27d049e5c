"""
Tests for the error hierarchy.
"""

from tracematrix.core.exceptions import (
    DocumentShapeError,
    InvalidReconcileModeError,
    InvalidRequirementTypeError,
    NotFoundError,
    ProjectNotFoundError,
    ReferentialIntegrityError,
    StorageError,
    TraceMatrixError,
    UniquenessConflictError,
)


def test_to_dict():
    error = ReferentialIntegrityError(
        "undeclared component", entity_key="SCOPE-1", stage="component", reference="billing"
    )

    assert error.to_dict() == {
        "error": {
            "code": "REFERENTIAL_INTEGRITY_ERROR",
            "message": "undeclared component",
            "details": {"entity_key": "SCOPE-1", "stage": "component", "reference": "billing"},
        }
    }


def test_entity_and_stage_properties():
    error = StorageError("disk full", entity_key="SCOPE-2", stage="commit")

    assert error.entity_key == "SCOPE-2"
    assert error.stage == "commit"
    assert str(error) == "disk full"


def test_missing_context_is_none():
    error = TraceMatrixError("boom")

    assert error.code == "INTERNAL_ERROR"
    assert error.entity_key is None
    assert error.stage is None


def test_shape_errors_are_parse_stage():
    error = DocumentShapeError("bad", entity_key="X", errors=[{"loc": ["requirements"], "msg": "m"}])

    assert error.stage == "parse"
    assert error.details["errors"][0]["msg"] == "m"


def test_invalid_type_is_a_shape_error():
    error = InvalidRequirementTypeError("epic")

    assert isinstance(error, DocumentShapeError)
    assert error.code == "INVALID_REQUIREMENT_TYPE"
    assert error.details["requirement_type"] == "epic"


def test_invalid_reconcile_mode():
    error = InvalidReconcileModeError("upsert")

    assert not isinstance(error, DocumentShapeError)
    assert error.to_dict()["error"]["code"] == "INVALID_RECONCILE_MODE"
    assert error.details == {"mode": "upsert"}
    assert "upsert" in error.message


def test_uniqueness_conflict_message():
    error = UniquenessConflictError("SCOPE-1", stage="requirement")

    assert error.message == "Duplicate key 'SCOPE-1'"
    assert error.code == "UNIQUENESS_CONFLICT"


def test_not_found_messages():
    assert NotFoundError("Widget").message == "Widget not found"

    error = ProjectNotFoundError("p1")
    assert isinstance(error, NotFoundError)
    assert error.code == "PROJECT_NOT_FOUND"
    assert error.message == "Project 'p1' not found"
