"""Database layer for the traceability store."""

from .config import (
    close_db,
    create_engine_for_url,
    create_session_factory,
    get_async_engine,
    get_async_session,
    get_database_url,
    get_session_factory,
    init_db,
)
from .models import (
    Base,
    ComponentDB,
    CoverageLinkDB,
    ApiEndpointDB,
    ImplementationDB,
    ImplementationLayerDB,
    ProjectDB,
    RequirementChangeDB,
    RequirementDB,
    TestCaseDB,
    TestFileDB,
)

__all__ = [
    "get_database_url",
    "create_engine_for_url",
    "create_session_factory",
    "get_async_engine",
    "get_session_factory",
    "get_async_session",
    "init_db",
    "close_db",
    "Base",
    "ProjectDB",
    "ComponentDB",
    "RequirementDB",
    "ImplementationDB",
    "ImplementationLayerDB",
    "ApiEndpointDB",
    "TestFileDB",
    "TestCaseDB",
    "CoverageLinkDB",
    "RequirementChangeDB",
]
