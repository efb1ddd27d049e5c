"""
Pytest configuration and fixtures.
"""

import itertools
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Awaitable, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tracematrix.database import (
    ApiEndpointDB,
    ComponentDB,
    CoverageLinkDB,
    ImplementationDB,
    ImplementationLayerDB,
    ProjectDB,
    RequirementChangeDB,
    RequirementDB,
    TestCaseDB,
    TestFileDB,
    create_engine_for_url,
    create_session_factory,
    get_async_session,
    init_db,
)
from tracematrix.repositories import RTMRepository
from tracematrix.services import Exporter, Reconciler, RequirementService
from tracematrix.services.audit_service import AuditService

TABLES = {
    "projects": ProjectDB,
    "components": ComponentDB,
    "requirements": RequirementDB,
    "implementations": ImplementationDB,
    "implementation_layers": ImplementationLayerDB,
    "test_files": TestFileDB,
    "test_cases": TestCaseDB,
    "coverage_links": CoverageLinkDB,
    "api_endpoints": ApiEndpointDB,
    "audit": RequirementChangeDB,
}


@pytest.fixture
def id_factory() -> Callable[[], str]:
    """Deterministic, monotonically increasing identifiers."""
    counter = itertools.count(1)
    return lambda: f"id-{next(counter):06d}"


@pytest.fixture
def clock() -> Callable[[], datetime]:
    """Clock advancing one second per reading."""
    ticks = itertools.count()
    start = datetime(2024, 1, 1, 12, 0, 0)
    return lambda: start + timedelta(seconds=next(ticks))


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh file-backed SQLite database per test."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'rtm.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def reconciler(session_factory, id_factory, clock) -> Reconciler:
    return Reconciler(session_factory, id_factory=id_factory, clock=clock, changed_by="tester")


@pytest.fixture
def exporter(session_factory, clock) -> Exporter:
    return Exporter(session_factory, clock=clock)


@pytest.fixture
def requirement_service(session_factory, id_factory, clock) -> RequirementService:
    return RequirementService(session_factory, id_factory=id_factory, clock=clock, changed_by="tester")


@pytest.fixture
def audit_service(session_factory, clock) -> AuditService:
    return AuditService(session_factory, clock=clock, changed_by="tester")


@pytest.fixture
def table_counts(session_factory) -> Callable[[], Awaitable[dict[str, int]]]:
    """Row count of every table, for asserting side effects."""

    async def count() -> dict[str, int]:
        async with get_async_session(session_factory) as session:
            repo = RTMRepository(session)
            return {name: await repo.count_rows(model) for name, model in TABLES.items()}

    return count


@pytest.fixture
def fetch_requirements(session_factory) -> Callable[[str], Awaitable[dict[str, RequirementDB]]]:
    """Requirement rows of a project keyed by requirement key."""

    async def fetch(project_key: str) -> dict[str, RequirementDB]:
        async with get_async_session(session_factory) as session:
            repo = RTMRepository(session)
            project = await repo.get_project_by_key(project_key)
            if project is None:
                return {}
            nodes = await repo.list_requirements(project.id)
            return {node.requirement_key: node for node in nodes}

    return fetch


@pytest.fixture
def scenario_document() -> dict[str, Any]:
    """Minimal three-level document: one scope, one story, one spec."""
    return {
        "project": "p1",
        "components": [{"key": "api"}],
        "requirements": [
            {
                "key": "SCOPE-1",
                "type": "SCOPE",
                "component_key": "api",
                "children": [
                    {
                        "key": "SCOPE-1-US-1",
                        "type": "USER_STORY",
                        "children": [
                            {"key": "SCOPE-1-US-1-TS-1", "type": "TECH_SPEC"},
                        ],
                    }
                ],
            }
        ],
    }


@pytest.fixture
def sample_document() -> dict[str, Any]:
    """Document with two components, implementations and test coverage."""
    return {
        "metadata": {"generated_at": "2024-01-01T00:00:00Z", "generated_by": "fixture"},
        "project": {
            "id": "shop",
            "name": "Shop",
            "description": "Online shop",
            "repository": "https://example.com/shop.git",
            "version": "1.0",
        },
        "components": [
            {"id": "api", "name": "API", "type": "backend", "technology": "python"},
            {"id": "web", "name": "Web", "type": "frontend", "technology": "react"},
        ],
        "requirements": [
            {
                "id": "SCOPE-1",
                "type": "scope",
                "component_id": "api",
                "name": "Authentication",
                "category": "security",
                "priority": "high",
                "status": "in_progress",
                "children": [
                    {
                        "id": "SCOPE-1-US-1",
                        "type": "user_story",
                        "name": "Login",
                        "acceptance_criteria": ["valid credentials log in", "bad password is rejected"],
                        "implementation": {
                            "backend": {
                                "files": [{"path": "api/auth.py", "functions": ["login", "verify"]}]
                            },
                            "database": {"files": [{"path": "db/users.sql"}]},
                        },
                        "test_coverage": {
                            "backend": [
                                {"file": "tests/test_auth.py", "functions": ["test_login", "test_bad_password"]},
                            ]
                        },
                        "children": [
                            {
                                "id": "SCOPE-1-US-1-TS-1",
                                "type": "tech_spec",
                                "name": "Hash passwords with bcrypt",
                                "implementation": {
                                    "backend": {"files": [{"path": "api/hashing.py", "functions": ["hash"]}]}
                                },
                                "test_coverage": {
                                    "backend": [
                                        {
                                            "file": "tests/test_auth.py",
                                            "functions": ["test_login"],
                                        },
                                        {
                                            "file": "tests/test_hashing.py",
                                            "functions": ["test_hash"],
                                            "type": "integration",
                                        },
                                    ]
                                },
                            }
                        ],
                    }
                ],
            },
            {
                "id": "SCOPE-2",
                "type": "scope",
                "component_id": "web",
                "name": "Storefront",
                "children": [],
            },
        ],
    }
