"""
Tests for key generation.
"""

import pytest

from tracematrix.core.constants import RequirementType
from tracematrix.core.exceptions import (
    InvalidRequirementTypeError,
    ReferentialIntegrityError,
)
from tracematrix.services.key_generator import key_prefix, key_suffix, next_key
from tracematrix.services.requirement_service import RequirementService


class TestNextKey:
    """Tests for the pure next_key function."""

    def test_first_key_is_one(self):
        assert next_key("SCOPE-", []) == "SCOPE-1"

    def test_increments_largest_suffix(self):
        assert next_key("SCOPE-", ["SCOPE-1", "SCOPE-3", "SCOPE-2"]) == "SCOPE-4"

    def test_suffix_compared_numerically(self):
        assert next_key("SCOPE-", ["SCOPE-9", "SCOPE-10"]) == "SCOPE-11"

    def test_keys_without_digits_are_ignored(self):
        assert next_key("SCOPE-1-US-", ["SCOPE-1-US-DRAFT"]) == "SCOPE-1-US-1"

    def test_gaps_are_not_filled(self):
        assert next_key("SCOPE-", ["SCOPE-1", "SCOPE-7"]) == "SCOPE-8"

    def test_successive_keys_are_gapless(self):
        keys: list[str] = []
        for _ in range(12):
            keys.append(next_key("SCOPE-", keys))

        assert [key_suffix(k) for k in keys] == list(range(1, 13))

    def test_key_suffix(self):
        assert key_suffix("SCOPE-1-US-12") == 12
        assert key_suffix("LOGIN") is None

    def test_key_prefix(self):
        assert key_prefix(RequirementType.SCOPE) == "SCOPE-"
        assert key_prefix(RequirementType.USER_STORY, "SCOPE-2") == "SCOPE-2-US-"
        assert key_prefix(RequirementType.TECH_SPEC, "SCOPE-2-US-1") == "SCOPE-2-US-1-TS-"

    def test_key_prefix_requires_parent_for_children(self):
        with pytest.raises(ValueError):
            key_prefix(RequirementType.TECH_SPEC)


class TestKeyGenerator:
    """Tests for store-backed key generation."""

    @pytest.fixture
    async def owner(self, requirement_service: RequirementService):
        project = await requirement_service.create_project("p1")
        api = await requirement_service.create_component("p1", "api")
        web = await requirement_service.create_component("p1", "web")
        return project, api, web

    @pytest.mark.asyncio
    async def test_scope_keys_are_monotonic(self, requirement_service, owner):
        project, api, _ = owner

        keys = []
        for i in range(5):
            requirement = await requirement_service.create_requirement(
                project.id, api.id, "scope", title=f"Scope {i}"
            )
            keys.append(requirement.requirement_key)

        assert keys == ["SCOPE-1", "SCOPE-2", "SCOPE-3", "SCOPE-4", "SCOPE-5"]

    @pytest.mark.asyncio
    async def test_scope_keys_are_scoped_per_component(self, requirement_service, owner):
        project, api, web = owner
        await requirement_service.create_requirement(project.id, api.id, "SCOPE", title="a")
        await requirement_service.create_requirement(project.id, api.id, "SCOPE", title="b")

        assert await requirement_service.generate_key(project.id, web.id, "SCOPE") == "SCOPE-1"
        assert await requirement_service.generate_key(project.id, api.id, "SCOPE") == "SCOPE-3"

    @pytest.mark.asyncio
    async def test_child_keys_extend_parent_key(self, requirement_service, owner):
        project, api, _ = owner
        scope = await requirement_service.create_requirement(project.id, api.id, "SCOPE", title="s")
        story = await requirement_service.create_requirement(
            project.id, api.id, "USER_STORY", title="u", parent_id=scope.id
        )
        second_story = await requirement_service.create_requirement(
            project.id, api.id, "USER_STORY", title="u2", parent_id=scope.id
        )
        spec = await requirement_service.create_requirement(
            project.id, api.id, "TECH_SPEC", title="t", parent_id=story.id
        )

        assert story.requirement_key == "SCOPE-1-US-1"
        assert second_story.requirement_key == "SCOPE-1-US-2"
        assert spec.requirement_key == "SCOPE-1-US-1-TS-1"

    @pytest.mark.asyncio
    async def test_siblings_follow_explicit_keys(self, requirement_service, owner):
        project, api, _ = owner
        await requirement_service.create_requirement(
            project.id, api.id, "SCOPE", title="imported", requirement_key="SCOPE-9"
        )

        assert await requirement_service.generate_key(project.id, api.id, "SCOPE") == "SCOPE-10"

    @pytest.mark.asyncio
    async def test_child_requires_parent(self, requirement_service, owner):
        project, api, _ = owner

        with pytest.raises(ReferentialIntegrityError):
            await requirement_service.generate_key(project.id, api.id, "USER_STORY")

    @pytest.mark.asyncio
    async def test_unknown_parent(self, requirement_service, owner):
        project, api, _ = owner

        with pytest.raises(ReferentialIntegrityError) as exc_info:
            await requirement_service.generate_key(project.id, api.id, "USER_STORY", "missing")

        assert exc_info.value.details["reference"] == "missing"

    @pytest.mark.asyncio
    async def test_wrong_parent_type(self, requirement_service, owner):
        project, api, _ = owner
        scope = await requirement_service.create_requirement(project.id, api.id, "SCOPE", title="s")

        with pytest.raises(ReferentialIntegrityError):
            await requirement_service.generate_key(project.id, api.id, "TECH_SPEC", scope.id)

    @pytest.mark.asyncio
    async def test_invalid_type(self, requirement_service, owner):
        project, api, _ = owner

        with pytest.raises(InvalidRequirementTypeError):
            await requirement_service.generate_key(project.id, api.id, "EPIC")
