"""Sequential human-facing key generation for new requirement nodes.

Keys follow a prefix + integer convention scoped to the node's siblings:

    SCOPE-<n>                 per (project, component)
    <scope key>-US-<n>        per parent scope
    <user story key>-TS-<n>   per parent user story
"""

from __future__ import annotations

import re
from typing import Iterable, Optional

from tracematrix.core.constants import (
    SCOPE_KEY_PREFIX,
    TECH_SPEC_KEY_INFIX,
    USER_STORY_KEY_INFIX,
    RequirementType,
)
from tracematrix.core.exceptions import (
    InvalidRequirementTypeError,
    ReferentialIntegrityError,
)
from tracematrix.core.logging import get_logger
from tracematrix.repositories.rtm_repo import RTMRepository

logger = get_logger(__name__)

_TRAILING_DIGITS = re.compile(r"(\d+)$")


def key_suffix(key: str) -> Optional[int]:
    """Integer value of the trailing decimal digits of ``key``, if any."""
    match = _TRAILING_DIGITS.search(key)
    return int(match.group(1)) if match else None


def next_key(prefix: str, existing_sibling_keys: Iterable[str]) -> str:
    """Next key under ``prefix`` given the keys already used by siblings.

    The suffix is one more than the largest trailing integer found among
    the siblings, compared numerically so that ``SCOPE-10`` follows
    ``SCOPE-9``. Siblings without trailing digits are ignored; with no
    numbered sibling the suffix is 1.

    >>> next_key("SCOPE-", ["SCOPE-1", "SCOPE-9", "SCOPE-10"])
    'SCOPE-11'
    >>> next_key("SCOPE-3-US-", [])
    'SCOPE-3-US-1'
    """
    suffixes = [s for s in (key_suffix(k) for k in existing_sibling_keys) if s is not None]
    return f"{prefix}{max(suffixes, default=0) + 1}"


def key_prefix(requirement_type: RequirementType, parent_key: Optional[str] = None) -> str:
    """Prefix for a new key of ``requirement_type`` under ``parent_key``."""
    if requirement_type == RequirementType.SCOPE:
        return SCOPE_KEY_PREFIX
    if parent_key is None:
        raise ValueError(f"{requirement_type.value} keys need a parent key")
    if requirement_type == RequirementType.USER_STORY:
        return f"{parent_key}{USER_STORY_KEY_INFIX}"
    return f"{parent_key}{TECH_SPEC_KEY_INFIX}"


class KeyGenerator:
    """Derives the next unused key for a node from the persisted siblings."""

    def __init__(self, repository: RTMRepository) -> None:
        self.repository = repository

    async def generate(
        self,
        project_id: str,
        component_id: str,
        requirement_type: RequirementType | str,
        parent_id: Optional[str] = None,
    ) -> str:
        """Generate the next key for a new node.

        Args:
            project_id: Owning project.
            component_id: Owning component (scopes are numbered per component).
            requirement_type: Type of the node being created.
            parent_id: Parent node; required for user stories and tech specs.

        Returns:
            The new human-facing key.

        Raises:
            InvalidRequirementTypeError: Unknown requirement type.
            ReferentialIntegrityError: Missing, unknown or wrong-type parent.
        """
        try:
            requirement_type = RequirementType.parse(requirement_type)
        except ValueError:
            raise InvalidRequirementTypeError(str(requirement_type)) from None

        if requirement_type == RequirementType.SCOPE:
            siblings = await self.repository.sibling_keys(
                project_id, requirement_type, component_id=component_id
            )
            key = next_key(key_prefix(requirement_type), siblings)
            logger.debug("Generated key", key=key, requirement_type=requirement_type.value)
            return key

        if parent_id is None:
            raise ReferentialIntegrityError(
                f"{requirement_type.value} requires a parent",
                stage="key_generation",
            )
        parent = await self.repository.get_requirement(parent_id)
        if parent is None or parent.project_id != project_id:
            raise ReferentialIntegrityError(
                f"Parent requirement '{parent_id}' not found",
                stage="key_generation",
                reference=parent_id,
            )
        if RequirementType(parent.requirement_type) != requirement_type.parent_type:
            raise ReferentialIntegrityError(
                f"{requirement_type.value} cannot be a child of "
                f"{RequirementType(parent.requirement_type).value}",
                entity_key=parent.requirement_key,
                stage="key_generation",
                reference=parent_id,
            )

        siblings = await self.repository.sibling_keys(
            project_id, requirement_type, parent_id=parent.id
        )
        key = next_key(key_prefix(requirement_type, parent.requirement_key), siblings)
        logger.debug("Generated key", key=key, requirement_type=requirement_type.value)
        return key
