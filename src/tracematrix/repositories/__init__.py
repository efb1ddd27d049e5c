"""Repository layer for traceability persistence access."""

from .rtm_repo import ComponentSummary, CoverageRow, RTMRepository

__all__ = [
    "ComponentSummary",
    "CoverageRow",
    "RTMRepository",
]
