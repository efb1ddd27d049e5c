"""Traceability services: reconciliation, export, audit and key generation."""

from .audit_service import AuditService
from .document_loader import (
    dump_document,
    load_document,
    normalize_requirements,
    parse_document,
    write_document,
)
from .exporter import Exporter, build_document
from .key_generator import KeyGenerator, next_key
from .reconciler import Reconciler, ReconcileResult
from .requirement_service import RequirementService

__all__ = [
    "AuditService",
    "Exporter",
    "KeyGenerator",
    "Reconciler",
    "ReconcileResult",
    "RequirementService",
    "build_document",
    "dump_document",
    "load_document",
    "next_key",
    "normalize_requirements",
    "parse_document",
    "write_document",
]
