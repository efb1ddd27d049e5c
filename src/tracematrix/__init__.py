"""Requirements traceability: hierarchy reconciliation and round-trip export."""

__version__ = "0.1.0"
