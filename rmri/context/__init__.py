"""Versioned context store for intermediate agent outputs."""

from rmri.context.store import (
    ContextListing,
    ContextRecord,
    ContextStore,
    SQLContextStore,
    WriteMode,
)

__all__ = ["ContextListing", "ContextRecord", "ContextStore", "SQLContextStore", "WriteMode"]
