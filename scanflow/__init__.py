"""
scanflow: batch extraction of operator-drawn fields from scanned documents.

The layout covers the field registry and drawing geometry, the file queue,
and the orchestrator that drives each file through extraction and sync.
"""

__all__ = [
    "schema",
    "geometry",
    "file_queue",
    "orchestrator",
    "agents",
    "sync",
    "export",
    "templates",
]
