"""Archive - file-backed persistence for analysis results."""
from .store import ArchiveStore

__all__ = ["ArchiveStore"]
