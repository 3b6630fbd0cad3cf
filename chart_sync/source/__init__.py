"""Sources of desired state revisions for releases."""

from .source import DesiredStateSource, SourceRevision
from .in_memory import InMemorySource
from .git import GitSource

__all__ = [
    "DesiredStateSource",
    "SourceRevision",
    "InMemorySource",
    "GitSource",
]
