"""
chart-sync keeps releases of a chart in a kubernetes cluster in sync with a
git repository.

A release is rendered from chart templates and layered values into an
ordered set of documents, compared with the live objects the release owns,
and the resulting creates, updates and deletes are applied and verified.
"""

__all__ = [
    "manifest",
    "values",
    "template",
    "chart",
    "renderer",
    "differ",
    "cluster",
    "source",
    "store",
    "controller",
    "config",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
