"""Controllers reconciling releases against a cluster."""

from .apply import Applier, ApplyResult
from .controller import ReleaseController
from .manager import ControllerManager
from .verify import Verifier, readiness

__all__ = [
    "Applier",
    "ApplyResult",
    "ReleaseController",
    "ControllerManager",
    "Verifier",
    "readiness",
]
