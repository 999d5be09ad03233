"""Context window management."""

from .estimator import TokenEstimator
from .manager import ContextManager
from .window import ContextWindow

__all__ = ["ContextManager", "ContextWindow", "TokenEstimator"]
