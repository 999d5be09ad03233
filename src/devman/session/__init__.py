"""Session loop."""

from .session import Session, SessionOutcome

__all__ = ["Session", "SessionOutcome"]
