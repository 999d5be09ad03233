"""Application runtime."""

from .runtime import AppRuntime

__all__ = ["AppRuntime"]
