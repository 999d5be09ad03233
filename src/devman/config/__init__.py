"""Configuration for devman."""

from .settings import ConsumerPolicy, Settings

__all__ = ["ConsumerPolicy", "Settings"]
