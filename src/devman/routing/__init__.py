"""Inbound message routing."""

from .scope import AccessPolicy, RoutedRequest, ScopeRouter, render_inbound

__all__ = ["AccessPolicy", "RoutedRequest", "ScopeRouter", "render_inbound"]
