"""Orchestrators and activities shipped with durafaas."""

from .hello import registry as hello_registry

__all__ = ["hello_registry"]
