from __future__ import annotations


class ReconcileError(RuntimeError):
    """A reconciliation attempt failed; the key is retried after a delay."""


class TemplateError(ReconcileError):
    """A Runtime or Connector template is missing or cannot be parsed."""


class DependencyMissingError(ReconcileError):
    """A Function's Runtime or a Flow's Connector is not in the cache."""


class TeardownTimeoutError(ReconcileError):
    """A Deployment did not scale to zero within the configured teardown timeout."""
