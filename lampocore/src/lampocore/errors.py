"""
Error taxonomy shared by every Lampo component.

Errors fall in three kinds:
- transient: the caller may retry later (``retryable`` is True)
- permanent: structural problems, retrying cannot help
- consistency: local state can no longer be trusted; an explicit recovery
  action (usually a rescan) is required before continuing
"""

from __future__ import annotations


class LampoError(Exception):
    """Base class for all Lampo errors."""

    retryable: bool = False


class TransientError(LampoError):
    retryable = True


class PermanentError(LampoError):
    retryable = False


class ConsistencyError(LampoError):
    retryable = False
    recovery: str = "rescan"


class UnsupportedNetwork(PermanentError):
    """The active network has no defined encoding or endpoint."""

    def __init__(self, network: object, what: str = "network"):
        self.network = network
        value = getattr(network, "value", network)
        super().__init__(f"{what} not supported for network '{value}'")
