from __future__ import annotations

__all__ = ["ReconstructionError", "TransactionError", "InvalidParameterError"]


class ReconstructionError(Exception):
    r"""Base class for every error raised by :mod:`deltaray_reco`."""


class TransactionError(ReconstructionError):
    r"""
    The event store refused a structural mutation.

    Raised when a create, merge, delete or fragmentation request would leave
    the hit/cluster/pfo graph inconsistent (cluster outside the current list,
    hit owned twice, unfinished fragmentation, ...). The store makes no attempt
    to roll back, so the event that raised it must be abandoned.
    """


class InvalidParameterError(ReconstructionError, ValueError):
    r"""A query was called with malformed arguments (e.g. ``xmin > xmax``)."""
