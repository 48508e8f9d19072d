"""Disputes subsystem for jobflow.

The DisputeService lives in `service`.
"""

from jobflow.commerce.disputes.models import Dispute, DisputeKind, DisputeStatus

__all__ = [
    "Dispute",
    "DisputeKind",
    "DisputeStatus",
]
