"""Approval gate and timeout sweeper."""

from .gate import ApprovalGate, ApprovalOutcome, requires_approval
from .sweeper import ApprovalTimeoutSweeper, SweepReport

__all__ = [
    "ApprovalGate",
    "ApprovalOutcome",
    "requires_approval",
    "ApprovalTimeoutSweeper",
    "SweepReport",
]
