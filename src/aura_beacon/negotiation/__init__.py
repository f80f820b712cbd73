"""Negotiation types. The state machine lives in ``negotiation.machine``."""

from .models import (
    DeclineReason,
    IllegalTransition,
    Inquiry,
    Intent,
    Negotiation,
    NegotiationStatus,
    Proposition,
    PropositionStatus,
)

__all__ = [
    "DeclineReason",
    "IllegalTransition",
    "Inquiry",
    "Intent",
    "Negotiation",
    "NegotiationStatus",
    "Proposition",
    "PropositionStatus",
]
