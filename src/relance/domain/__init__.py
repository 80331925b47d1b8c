from relance.domain.lifecycle import LineTransitionError
from relance.domain.models import (
    Campaign,
    Client,
    Document,
    Execution,
    Line,
    MatchProposal,
    Step,
)
from relance.domain.rules import ValidationError

__all__ = [
    "Campaign",
    "Client",
    "Document",
    "Execution",
    "Line",
    "LineTransitionError",
    "MatchProposal",
    "Step",
    "ValidationError",
]
