"""Document to line reconciliation.

Scoring is pure: `score_candidate` only reads its inputs. `MatchingService`
owns the single write path (auto-match or proposal) and the human review
actions that follow it.
"""

from __future__ import annotations

import logging
import re
import threading
from datetime import date, datetime
from decimal import Decimal

from relance.config import MatchingConfig
from relance.domain import lifecycle
from relance.domain.models import Document, Line, MatchProposal
from relance.domain.rules import ValidationError
from relance.domain.stages import LineStatus, MatchStatus
from relance.services.events import EventLogger
from relance.services.utils import utc_now
from relance.store.repositories import DocumentRepository, LineRepository
from relance.store.sqlite import SqliteStore

logger = logging.getLogger(__name__)

STOPWORDS = frozenset(
    {
        # legal entity suffixes
        "sarl",
        "sas",
        "eurl",
        "sci",
        "sa",
        # payment markers found in bank labels
        "prlv",
        "virement",
        "vir",
        "prelevement",
        "paiement",
        "carte",
        "cb",
        "facture",
        "ref",
        # function words
        "le",
        "la",
        "les",
        "de",
        "du",
        "des",
        "au",
        "aux",
        "et",
        "ou",
    }
)
MAX_CONFIDENCE = Decimal("1.00")
_SEPARATORS_RE = re.compile(r"[\W_]+")

AMOUNT_TIERS = (
    (Decimal("0.01"), Decimal("0.50"), "exact amount"),
    (Decimal("1.00"), Decimal("0.40"), "amount within 1.00"),
    (Decimal("5.00"), Decimal("0.20"), "amount within 5.00"),
)
DATE_TIERS = (
    (1, Decimal("0.30"), "same date"),
    (7, Decimal("0.20"), "date within 7 days"),
    (30, Decimal("0.10"), "date within 30 days"),
)
VENDOR_MATCH = Decimal("0.20")
VENDOR_TOKEN_MATCH = Decimal("0.10")


def normalize_text(text: str | None) -> str:
    if not text:
        return ""
    tokens = _SEPARATORS_RE.sub(" ", text.lower()).split()
    return " ".join(token for token in tokens if len(token) >= 2 and token not in STOPWORDS)


def score_candidate(
    amount: Decimal | None,
    document_date: date | None,
    vendor: str | None,
    line: Line,
) -> tuple[Decimal, list[str]]:
    score = Decimal("0")
    reasons: list[str] = []

    if amount and amount.is_finite():
        diff = abs(amount - line.amount)
        for bound, points, reason in AMOUNT_TIERS:
            if diff < bound:
                score += points
                reasons.append(reason)
                break

    if document_date is not None and line.transaction_date is not None:
        days = abs((document_date - line.transaction_date).days)
        for bound, points, reason in DATE_TIERS:
            if days < bound:
                score += points
                reasons.append(reason)
                break

    vendor_text = normalize_text(vendor)
    label_text = normalize_text(line.label)
    if vendor_text and label_text:
        if vendor_text in label_text or label_text in vendor_text:
            score += VENDOR_MATCH
            reasons.append("vendor matches label")
        elif any(len(token) > 3 and token in label_text for token in vendor_text.split()):
            score += VENDOR_TOKEN_MATCH
            reasons.append("vendor partially matches label")

    return min(score, MAX_CONFIDENCE), reasons


class MatchingService:
    def __init__(
        self,
        store: SqliteStore,
        config: MatchingConfig | None = None,
        events: EventLogger | None = None,
    ) -> None:
        self.config = config or MatchingConfig()
        self.events = events
        self.lines = LineRepository(store)
        self.documents = DocumentRepository(store)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def find_matches(self, document: Document) -> list[MatchProposal]:
        if not document.client_id:
            return []
        scored: list[tuple[Decimal, Line, list[str]]] = []
        for line in self.lines.list_by_client(document.client_id):
            if not lifecycle.is_match_candidate(line.status):
                continue
            score, reasons = score_candidate(document.amount, document.document_date, document.vendor, line)
            if score >= self.config.proposal_threshold:
                scored.append((score, line, reasons))
        scored.sort(key=lambda item: (-item[0], item[1].created_at, item[1].line_id))
        return [
            MatchProposal(
                document_id=document.document_id,
                line_id=line.line_id,
                confidence=score,
                reasons=tuple(reasons),
            )
            for score, line, reasons in scored
        ]

    def auto_match(self, document: Document, now: datetime | None = None) -> MatchProposal | None:
        if not document.client_id:
            logger.info("Document %s has no client; skipping matching", document.document_id)
            return None
        with self._client_lock(document.client_id):
            proposals = self.find_matches(document)
            if not proposals:
                logger.info("No candidate line for document %s", document.document_id)
                return None
            best = proposals[0]
            now = now or utc_now()
            line = self.lines.get_by_id(best.line_id)
            if best.confidence >= self.config.auto_match_threshold and lifecycle.accepts_document(line.status):
                self.documents.update_match(
                    document.document_id, line.line_id, best.confidence, MatchStatus.AUTO_MATCHED, now
                )
                self.lines.update(lifecycle.transition(line, LineStatus.RECEIVED, now))
                logger.info(
                    "Auto-matched document %s to line %s (confidence %s)",
                    document.document_id,
                    line.line_id,
                    best.confidence,
                )
                self._event("auto_matched", best)
            else:
                self.documents.update_match(
                    document.document_id, line.line_id, best.confidence, MatchStatus.PENDING, now
                )
                logger.info(
                    "Proposed line %s for document %s (confidence %s)",
                    line.line_id,
                    document.document_id,
                    best.confidence,
                )
                self._event("proposed", best)
            return best

    def approve_document(self, document_id: str, now: datetime | None = None) -> Document:
        now = now or utc_now()
        document = self.documents.get_by_id(document_id)
        if not document.line_id:
            raise ValidationError(f"Document {document_id} is not linked to a line.")
        line = self.lines.get_by_id(document.line_id)
        self.documents.approve(document_id, now)
        if line.status != LineStatus.VALIDATED:
            self.lines.update(lifecycle.transition(line, LineStatus.VALIDATED, now))
        logger.info("Approved document %s for line %s", document_id, line.line_id)
        self._log("approved", document_id, {"line_id": line.line_id})
        return self.documents.get_by_id(document_id)

    def reject_document(self, document_id: str, now: datetime | None = None) -> Document:
        now = now or utc_now()
        document = self.documents.get_by_id(document_id)
        self.documents.reject(document_id, now)
        logger.info("Rejected document %s", document_id)
        self._log("rejected", document_id, {"line_id": document.line_id})
        return self.documents.get_by_id(document_id)

    def _client_lock(self, client_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(client_id, threading.Lock())

    def _event(self, event_type: str, proposal: MatchProposal) -> None:
        self._log(
            event_type,
            proposal.document_id,
            {
                "line_id": proposal.line_id,
                "confidence": str(proposal.confidence),
                "reasons": list(proposal.reasons),
            },
        )

    def _log(self, event_type: str, document_id: str, details: dict[str, object]) -> None:
        if self.events is None:
            return
        self.events.log(
            event_type=event_type,
            entity_type="document",
            entity_id=document_id,
            details=details,
        )
