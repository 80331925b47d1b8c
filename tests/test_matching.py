import threading
import time
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from relance.domain.models import Document, Line
from relance.domain.rules import ValidationError
from relance.domain.stages import LineStatus, MatchStatus, OcrStatus
from relance.services import intake
from relance.services.matching import MatchingService, normalize_text, score_candidate
from relance.store.repositories import DocumentRepository, LineRepository
from relance.store.sqlite import SqliteStore

NOW = datetime(2026, 1, 20, 10, 0, tzinfo=UTC)


def _store(tmp_path: Path) -> SqliteStore:
    db_path = tmp_path / "test.sqlite"
    store = SqliteStore(db_path)
    schema_path = (
        Path(__file__).resolve().parents[1] / "resources" / "schema" / "canonical.yaml"
    )
    store.apply_schema(schema_path)
    return store


def _line(
    store: SqliteStore,
    client_id: str,
    amount: str,
    on: date,
    label: str | None = None,
    status: LineStatus = LineStatus.PENDING,
    created_offset: int = 0,
) -> Line:
    created = NOW - timedelta(days=30) + timedelta(minutes=created_offset)
    line = Line(
        line_id=f"line-{amount}-{on.isoformat()}-{created_offset}",
        tenant_id="tenant-a",
        client_id=client_id,
        amount=Decimal(amount),
        transaction_date=on,
        label=label,
        status=status,
        contact_count=0,
        last_contacted_at=None,
        created_at=created,
        updated_at=created,
    )
    return LineRepository(store).create(line)


def _document(
    store: SqliteStore,
    client_id: str | None,
    amount: str | None,
    on: date | None,
    vendor: str | None = None,
) -> Document:
    document = Document(
        document_id=f"doc-{amount}-{vendor}",
        client_id=client_id,
        line_id=None,
        amount=Decimal(amount) if amount else None,
        document_date=on,
        vendor=vendor,
        ocr_status=OcrStatus.COMPLETED,
        match_status=MatchStatus.PENDING,
        match_confidence=Decimal("0"),
        matched_at=None,
        created_at=NOW,
        updated_at=NOW,
    )
    return DocumentRepository(store).create(document)


def test_normalize_text_strips_noise() -> None:
    assert normalize_text("PRLV SEPA ORANGE SA - Facture n°12") == "sepa orange 12"
    assert normalize_text("Le Bon_Coin SARL") == "bon coin"
    assert normalize_text("a b c") == ""
    assert normalize_text(None) == ""


def test_score_exact_match_caps_at_one() -> None:
    line = Line(
        line_id="l1",
        tenant_id="t",
        client_id="c",
        amount=Decimal("100.00"),
        transaction_date=date(2026, 1, 10),
        label="CB AMAZON EU",
        status=LineStatus.PENDING,
        contact_count=0,
        last_contacted_at=None,
        created_at=NOW,
        updated_at=NOW,
    )
    score, reasons = score_candidate(Decimal("100.00"), date(2026, 1, 10), "Amazon", line)
    assert score == Decimal("1.00")
    assert reasons == ["exact amount", "same date", "vendor matches label"]


def test_score_signals_are_tiered() -> None:
    line = Line(
        line_id="l1",
        tenant_id="t",
        client_id="c",
        amount=Decimal("100.00"),
        transaction_date=date(2026, 1, 10),
        label="VIR SEPA DUPONT PLOMBERIE",
        status=LineStatus.PENDING,
        contact_count=0,
        last_contacted_at=None,
        created_at=NOW,
        updated_at=NOW,
    )
    score, _ = score_candidate(Decimal("100.50"), date(2026, 1, 14), None, line)
    assert score == Decimal("0.60")
    score, _ = score_candidate(Decimal("96.00"), date(2026, 2, 1), None, line)
    assert score == Decimal("0.30")
    score, _ = score_candidate(Decimal("50.00"), date(2026, 6, 1), None, line)
    assert score == Decimal("0")
    score, reasons = score_candidate(None, None, "Plomberie Martin", line)
    assert score == Decimal("0.10")
    assert reasons == ["vendor partially matches label"]


@pytest.mark.parametrize("amount", [None, "0", "0.004", "100.00", "99999.99", "NaN", "Infinity", "-Infinity"])
@pytest.mark.parametrize("on", [None, date(2026, 1, 10), date(2025, 1, 1)])
@pytest.mark.parametrize("vendor", [None, "", "SARL", "Amazon", "amazon eu marketplace"])
def test_score_is_bounded(amount, on, vendor) -> None:
    line = Line(
        line_id="l1",
        tenant_id="t",
        client_id="c",
        amount=Decimal("100.00"),
        transaction_date=date(2026, 1, 10),
        label="Amazon EU",
        status=LineStatus.PENDING,
        contact_count=0,
        last_contacted_at=None,
        created_at=NOW,
        updated_at=NOW,
    )
    score, _ = score_candidate(Decimal(amount) if amount else None, on, vendor, line)
    assert Decimal("0") <= score <= Decimal("1")


def test_find_matches_ranks_closest_line_first(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    far = _line(store, client.client_id, "100.40", date(2026, 1, 20), created_offset=0)
    exact = _line(store, client.client_id, "100.00", date(2026, 1, 10), created_offset=1)
    document = _document(store, client.client_id, "100.00", date(2026, 1, 10))

    proposals = MatchingService(store).find_matches(document)

    assert [p.line_id for p in proposals] == [exact.line_id, far.line_id]
    assert proposals[0].confidence > proposals[1].confidence


def test_find_matches_breaks_ties_by_creation(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    later = _line(store, client.client_id, "50.00", date(2026, 1, 10), created_offset=5)
    earlier = _line(store, client.client_id, "50.00", date(2026, 1, 10), created_offset=1)
    document = _document(store, client.client_id, "50.00", date(2026, 1, 10))

    proposals = MatchingService(store).find_matches(document)

    assert [p.line_id for p in proposals] == [earlier.line_id, later.line_id]


def test_find_matches_skips_validated_and_other_clients(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    other = intake.add_client(store, "tenant-a", "Garage Dupuis")
    _line(store, client.client_id, "80.00", date(2026, 1, 10), status=LineStatus.VALIDATED)
    _line(store, other.client_id, "80.00", date(2026, 1, 10), created_offset=1)
    document = _document(store, client.client_id, "80.00", date(2026, 1, 10))

    assert MatchingService(store).find_matches(document) == []


def test_find_matches_without_client_is_empty(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    _line(store, client.client_id, "80.00", date(2026, 1, 10))
    document = _document(store, None, "80.00", date(2026, 1, 10))

    matcher = MatchingService(store)
    assert matcher.find_matches(document) == []
    assert matcher.auto_match(document, NOW) is None


def test_auto_match_above_threshold_marks_line_received(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    line = _line(store, client.client_id, "100.00", date(2026, 1, 10), label="PRLV ORANGE")
    document = _document(store, client.client_id, "100.00", date(2026, 1, 12), vendor="Orange")

    proposal = MatchingService(store).auto_match(document, NOW)

    assert proposal is not None
    assert proposal.confidence == Decimal("0.90")
    stored = DocumentRepository(store).get_by_id(document.document_id)
    assert stored.match_status == MatchStatus.AUTO_MATCHED
    assert stored.line_id == line.line_id
    assert stored.match_confidence == Decimal("0.90")
    assert stored.matched_at == NOW
    assert LineRepository(store).get_by_id(line.line_id).status == LineStatus.RECEIVED


def test_auto_match_below_threshold_only_proposes(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    line = _line(store, client.client_id, "100.00", date(2026, 1, 10))
    document = _document(store, client.client_id, "100.50", date(2026, 1, 14))

    proposal = MatchingService(store).auto_match(document, NOW)

    assert proposal is not None
    assert proposal.confidence == Decimal("0.60")
    stored = DocumentRepository(store).get_by_id(document.document_id)
    assert stored.match_status == MatchStatus.PENDING
    assert stored.line_id == line.line_id
    assert stored.matched_at is None
    assert LineRepository(store).get_by_id(line.line_id).status == LineStatus.PENDING


def test_auto_match_needs_a_line_that_accepts_documents(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    line = _line(
        store, client.client_id, "100.00", date(2026, 1, 10), label="PRLV ORANGE", status=LineStatus.RECEIVED
    )
    document = _document(store, client.client_id, "100.00", date(2026, 1, 10), vendor="Orange")

    MatchingService(store).auto_match(document, NOW)

    stored = DocumentRepository(store).get_by_id(document.document_id)
    assert stored.match_status == MatchStatus.PENDING
    assert LineRepository(store).get_by_id(line.line_id).status == LineStatus.RECEIVED


def test_auto_match_without_candidates_leaves_document(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    _line(store, client.client_id, "10.00", date(2025, 3, 1))
    document = _document(store, client.client_id, "900.00", date(2026, 1, 10))

    assert MatchingService(store).auto_match(document, NOW) is None
    stored = DocumentRepository(store).get_by_id(document.document_id)
    assert stored.line_id is None
    assert stored.match_status == MatchStatus.PENDING



def test_concurrent_auto_match_links_one_document_per_line(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    line = _line(store, client.client_id, "100.00", date(2026, 1, 10), label="PRLV ORANGE")
    documents = [
        _document(store, client.client_id, "100.00", date(2026, 1, 10), vendor="Orange"),
        _document(store, client.client_id, "100.00", date(2026, 1, 10), vendor="Orange SA"),
    ]
    barrier = threading.Barrier(len(documents))

    class SlowMatcher(MatchingService):
        def find_matches(self, document):
            proposals = super().find_matches(document)
            time.sleep(0.05)
            return proposals

    matcher = SlowMatcher(store)
    errors: list[BaseException] = []

    def run(document: Document) -> None:
        barrier.wait()
        try:
            matcher.auto_match(document, NOW)
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(document,)) for document in documents]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    statuses = sorted(
        DocumentRepository(store).get_by_id(document.document_id).match_status.value for document in documents
    )
    assert statuses == [MatchStatus.AUTO_MATCHED.value, MatchStatus.PENDING.value]
    assert LineRepository(store).get_by_id(line.line_id).status == LineStatus.RECEIVED

def test_approve_validates_line(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    line = _line(store, client.client_id, "100.00", date(2026, 1, 10))
    document = _document(store, client.client_id, "100.50", date(2026, 1, 14))
    matcher = MatchingService(store)
    matcher.auto_match(document, NOW)

    approved = matcher.approve_document(document.document_id, NOW)

    assert approved.match_status == MatchStatus.APPROVED
    assert LineRepository(store).get_by_id(line.line_id).status == LineStatus.VALIDATED


def test_approve_requires_linked_line(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    document = _document(store, client.client_id, "100.00", date(2026, 1, 10))

    with pytest.raises(ValidationError):
        MatchingService(store).approve_document(document.document_id, NOW)


def test_reject_unlinks_document(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    line = _line(store, client.client_id, "100.00", date(2026, 1, 10))
    document = _document(store, client.client_id, "100.50", date(2026, 1, 14))
    matcher = MatchingService(store)
    matcher.auto_match(document, NOW)

    rejected = matcher.reject_document(document.document_id, NOW)

    assert rejected.match_status == MatchStatus.REJECTED
    assert rejected.line_id is None
    assert LineRepository(store).get_by_id(line.line_id).status == LineStatus.PENDING


def test_ingest_document_runs_matching(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    line = _line(store, client.client_id, "59.99", date(2026, 1, 10), label="PRLV SFR")
    matcher = MatchingService(store)

    document = intake.ingest_document(
        store,
        matcher,
        client.client_id,
        {"amount": "59,99 €", "date": "10/01/2026", "vendor": "SFR"},
        file_name="facture-sfr.pdf",
        now=NOW,
    )

    assert document.match_status == MatchStatus.AUTO_MATCHED
    assert document.line_id == line.line_id
    assert LineRepository(store).get_by_id(line.line_id).status == LineStatus.RECEIVED


def test_ingest_document_waits_for_ocr(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    _line(store, client.client_id, "59.99", date(2026, 1, 10))

    document = intake.ingest_document(
        store,
        MatchingService(store),
        client.client_id,
        {"amount": "59.99", "date": "2026-01-10", "ocr_status": "processing"},
        now=NOW,
    )

    assert document.line_id is None
    assert document.ocr_status == OcrStatus.PROCESSING


def test_ingest_document_ignores_non_finite_amount(tmp_path: Path) -> None:
    store = _store(tmp_path)
    client = intake.add_client(store, "tenant-a", "Boulangerie Martin")
    line = _line(store, client.client_id, "59.99", date(2026, 1, 10), label="PRLV SFR")

    document = intake.ingest_document(
        store,
        MatchingService(store),
        client.client_id,
        {"amount": "NaN", "date": "10/01/2026", "vendor": "SFR"},
        now=NOW,
    )

    assert document.amount is None
    assert document.line_id == line.line_id
    assert document.match_status == MatchStatus.PENDING
    assert document.match_confidence == Decimal("0.50")
