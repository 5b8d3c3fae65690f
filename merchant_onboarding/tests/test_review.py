"""
Tests for document completeness and the onboarding state machine
"""

from dataclasses import replace
from itertools import combinations

import pytest

from ..errors import InvalidTransition, NotReady
from ..models import (
    REQUIRED_SLOTS,
    DocumentRef,
    DocumentSet,
    DocumentSlot,
    HistoryAction,
    OnboardingStatus,
    ReviewDecision,
    ReviewStatus,
)
from ..review import ALLOWED_TRANSITIONS, DocumentReviewTracker


@pytest.fixture
def tracker(clock):
    return DocumentReviewTracker(clock=clock)


@pytest.fixture
def make_ref(clock):
    def _make(name="doc.pdf"):
        return DocumentRef(
            path=f"uploads/documents/{name}",
            uploaded_at=clock.now,
            original_name=name,
            size_bytes=1024,
            mime_type="application/pdf",
        )
    return _make


@pytest.fixture
def complete_docs(tracker, make_ref):
    docs = DocumentSet()
    for slot in REQUIRED_SLOTS:
        docs = tracker.submit(docs, make_ref(f"{slot.value}.pdf"), slot)
    return docs


class TestCompletion:
    """Completeness is derived from the three required slots only"""

    @pytest.mark.parametrize("count", [0, 1, 2])
    def test_never_ready_with_missing_slots(self, tracker, make_ref, count):
        for populated in combinations(REQUIRED_SLOTS, count):
            docs = DocumentSet()
            for slot in populated:
                docs = tracker.submit(docs, make_ref(), slot)
            completion = tracker.completion(docs)
            assert completion.ready is False
            assert completion.count == count
            assert set(completion.missing) == set(REQUIRED_SLOTS) - set(populated)

    def test_ready_with_all_slots(self, tracker, complete_docs):
        completion = tracker.completion(complete_docs)
        assert completion.ready is True
        assert completion.count == 3
        assert completion.percent == 100
        assert completion.missing == ()

    @pytest.mark.parametrize("count, percent", [(0, 0), (1, 33), (2, 67)])
    def test_percent_is_rounded(self, tracker, make_ref, count, percent):
        docs = DocumentSet()
        for slot in REQUIRED_SLOTS[:count]:
            docs = tracker.submit(docs, make_ref(), slot)
        assert tracker.completion(docs).percent == percent

    def test_additional_docs_do_not_count(self, tracker, make_ref):
        docs = DocumentSet()
        for _ in range(3):
            docs = tracker.submit(docs, make_ref("extra.pdf"), DocumentSlot.ADDITIONAL)
        assert len(docs.additional_docs) == 3
        assert tracker.completion(docs).count == 0


class TestSubmit:

    def test_first_upload_is_incomplete_and_stamped(self, tracker, make_ref, clock):
        docs = tracker.submit(DocumentSet(), make_ref(), DocumentSlot.ID_DOCUMENT)
        assert docs.review_status == ReviewStatus.INCOMPLETE
        assert docs.documents_submitted_at == clock.now

    def test_submitted_at_is_kept_from_first_upload(self, tracker, make_ref, clock):
        first_at = clock.now
        docs = tracker.submit(DocumentSet(), make_ref(), DocumentSlot.ID_DOCUMENT)
        clock.advance(hours=3)
        docs = tracker.submit(docs, make_ref(), DocumentSlot.UTILITY_BILL)
        assert docs.documents_submitted_at == first_at

    def test_third_upload_moves_to_under_review(self, complete_docs):
        assert complete_docs.review_status == ReviewStatus.UNDER_REVIEW

    def test_submit_does_not_mutate_input(self, tracker, make_ref):
        original = DocumentSet()
        tracker.submit(original, make_ref(), DocumentSlot.ID_DOCUMENT)
        assert original.id_document is None
        assert original.review_status == ReviewStatus.PENDING

    def test_replacing_a_slot_keeps_completion(self, tracker, complete_docs, make_ref):
        docs = tracker.submit(complete_docs, make_ref("new-id.pdf"), DocumentSlot.ID_DOCUMENT)
        assert docs.id_document.original_name == "new-id.pdf"
        assert docs.review_status == ReviewStatus.UNDER_REVIEW

    @pytest.mark.parametrize("decision", [ReviewDecision.APPROVE, ReviewDecision.REJECT])
    def test_no_uploads_after_decision(self, tracker, complete_docs, make_ref, decision):
        decided = tracker.decide(complete_docs, decision)
        with pytest.raises(InvalidTransition):
            tracker.submit(decided, make_ref(), DocumentSlot.ID_DOCUMENT)


class TestDecide:

    def test_approve_requires_all_documents(self, tracker, make_ref):
        docs = tracker.submit(DocumentSet(), make_ref(), DocumentSlot.ID_DOCUMENT)
        with pytest.raises(NotReady) as exc_info:
            tracker.decide(docs, ReviewDecision.APPROVE)
        assert "businessRegistration" in exc_info.value.details['missing']

    def test_approve(self, tracker, complete_docs, clock):
        docs = tracker.decide(complete_docs, ReviewDecision.APPROVE, "Looks good")
        assert docs.review_status == ReviewStatus.APPROVED
        assert docs.documents_reviewed_at == clock.now

    def test_reject_stores_note(self, tracker, complete_docs):
        docs = tracker.decide(complete_docs, "reject", "Utility bill is older than 3 months")
        assert docs.review_status == ReviewStatus.REJECTED
        assert docs.reviewer_note == "Utility bill is older than 3 months"

    def test_reject_incomplete_set_is_allowed(self, tracker, make_ref):
        docs = tracker.submit(DocumentSet(), make_ref(), DocumentSlot.ID_DOCUMENT)
        assert tracker.decide(docs, ReviewDecision.REJECT).review_status == ReviewStatus.REJECTED

    def test_cannot_decide_twice(self, tracker, complete_docs):
        docs = tracker.decide(complete_docs, ReviewDecision.APPROVE)
        with pytest.raises(InvalidTransition):
            tracker.decide(docs, ReviewDecision.REJECT)

    def test_approved_never_without_all_slots(self, tracker, complete_docs):
        docs = tracker.decide(complete_docs, ReviewDecision.APPROVE)
        assert tracker.completion(docs).ready


class TestResetForResubmission:

    def test_reset_rejected_set(self, tracker, complete_docs):
        rejected = tracker.decide(complete_docs, ReviewDecision.REJECT, "Blurry ID")
        docs = tracker.reset_for_resubmission(rejected)
        assert docs.review_status == ReviewStatus.PENDING
        assert docs.documents_reviewed_at is None
        assert docs.id_document == complete_docs.id_document

    def test_reset_incomplete_rejected_set(self, tracker, make_ref):
        docs = tracker.submit(DocumentSet(), make_ref(), DocumentSlot.ID_DOCUMENT)
        docs = tracker.reset_for_resubmission(tracker.decide(docs, ReviewDecision.REJECT))
        assert docs.review_status == ReviewStatus.INCOMPLETE

    def test_only_rejected_sets_can_be_reset(self, tracker, complete_docs):
        with pytest.raises(InvalidTransition):
            tracker.reset_for_resubmission(complete_docs)

    def test_resubmission_after_reset_returns_to_review(self, tracker, complete_docs, make_ref):
        docs = tracker.reset_for_resubmission(tracker.decide(complete_docs, ReviewDecision.REJECT))
        docs = tracker.submit(docs, make_ref("clear-id.pdf"), DocumentSlot.ID_DOCUMENT)
        assert docs.review_status == ReviewStatus.UNDER_REVIEW


class TestStateMachine:

    FORWARD_PATH = [
        OnboardingStatus.CREDENTIALS_SENT,
        OnboardingStatus.DOCUMENTS_PENDING,
        OnboardingStatus.DOCUMENTS_SUBMITTED,
        OnboardingStatus.UNDER_REVIEW,
    ]

    def test_forward_walk(self, tracker):
        assert tracker.walk(OnboardingStatus.CREDENTIALS_PENDING, self.FORWARD_PATH) == \
            OnboardingStatus.UNDER_REVIEW

    def test_verified_directly_from_documents_pending_fails(self, tracker):
        with pytest.raises(InvalidTransition):
            tracker.transition(OnboardingStatus.DOCUMENTS_PENDING, OnboardingStatus.VERIFIED)

    def test_decision_statuses_need_a_decision(self, tracker):
        with pytest.raises(InvalidTransition):
            tracker.transition(OnboardingStatus.UNDER_REVIEW, OnboardingStatus.VERIFIED)
        assert tracker.transition(OnboardingStatus.UNDER_REVIEW, OnboardingStatus.VERIFIED,
                                  via_decision=True) == OnboardingStatus.VERIFIED

    def test_decision_does_not_skip_states(self, tracker):
        with pytest.raises(InvalidTransition):
            tracker.transition(OnboardingStatus.DOCUMENTS_PENDING, OnboardingStatus.VERIFIED, via_decision=True)

    def test_rejected_returns_to_documents_pending(self, tracker):
        assert tracker.transition(OnboardingStatus.REJECTED, OnboardingStatus.DOCUMENTS_PENDING) == \
            OnboardingStatus.DOCUMENTS_PENDING

    def test_verified_is_terminal(self, tracker):
        for target in OnboardingStatus:
            assert not tracker.can_transition(OnboardingStatus.VERIFIED, target)

    @pytest.mark.parametrize("current", list(OnboardingStatus))
    def test_no_edge_skips_a_state(self, tracker, current):
        order = [
            OnboardingStatus.CREDENTIALS_PENDING,
            OnboardingStatus.CREDENTIALS_SENT,
            OnboardingStatus.DOCUMENTS_PENDING,
            OnboardingStatus.DOCUMENTS_SUBMITTED,
            OnboardingStatus.UNDER_REVIEW,
        ]
        for target in ALLOWED_TRANSITIONS[current]:
            if current in order and target in order:
                assert order.index(target) == order.index(current) + 1

    def test_walk_stops_at_first_bad_step(self, tracker):
        with pytest.raises(InvalidTransition):
            tracker.walk(OnboardingStatus.CREDENTIALS_SENT,
                         [OnboardingStatus.DOCUMENTS_PENDING, OnboardingStatus.UNDER_REVIEW])


class TestHistoryEntry:

    def test_entry_fields(self, tracker, clock):
        entry = tracker.history_entry(HistoryAction.REJECTED, performed_by="admin-1", notes="Blurry",
                                      documents=[DocumentSlot.ID_DOCUMENT])
        assert entry.action == HistoryAction.REJECTED
        assert entry.performed_at == clock.now
        assert entry.documents_involved == ("idDocument",)
        assert entry.to_dict()["performedBy"] == "admin-1"

    def test_document_set_serialisation_round_trip(self, complete_docs):
        docs = replace(complete_docs, reviewer_note="ok")
        assert DocumentSet.from_dict(docs.to_dict()) == docs
