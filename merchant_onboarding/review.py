"""
Document review tracking and onboarding state machine

Single place where document completeness and review state are derived.
Nothing else in the package inspects document slots to decide whether a
merchant is ready for review.

State machine (per merchant):
    credentials_pending -> credentials_sent -> documents_pending
    -> documents_submitted -> under_review -> verified | rejected
    rejected -> documents_pending (explicit reset only)
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Tuple

from .errors import InvalidTransition, NotReady
from .models import (
    REQUIRED_SLOTS,
    SLOT_ATTRIBUTES,
    DocumentRef,
    DocumentSet,
    DocumentSlot,
    HistoryAction,
    OnboardingStatus,
    ReviewDecision,
    ReviewStatus,
    VerificationHistoryEntry,
    utcnow,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[OnboardingStatus, FrozenSet[OnboardingStatus]] = {
    OnboardingStatus.CREDENTIALS_PENDING: frozenset({OnboardingStatus.CREDENTIALS_SENT}),
    OnboardingStatus.CREDENTIALS_SENT: frozenset({OnboardingStatus.DOCUMENTS_PENDING}),
    OnboardingStatus.DOCUMENTS_PENDING: frozenset({OnboardingStatus.DOCUMENTS_SUBMITTED}),
    OnboardingStatus.DOCUMENTS_SUBMITTED: frozenset({OnboardingStatus.UNDER_REVIEW}),
    OnboardingStatus.UNDER_REVIEW: frozenset({OnboardingStatus.VERIFIED, OnboardingStatus.REJECTED}),
    OnboardingStatus.REJECTED: frozenset({OnboardingStatus.DOCUMENTS_PENDING}),
    OnboardingStatus.VERIFIED: frozenset(),
}

# Reachable only through an admin decision
DECISION_STATUSES = frozenset({OnboardingStatus.VERIFIED, OnboardingStatus.REJECTED})

# Merchant statuses in which uploads are accepted
UPLOAD_STATUSES = frozenset({OnboardingStatus.DOCUMENTS_PENDING, OnboardingStatus.UNDER_REVIEW})


@dataclass(frozen=True)
class Completion:
    count: int
    percent: int
    ready: bool
    missing: Tuple[DocumentSlot, ...]

    def to_dict(self) -> Dict[str, object]:
        return {
            "count": self.count,
            "percent": self.percent,
            "ready": self.ready,
            "missing": [slot.value for slot in self.missing],
        }


class DocumentReviewTracker:
    """
    Derives document completeness and validates review transitions

    All methods are pure with respect to their inputs: document sets are
    returned as new values, never modified in place.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utcnow

    def completion(self, docs: DocumentSet) -> Completion:
        """Count populated required slots"""
        filled = docs.filled_slots()
        count = len(filled)
        return Completion(
            count=count,
            percent=round(count / len(REQUIRED_SLOTS) * 100),
            ready=count == len(REQUIRED_SLOTS),
            missing=tuple(slot for slot in REQUIRED_SLOTS if slot not in filled),
        )

    def submit(self, docs: DocumentSet, new_ref: DocumentRef, slot: DocumentSlot) -> DocumentSet:
        """
        Place a document in a slot and recompute review status

        Additional documents are appended and do not affect completeness.

        Raises:
            InvalidTransition: If the set is approved, or rejected without a reset
        """
        if docs.review_status in (ReviewStatus.APPROVED, ReviewStatus.REJECTED):
            raise InvalidTransition(
                f"Cannot submit documents while review status is {docs.review_status.value}",
                details={'review_status': docs.review_status.value, 'slot': slot.value},
            )

        if slot == DocumentSlot.ADDITIONAL:
            return replace(docs, additional_docs=tuple(docs.additional_docs) + (new_ref,))

        was_empty = not docs.filled_slots()
        updated = replace(docs, **{SLOT_ATTRIBUTES[slot]: new_ref})
        if was_empty and updated.documents_submitted_at is None:
            updated = replace(updated, documents_submitted_at=self.clock())

        ready = self.completion(updated).ready
        return replace(
            updated,
            review_status=ReviewStatus.UNDER_REVIEW if ready else ReviewStatus.INCOMPLETE,
        )

    def decide(self, docs: DocumentSet, decision: ReviewDecision,
               reviewer_note: Optional[str] = None) -> DocumentSet:
        """
        Record an admin decision on a document set

        Raises:
            NotReady: Approval requested with required documents missing
            InvalidTransition: The set already carries a decision
        """
        decision = ReviewDecision(decision)
        completion = self.completion(docs)

        if decision == ReviewDecision.APPROVE and not completion.ready:
            raise NotReady(
                "All required documents must be uploaded before approval",
                details={'missing': [slot.value for slot in completion.missing]},
            )

        if docs.review_status in (ReviewStatus.APPROVED, ReviewStatus.REJECTED):
            raise InvalidTransition(
                f"Documents were already {docs.review_status.value}",
                details={'review_status': docs.review_status.value},
            )

        if decision == ReviewDecision.APPROVE:
            return replace(docs, review_status=ReviewStatus.APPROVED,
                           documents_reviewed_at=self.clock(), reviewer_note=reviewer_note)

        return replace(docs, review_status=ReviewStatus.REJECTED,
                       documents_reviewed_at=self.clock(), reviewer_note=reviewer_note)

    def reset_for_resubmission(self, docs: DocumentSet) -> DocumentSet:
        """Reopen a rejected set; uploaded files stay until replaced"""
        if docs.review_status != ReviewStatus.REJECTED:
            raise InvalidTransition(
                "Only rejected documents can be reset for resubmission",
                details={'review_status': docs.review_status.value},
            )
        ready = self.completion(docs).ready
        return replace(
            docs,
            review_status=ReviewStatus.INCOMPLETE if not ready else ReviewStatus.PENDING,
            documents_reviewed_at=None,
        )

    # === Onboarding status ===

    @staticmethod
    def can_transition(current: OnboardingStatus, target: OnboardingStatus) -> bool:
        return OnboardingStatus(target) in ALLOWED_TRANSITIONS[OnboardingStatus(current)]

    def transition(self, current: OnboardingStatus, target: OnboardingStatus,
                   via_decision: bool = False) -> OnboardingStatus:
        """
        Validate one step of the onboarding state machine

        Args:
            current: Merchant's present status
            target: Requested status
            via_decision: True only when called from an admin review decision

        Returns:
            The target status

        Raises:
            InvalidTransition: Not an edge of the state machine, or a
                verified/rejected move attempted outside a decision
        """
        current = OnboardingStatus(current)
        target = OnboardingStatus(target)

        if target in DECISION_STATUSES and not via_decision:
            raise InvalidTransition(
                f"{target.value} can only be reached through a review decision",
                details={'from': current.value, 'to': target.value},
            )

        if not self.can_transition(current, target):
            raise InvalidTransition(
                f"Cannot move onboarding status from {current.value} to {target.value}",
                details={'from': current.value, 'to': target.value},
            )

        return target

    def walk(self, current: OnboardingStatus, targets: Iterable[OnboardingStatus]) -> OnboardingStatus:
        """Apply consecutive transitions, validating each step"""
        for target in targets:
            current = self.transition(current, target)
        return current

    def history_entry(self, action: HistoryAction, performed_by: Optional[str] = None,
                      notes: Optional[str] = None,
                      documents: Iterable[DocumentSlot] = ()) -> VerificationHistoryEntry:
        return VerificationHistoryEntry(
            action=action,
            performed_at=self.clock(),
            performed_by=performed_by,
            notes=notes,
            documents_involved=tuple(DocumentSlot(slot).value for slot in documents),
        )
