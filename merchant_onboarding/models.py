"""
Domain models for merchant onboarding

Typed values passed between the token service, review tracker, delivery
queue and the orchestrator. Persistence lives in database.py; these
classes never talk to storage themselves.

Onboarding steps:
1. credentials_pending - Record exists, no credentials issued yet
2. credentials_sent - Temporary password and setup token issued
3. documents_pending - Account setup completed, waiting for uploads
4. documents_submitted - All three required documents uploaded
5. under_review - Waiting for an admin decision
6. verified / rejected - Admin decision recorded
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from storage"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_aware(datetime.fromisoformat(value))


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class OnboardingStatus(str, Enum):
    """Merchant-level lifecycle stage"""
    CREDENTIALS_PENDING = "credentials_pending"
    CREDENTIALS_SENT = "credentials_sent"
    DOCUMENTS_PENDING = "documents_pending"
    DOCUMENTS_SUBMITTED = "documents_submitted"
    UNDER_REVIEW = "under_review"
    VERIFIED = "verified"
    REJECTED = "rejected"


class ReviewStatus(str, Enum):
    """Completeness/approval state of a document set"""
    PENDING = "pending"
    INCOMPLETE = "incomplete"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class DocumentSlot(str, Enum):
    BUSINESS_REGISTRATION = "businessRegistration"
    ID_DOCUMENT = "idDocument"
    UTILITY_BILL = "utilityBill"
    ADDITIONAL = "additionalDocs"


REQUIRED_SLOTS = (
    DocumentSlot.BUSINESS_REGISTRATION,
    DocumentSlot.ID_DOCUMENT,
    DocumentSlot.UTILITY_BILL,
)

SLOT_ATTRIBUTES = {
    DocumentSlot.BUSINESS_REGISTRATION: "business_registration",
    DocumentSlot.ID_DOCUMENT: "id_document",
    DocumentSlot.UTILITY_BILL: "utility_bill",
}


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class HistoryAction(str, Enum):
    SUBMITTED = "submitted"
    RESUBMITTED = "resubmitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class DocumentRef:
    """Pointer to an uploaded file"""
    path: str
    uploaded_at: datetime
    original_name: str
    size_bytes: int
    mime_type: str
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "path": self.path,
            "uploadedAt": format_datetime(self.uploaded_at),
            "originalName": self.original_name,
            "fileSize": self.size_bytes,
            "mimeType": self.mime_type,
        }
        if self.description:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentRef":
        return cls(
            path=data["path"],
            uploaded_at=parse_datetime(data.get("uploadedAt")),
            original_name=data.get("originalName", ""),
            size_bytes=int(data.get("fileSize", 0)),
            mime_type=data.get("mimeType", ""),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class DocumentSet:
    """
    The three required verification documents plus optional extras

    review_status is advanced by DocumentReviewTracker only; construct new
    sets with dataclasses.replace rather than mutating.
    """
    business_registration: Optional[DocumentRef] = None
    id_document: Optional[DocumentRef] = None
    utility_bill: Optional[DocumentRef] = None
    additional_docs: tuple = ()
    review_status: ReviewStatus = ReviewStatus.PENDING
    documents_submitted_at: Optional[datetime] = None
    documents_reviewed_at: Optional[datetime] = None
    reviewer_note: Optional[str] = None

    def get(self, slot: DocumentSlot) -> Optional[DocumentRef]:
        return getattr(self, SLOT_ATTRIBUTES[slot])

    def filled_slots(self) -> List[DocumentSlot]:
        return [slot for slot in REQUIRED_SLOTS if self.get(slot) is not None]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for slot in REQUIRED_SLOTS:
            ref = self.get(slot)
            data[slot.value] = ref.to_dict() if ref else None
        data["additionalDocs"] = [ref.to_dict() for ref in self.additional_docs]
        data["documentReviewStatus"] = self.review_status.value
        data["documentsSubmittedAt"] = format_datetime(self.documents_submitted_at)
        data["documentsReviewedAt"] = format_datetime(self.documents_reviewed_at)
        data["verificationNotes"] = self.reviewer_note
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DocumentSet":
        if not data:
            return cls()
        slots = {}
        for slot in REQUIRED_SLOTS:
            raw = data.get(slot.value)
            slots[SLOT_ATTRIBUTES[slot]] = DocumentRef.from_dict(raw) if raw else None
        return cls(
            additional_docs=tuple(DocumentRef.from_dict(raw) for raw in data.get("additionalDocs") or []),
            review_status=ReviewStatus(data.get("documentReviewStatus", ReviewStatus.PENDING.value)),
            documents_submitted_at=parse_datetime(data.get("documentsSubmittedAt")),
            documents_reviewed_at=parse_datetime(data.get("documentsReviewedAt")),
            reviewer_note=data.get("verificationNotes"),
            **slots,
        )


@dataclass(frozen=True)
class SetupToken:
    """
    Stored half of an account-setup token

    Only the SHA-256 digest is kept; the plaintext leaves the process once,
    inside the credential e-mail.
    """
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    merchant_id: str

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class VerificationHistoryEntry:
    action: HistoryAction
    performed_at: datetime
    performed_by: Optional[str] = None
    notes: Optional[str] = None
    documents_involved: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "performedAt": format_datetime(self.performed_at),
            "performedBy": self.performed_by,
            "notes": self.notes,
            "documentsInvolved": list(self.documents_involved),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationHistoryEntry":
        return cls(
            action=HistoryAction(data["action"]),
            performed_at=parse_datetime(data.get("performedAt")),
            performed_by=data.get("performedBy"),
            notes=data.get("notes"),
            documents_involved=tuple(data.get("documentsInvolved") or ()),
        )


@dataclass
class MerchantRecord:
    """
    Merchant as seen by the onboarding subsystem

    Instances returned by the store are detached copies; changes go back
    through MerchantStore.update().
    """
    email: str
    business_name: str
    phone: Optional[str] = None
    owner_name: Optional[str] = None
    id: Optional[str] = None
    external_id: Optional[str] = None
    internal_id: Optional[str] = None
    business_type: Optional[str] = None
    description: Optional[str] = None
    address: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None
    business_hours: Optional[Dict[str, str]] = None
    onboarding_status: OnboardingStatus = OnboardingStatus.CREDENTIALS_PENDING
    verified: bool = False
    verified_at: Optional[datetime] = None
    created_programmatically: bool = False
    created_by: Optional[str] = None
    password_hash: Optional[str] = None
    setup_token: Optional[SetupToken] = None
    account_setup_at: Optional[datetime] = None
    documents: DocumentSet = field(default_factory=DocumentSet)
    verification_history: List[VerificationHistoryEntry] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_internal_id(self) -> str:
        """Internal id shown to merchants, derived from the record id when unset"""
        if self.internal_id:
            return self.internal_id
        return f"NAIROBI-CBD-{(self.id or '')[-3:].upper()}"

    def to_summary(self) -> Dict[str, Any]:
        """Safe projection for reports (no secrets)"""
        return {
            "id": self.id,
            "businessName": self.business_name,
            "email": self.email,
            "phone": self.phone,
            "internalId": self.internal_id,
            "onboardingStatus": self.onboarding_status.value,
            "verified": self.verified,
            "createdBy": self.created_by,
        }


# Fields a data feed owns; an upsert overwrites exactly these.
FEED_FIELDS = (
    "email",
    "business_name",
    "phone",
    "owner_name",
    "internal_id",
    "business_type",
    "description",
    "address",
    "location",
    "website",
    "created_programmatically",
    "created_by",
)
