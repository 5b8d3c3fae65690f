"""
Main onboarding orchestration service

Coordinates merchant onboarding from record creation to verification:

Flow:
1. Merchant created (admin action, bulk import or data feed) with a
   temporary password and a setup token
2. Credential e-mail queued and delivered at the scheduled dispatch time
3. Merchant completes account setup with the token and a new password
4. Merchant uploads the three required documents
5. Admin approves or rejects; rejected merchants may be reset to resubmit

Single-item operations raise OnboardingError subclasses. Batch operations
collect per-item outcomes into a report and keep going.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import redis

from .config import configure_logging, get_config
from .database import DatabaseService, MerchantStore
from .delivery_queue import (
    CredentialDeliveryEntry,
    CredentialDeliveryQueue,
    Credentials,
    DeliveryQueue,
    DeliveryReport,
    MerchantSnapshot,
    RedisQueueLock,
)
from .emailer import SetupCompleteEmailComposer, WelcomeEmailComposer, get_email_sender
from .errors import (
    InvalidTransition,
    MerchantNotFound,
    OnboardingError,
    QueueAlreadyPending,
    QueuePersistenceError,
    ValidationError,
)
from .models import (
    REQUIRED_SLOTS,
    DocumentRef,
    DocumentSlot,
    HistoryAction,
    MerchantRecord,
    OnboardingStatus,
    ReviewDecision,
    ReviewStatus,
    utcnow,
)
from .passwords import (
    CHOSEN_PASSWORD_MIN_LENGTH,
    check_password_policy,
    generate_temp_password,
    hash_password,
)
from .review import UPLOAD_STATUSES, DocumentReviewTracker
from .tokens import SetupTokenService
from .validators import DocumentValidator, MerchantInputValidator

logger = logging.getLogger(__name__)

# Statuses from which a fresh credential bundle may be issued
REISSUE_STATUSES = frozenset({OnboardingStatus.CREDENTIALS_PENDING, OnboardingStatus.CREDENTIALS_SENT})

# Statuses owned by a dedicated operation; advance_status will not set them
STATUS_OPERATIONS = {
    OnboardingStatus.DOCUMENTS_PENDING: "complete_account_setup or reset_for_resubmission",
    OnboardingStatus.DOCUMENTS_SUBMITTED: "submit_document",
    OnboardingStatus.UNDER_REVIEW: "submit_document",
    OnboardingStatus.VERIFIED: "review_documents",
    OnboardingStatus.REJECTED: "review_documents",
}


def next_scheduled_time(now: datetime, time_of_day: str) -> datetime:
    """
    Next occurrence of an HH:MM wall-clock time after now

    Raises:
        ValidationError: If time_of_day is not HH:MM
    """
    try:
        hour, minute = (int(part) for part in time_of_day.split(':'))
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    except ValueError:
        raise ValidationError(f"Invalid scheduled time: {time_of_day!r}", details={'expected': 'HH:MM'})

    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


@dataclass
class CreatedMerchant:
    """A merchant plus the plaintext credentials issued for it"""
    merchant: MerchantRecord
    credentials: Credentials
    needs_manual_review: bool = False

    def delivery_entry(self) -> CredentialDeliveryEntry:
        return CredentialDeliveryEntry(
            merchant=MerchantSnapshot(
                merchant_id=self.merchant.id,
                business_name=self.merchant.business_name,
                email=self.merchant.email,
                internal_id=self.merchant.display_internal_id,
            ),
            credentials=self.credentials,
            needs_manual_review=self.needs_manual_review,
        )


@dataclass
class BatchItemResult:
    index: int
    success: bool
    business_name: Optional[str] = None
    email: Optional[str] = None
    merchant_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'index': self.index,
            'success': self.success,
            'businessName': self.business_name,
            'email': self.email,
            'merchantId': self.merchant_id,
        }
        if self.error:
            data['error'] = self.error
        return data


@dataclass
class BatchReport:
    results: List[BatchItemResult] = field(default_factory=list)
    created: List[CreatedMerchant] = field(default_factory=list)
    queue: Optional[DeliveryQueue] = None

    @property
    def successes(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failures(self) -> int:
        return sum(1 for result in self.results if not result.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': len(self.results),
            'successes': self.successes,
            'failures': self.failures,
            'queued': len(self.queue.entries) if self.queue else 0,
            'results': [result.to_dict() for result in self.results],
        }


@dataclass
class FeedItemResult:
    external_id: Optional[str]
    success: bool
    created: bool = False
    merchant_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None


@dataclass
class FeedReport:
    results: List[FeedItemResult] = field(default_factory=list)

    @property
    def inserted(self) -> int:
        return sum(1 for result in self.results if result.success and result.created)

    @property
    def updated(self) -> int:
        return sum(1 for result in self.results if result.success and not result.created)

    @property
    def failures(self) -> int:
        return sum(1 for result in self.results if not result.success)


class OnboardingService:
    """
    Main orchestrator for merchant onboarding

    Composes the merchant store, setup token service, document review
    tracker and credential delivery queue.
    """

    def __init__(self, store: MerchantStore, config=None, queue: Optional[CredentialDeliveryQueue] = None,
                 sender=None, composer=None, setup_composer=None,
                 token_service: Optional[SetupTokenService] = None, tracker: Optional[DocumentReviewTracker] = None, clock=None):
        self.config = config or get_config()
        self.store = store
        self.clock = clock or utcnow
        self.token_service = token_service or SetupTokenService(
            store, ttl_days=self.config.SETUP_TOKEN_TTL_DAYS, clock=self.clock)
        self.tracker = tracker or DocumentReviewTracker(clock=self.clock)
        self.queue = queue or CredentialDeliveryQueue(
            self.config.QUEUE_DIR,
            clock=self.clock,
            inter_send_delay=self.config.INTER_SEND_DELAY_SECONDS,
        )
        self.composer = composer or WelcomeEmailComposer(
            self.config.SUPPORT_EMAIL, ttl_days=self.config.SETUP_TOKEN_TTL_DAYS)
        self.setup_composer = setup_composer or SetupCompleteEmailComposer(
            self.config.FRONTEND_URL, self.config.SUPPORT_EMAIL)
        self.sender = sender or get_email_sender(self.config)

    @classmethod
    def from_config(cls, config=None, sender=None) -> "OnboardingService":
        """Build a service with its database, queue and lock from configuration"""
        config = config or get_config()
        configure_logging(config.LOG_LEVEL, config.LOG_FILE)

        db = DatabaseService(config.DATABASE_URL)
        db.create_tables()

        lock = None
        if config.REDIS_URL:
            lock = RedisQueueLock(redis.Redis.from_url(config.REDIS_URL))

        queue = CredentialDeliveryQueue(
            config.QUEUE_DIR,
            lock=lock,
            inter_send_delay=config.INTER_SEND_DELAY_SECONDS,
        )
        return cls(MerchantStore(db), config=config, queue=queue, sender=sender)

    def _get_merchant(self, merchant_id: str) -> MerchantRecord:
        merchant = self.store.find_by_id(merchant_id)
        if merchant is None:
            raise MerchantNotFound(f"Merchant {merchant_id} not found", details={'merchant_id': merchant_id})
        return merchant

    def _build_credentials(self, email: str, temp_password: str, plaintext_token: str) -> Credentials:
        base_url = self.config.FRONTEND_URL
        return Credentials(
            email=email,
            temp_password=temp_password,
            setup_token=plaintext_token,
            setup_url=self.token_service.build_setup_url(base_url, plaintext_token),
            login_url=self.token_service.build_login_url(base_url),
        )

    # === Merchant creation ===

    def create_merchant(self, data: Dict[str, Any], auto_verify: bool = False,
                        created_by: str = 'admin') -> CreatedMerchant:
        """
        Create a merchant with a temporary password and a setup token

        Args:
            data: Merchant input (businessName and email required)
            auto_verify: Mark the merchant verified at creation
            created_by: Origin of the creation (admin, bulk import, script)

        Returns:
            CreatedMerchant holding the stored record and plaintext
            credentials (deliver once, never log)

        Raises:
            ValidationError: Input failed validation
            DuplicateEmail: E-mail already registered
        """
        is_valid, error, sanitized = MerchantInputValidator.validate_merchant_input(data)
        if not is_valid:
            raise ValidationError(error)

        now = self.clock()
        temp_password = generate_temp_password(self.config.TEMP_PASSWORD_LENGTH)
        record = MerchantRecord(
            created_programmatically=True,
            created_by=created_by,
            password_hash=hash_password(temp_password),
            verified=auto_verify,
            verified_at=now if auto_verify else None,
            **sanitized,
        )

        merchant_id = self.store.create(record)
        plaintext_token, setup_token = self.token_service.issue(merchant_id)
        status = self.tracker.transition(OnboardingStatus.CREDENTIALS_PENDING, OnboardingStatus.CREDENTIALS_SENT)
        merchant = self.store.update(merchant_id, {'setup_token': setup_token, 'onboarding_status': status})

        logger.info(f"Created merchant {merchant.business_name} ({merchant.email}) as {merchant_id}")
        return CreatedMerchant(
            merchant=merchant,
            credentials=self._build_credentials(merchant.email, temp_password, plaintext_token),
            needs_manual_review=bool(data.get('needsUpdate', False)),
        )

    def create_merchants_batch(self, inputs: Iterable[Dict[str, Any]], scheduled_for: Optional[datetime] = None,
                               scheduled_time: Optional[str] = None, auto_verify: bool = False,
                               created_by: str = 'initial-import-script') -> BatchReport:
        """
        Create many merchants and queue their credential e-mails

        Individual failures are recorded and do not stop the batch. All
        successful merchants are enqueued in a single queue.

        Args:
            inputs: Merchant inputs
            scheduled_for: Dispatch time; defaults to the next DEFAULT_SCHEDULED_TIME
            scheduled_time: Display label stored with the queue

        Raises:
            QueueAlreadyPending: Checked before any merchant is created, and
                again under the queue lock when enqueueing
            QueuePersistenceError: Queue could not be written

        When the enqueue fails after merchants were created, the raised
        error lists them in details['createdMerchants'] and carries the
        BatchReport (with credentials) as its batch_report attribute.
        """
        self.queue.ensure_no_pending()

        scheduled_time = scheduled_time or self.config.DEFAULT_SCHEDULED_TIME
        if scheduled_for is None:
            scheduled_for = next_scheduled_time(self.clock(), scheduled_time)

        report = BatchReport()
        for index, data in enumerate(inputs):
            raw = data if isinstance(data, dict) else {}
            try:
                created = self.create_merchant(data, auto_verify=auto_verify, created_by=created_by)
            except OnboardingError as e:
                logger.error(f"Batch item {index + 1} ({raw.get('businessName')}) failed: {e.message}")
                report.results.append(BatchItemResult(
                    index=index,
                    success=False,
                    business_name=raw.get('businessName'),
                    email=raw.get('email'),
                    error=e.to_dict(),
                ))
                continue

            report.created.append(created)
            report.results.append(BatchItemResult(
                index=index,
                success=True,
                business_name=created.merchant.business_name,
                email=created.merchant.email,
                merchant_id=created.merchant.id,
            ))

        if report.created:
            try:
                report.queue = self.enqueue_credentials(report.created, scheduled_for, scheduled_time)
            except (QueueAlreadyPending, QueuePersistenceError) as e:
                # The merchants are stored; the report is the only copy of their credentials
                e.details['createdMerchants'] = [
                    {'id': item.merchant.id, 'email': item.merchant.email,
                     'businessName': item.merchant.business_name}
                    for item in report.created
                ]
                e.batch_report = report
                logger.error(f"Batch created {len(report.created)} merchants but queueing their credentials "
                             f"failed: {e.message}")
                raise

        logger.info(f"Batch complete: {report.successes} created, {report.failures} failed")
        return report

    def enqueue_credentials(self, created: Iterable[CreatedMerchant], scheduled_for: datetime,
                            scheduled_time: Optional[str] = None) -> DeliveryQueue:
        """Queue credential e-mails for already-created merchants"""
        entries = [item.delivery_entry() for item in created]
        return self.queue.enqueue(entries, scheduled_for, scheduled_time or scheduled_for.strftime('%H:%M'))

    def upsert_from_feed(self, records: Iterable[Dict[str, Any]], created_by: str = 'data-feed') -> FeedReport:
        """
        Insert or overwrite merchants keyed by each record's external id

        Re-running with identical input leaves the same records. Fields the
        feed omits are reset, not merged.
        """
        report = FeedReport()
        for raw in records:
            raw = raw if isinstance(raw, dict) else {}
            external_id = raw.get('externalId') or raw.get('_id') or raw.get('id')
            external_id = str(external_id) if external_id else None
            try:
                if not external_id:
                    raise ValidationError("Feed record has no external id")

                is_valid, error, sanitized = MerchantInputValidator.validate_merchant_input(raw)
                if not is_valid:
                    raise ValidationError(error, details={'external_id': external_id})

                record = MerchantRecord(
                    created_programmatically=True,
                    created_by=raw.get('createdBy') or created_by,
                    **sanitized,
                )
                stored, created = self.store.upsert(external_id, record)
            except OnboardingError as e:
                logger.error(f"Feed record {external_id} failed: {e.message}")
                report.results.append(FeedItemResult(external_id, False, error=e.to_dict()))
                continue

            report.results.append(FeedItemResult(external_id, True, created=created, merchant_id=stored.id))

        logger.info(f"Feed upsert: {report.inserted} inserted, {report.updated} overwritten, "
                    f"{report.failures} failed")
        return report

    # === Account setup ===

    def reissue_setup_token(self, merchant_id: str) -> CreatedMerchant:
        """
        Replace the merchant's setup token and temporary password

        Any previously issued token stops working. Only merchants that
        have not completed account setup can be re-issued credentials.

        Raises:
            MerchantNotFound: Unknown merchant
            InvalidTransition: Account setup already completed
        """
        merchant = self._get_merchant(merchant_id)
        if merchant.onboarding_status not in REISSUE_STATUSES:
            raise InvalidTransition(
                f"Cannot re-issue credentials in status {merchant.onboarding_status.value}",
                details={'merchant_id': merchant_id},
            )

        status = merchant.onboarding_status
        if status == OnboardingStatus.CREDENTIALS_PENDING:
            status = self.tracker.transition(status, OnboardingStatus.CREDENTIALS_SENT)

        temp_password = generate_temp_password(self.config.TEMP_PASSWORD_LENGTH)
        plaintext_token, setup_token = self.token_service.issue(merchant_id)
        merchant = self.store.update(merchant_id, {
            'setup_token': setup_token,
            'password_hash': hash_password(temp_password),
            'onboarding_status': status,
        })

        logger.info(f"Re-issued setup credentials for merchant {merchant_id}")
        return CreatedMerchant(merchant, self._build_credentials(merchant.email, temp_password, plaintext_token))

    def complete_account_setup(self, merchant_id: str, plaintext_token: str, new_password: str,
                               profile: Optional[Dict[str, Any]] = None) -> MerchantRecord:
        """
        Finish account setup with the e-mailed token and a chosen password

        Args:
            profile: Optional description, website and businessHours to
                store with the setup

        Raises:
            MerchantNotFound: Unknown merchant
            TokenNotFound / TokenMismatch / TokenExpired: Token rejected
            ValidationError: New password or profile fails validation
            InvalidTransition: Merchant is not awaiting account setup
        """
        merchant = self._get_merchant(merchant_id)
        self.token_service.verify(merchant_id, plaintext_token)

        is_valid, error = check_password_policy(new_password, CHOSEN_PASSWORD_MIN_LENGTH)
        if not is_valid:
            raise ValidationError(error, details={'merchant_id': merchant_id})

        is_valid, error, profile_patch = MerchantInputValidator.validate_profile_update(profile)
        if not is_valid:
            raise ValidationError(error, details={'merchant_id': merchant_id})

        status = self.tracker.transition(merchant.onboarding_status, OnboardingStatus.DOCUMENTS_PENDING)

        self.token_service.consume(merchant_id)
        merchant = self.store.update(merchant_id, {
            **profile_patch,
            'password_hash': hash_password(new_password),
            'onboarding_status': status,
            'account_setup_at': self.clock(),
        })

        logger.info(f"Merchant {merchant_id} completed account setup")
        self._send_setup_complete(merchant)
        return merchant

    def _send_setup_complete(self, merchant: MerchantRecord) -> None:
        """Best-effort confirmation; a failed send never undoes the setup"""
        try:
            message = self.setup_composer.compose(merchant)
            self.sender.send(merchant.email, message.subject, message.html_content, message.text_content)
        except Exception as e:
            logger.error(f"Failed to send setup complete email to {merchant.email}: {e}")
            return
        logger.info(f"Sent setup complete email to {merchant.email}")

    # === Documents and review ===

    def submit_document(self, merchant_id: str, slot: DocumentSlot, path: str, original_name: str,
                        size_bytes: int, mime_type: str, description: Optional[str] = None,
                        performed_by: Optional[str] = None) -> MerchantRecord:
        """
        Attach an uploaded document to a merchant

        Once all required documents are present the merchant moves through
        documents_submitted to under_review.

        Raises:
            ValidationError: Bad slot or document metadata
            InvalidTransition: Merchant is not accepting uploads
        """
        try:
            slot = DocumentSlot(slot)
        except ValueError:
            raise ValidationError(f"Unknown document slot: {slot}")

        is_valid, error = DocumentValidator.validate_upload(path, original_name, size_bytes, mime_type)
        if not is_valid:
            raise ValidationError(error, details={'slot': slot.value, 'file': original_name})

        merchant = self._get_merchant(merchant_id)
        if merchant.onboarding_status not in UPLOAD_STATUSES:
            raise InvalidTransition(
                f"Documents cannot be uploaded in status {merchant.onboarding_status.value}",
                details={'merchant_id': merchant_id, 'slot': slot.value},
            )

        replacing = slot in REQUIRED_SLOTS and merchant.documents.get(slot) is not None
        ref = DocumentRef(
            path=path,
            uploaded_at=self.clock(),
            original_name=original_name,
            size_bytes=size_bytes,
            mime_type=mime_type,
            description=description,
        )
        documents = self.tracker.submit(merchant.documents, ref, slot)

        history = list(merchant.verification_history)
        history.append(self.tracker.history_entry(
            HistoryAction.RESUBMITTED if replacing else HistoryAction.SUBMITTED,
            performed_by=performed_by or merchant_id,
            documents=[slot],
        ))

        status = merchant.onboarding_status
        if status == OnboardingStatus.DOCUMENTS_PENDING and self.tracker.completion(documents).ready:
            status = self.tracker.walk(status, [OnboardingStatus.DOCUMENTS_SUBMITTED, OnboardingStatus.UNDER_REVIEW])
            history.append(self.tracker.history_entry(
                HistoryAction.UNDER_REVIEW,
                performed_by=performed_by or merchant_id,
                notes="All required documents submitted",
                documents=REQUIRED_SLOTS,
            ))
            logger.info(f"Merchant {merchant_id} documents complete, queued for review")

        return self.store.update(merchant_id, {
            'documents': documents,
            'onboarding_status': status,
            'verification_history': history,
        })

    def review_documents(self, merchant_id: str, decision: ReviewDecision, reviewer_note: Optional[str] = None,
                         reviewed_by: Optional[str] = None) -> MerchantRecord:
        """
        Record an admin approve/reject decision

        Raises:
            NotReady: Approval with required documents missing
            InvalidTransition: Merchant is not under review
        """
        try:
            decision = ReviewDecision(decision)
        except ValueError:
            raise ValidationError(f"Unknown review decision: {decision}")

        merchant = self._get_merchant(merchant_id)
        documents = self.tracker.decide(merchant.documents, decision, reviewer_note)

        approve = decision == ReviewDecision.APPROVE
        target = OnboardingStatus.VERIFIED if approve else OnboardingStatus.REJECTED
        status = self.tracker.transition(merchant.onboarding_status, target, via_decision=True)

        history = list(merchant.verification_history)
        history.append(self.tracker.history_entry(
            HistoryAction.APPROVED if approve else HistoryAction.REJECTED,
            performed_by=reviewed_by,
            notes=reviewer_note,
            documents=documents.filled_slots(),
        ))

        patch: Dict[str, Any] = {
            'documents': documents,
            'onboarding_status': status,
            'verification_history': history,
        }
        if approve:
            patch.update(verified=True, verified_at=self.clock())

        merchant = self.store.update(merchant_id, patch)
        logger.info(f"Merchant {merchant_id} documents {status.value} by {reviewed_by or 'unknown reviewer'}")
        return merchant

    def reset_for_resubmission(self, merchant_id: str, performed_by: Optional[str] = None,
                               notes: Optional[str] = None) -> MerchantRecord:
        """Reopen a rejected merchant for document resubmission"""
        merchant = self._get_merchant(merchant_id)
        status = self.tracker.transition(merchant.onboarding_status, OnboardingStatus.DOCUMENTS_PENDING)
        documents = self.tracker.reset_for_resubmission(merchant.documents)

        history = list(merchant.verification_history)
        history.append(self.tracker.history_entry(
            HistoryAction.RESUBMITTED,
            performed_by=performed_by,
            notes=notes or "Reopened for document resubmission",
        ))

        logger.info(f"Merchant {merchant_id} reset for document resubmission")
        return self.store.update(merchant_id, {
            'documents': documents,
            'onboarding_status': status,
            'verification_history': history,
        })

    def advance_status(self, merchant_id: str, target: OnboardingStatus) -> MerchantRecord:
        """
        Move a merchant one step along the onboarding state machine

        Only edges without a dedicated operation can be taken here, which
        in practice means marking credentials as sent. Document and review
        statuses follow the document set and are refused.

        Raises:
            InvalidTransition: Target is owned by another operation or is
                not an edge from the current status
        """
        target = OnboardingStatus(target)
        merchant = self._get_merchant(merchant_id)
        if target in STATUS_OPERATIONS:
            raise InvalidTransition(
                f"{target.value} can only be reached through {STATUS_OPERATIONS[target]}",
                details={'merchant_id': merchant_id, 'from': merchant.onboarding_status.value,
                         'to': target.value},
            )
        status = self.tracker.transition(merchant.onboarding_status, target)
        return self.store.update(merchant_id, {'onboarding_status': status})

    def pending_reviews(self) -> List[MerchantRecord]:
        return self.store.list_by_review_status(ReviewStatus.UNDER_REVIEW)

    def get_onboarding_status(self, merchant_id: str) -> Dict[str, Any]:
        merchant = self._get_merchant(merchant_id)
        token = merchant.setup_token
        token_active = token is not None and not token.is_expired(self.clock())
        return {
            'merchantId': merchant.id,
            'onboardingStatus': merchant.onboarding_status.value,
            'verified': merchant.verified,
            'documentReviewStatus': merchant.documents.review_status.value,
            'completion': self.tracker.completion(merchant.documents).to_dict(),
            'setupTokenActive': token_active,
            'setupTokenExpiresAt': token.expires_at.isoformat() if token_active else None,
            'accountSetupAt': merchant.account_setup_at.isoformat() if merchant.account_setup_at else None,
        }

    # === Dispatch ===

    def dispatch_scheduled(self, sender=None, now: Optional[datetime] = None, force: bool = False,
                           cancel_event: Optional[threading.Event] = None) -> Optional[DeliveryReport]:
        """
        Deliver the pending credential queue if it is due

        Returns:
            DeliveryReport, or None when nothing was due
        """
        return self.queue.dispatch_due(
            sender or self.sender,
            self.composer,
            now=now or self.clock(),
            force=force,
            cancel_event=cancel_event,
        )
