"""
Durable credential delivery queue

Holds welcome-credential e-mails for a scheduled dispatch and guarantees
that a delivery attempt is never silently lost:
- One canonical pending artifact (scheduled-emails.json) at a time
- Atomic persistence: write to a temp file, fsync, rename over the canonical path
- Progress is re-persisted after every send, so a restarted dispatcher resumes
- Archives (sent-emails-<timestamp>.json) are written once and never overwritten

Delivery is at-least-once: an entry whose send succeeded but whose progress
write did not complete is sent again on resume.
"""

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import DeliveryFailed, QueueAlreadyPending, QueueLockError, QueuePersistenceError
from .models import format_datetime, parse_datetime, utcnow

logger = logging.getLogger(__name__)

QUEUE_FILENAME = "scheduled-emails.json"
ARCHIVE_PREFIX = "sent-emails-"


@dataclass(frozen=True)
class MerchantSnapshot:
    """Copy of the merchant fields a credential e-mail needs"""
    merchant_id: str
    business_name: str
    email: str
    internal_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.merchant_id,
            "businessName": self.business_name,
            "email": self.email,
            "internalId": self.internal_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MerchantSnapshot":
        return cls(
            merchant_id=data.get("id") or data.get("_id"),
            business_name=data["businessName"],
            email=data["email"],
            internal_id=data.get("internalId"),
        )


@dataclass(frozen=True)
class Credentials:
    """Plaintext credential bundle; lives only in return values and the queue file"""
    email: str
    temp_password: str
    setup_token: str
    setup_url: str
    login_url: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "tempPassword": self.temp_password,
            "setupToken": self.setup_token,
            "setupUrl": self.setup_url,
            "loginUrl": self.login_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credentials":
        return cls(
            email=data["email"],
            temp_password=data["tempPassword"],
            setup_token=data["setupToken"],
            setup_url=data["setupUrl"],
            login_url=data["loginUrl"],
        )

    def __repr__(self) -> str:
        return f"Credentials(email={self.email!r}, setup_url=<redacted>)"


@dataclass(frozen=True)
class CredentialDeliveryEntry:
    merchant: MerchantSnapshot
    credentials: Credentials
    needs_manual_review: bool = False

    @property
    def setup_token(self) -> str:
        return self.credentials.setup_token

    def to_dict(self) -> Dict[str, Any]:
        return {
            "merchant": self.merchant.to_dict(),
            "credentials": self.credentials.to_dict(),
            "setupToken": self.credentials.setup_token,
            "needsUpdate": self.needs_manual_review,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialDeliveryEntry":
        return cls(
            merchant=MerchantSnapshot.from_dict(data["merchant"]),
            credentials=Credentials.from_dict(data["credentials"]),
            needs_manual_review=bool(data.get("needsUpdate", False)),
        )


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    business: str
    email: str
    internal_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "business": self.business,
            "email": self.email,
            "internalId": self.internal_id,
        }
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryResult":
        return cls(
            success=bool(data["success"]),
            business=data.get("business", ""),
            email=data.get("email", ""),
            internal_id=data.get("internalId"),
            error=data.get("error"),
        )


@dataclass
class DeliveryReport:
    """Per-entry outcome of a delivery pass, in queue order"""
    total: int
    results: List[DeliveryResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def completed(self) -> bool:
        return len(self.results) >= self.total

    @property
    def successes(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failures(self) -> int:
        return sum(1 for result in self.results if not result.success)

    def failed(self) -> List[DeliveryResult]:
        return [result for result in self.results if not result.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successes": self.successes,
            "failures": self.failures,
            "completed": self.completed,
            "cancelled": self.cancelled,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass
class DeliveryQueue:
    """The unit of durability: one scheduled batch of credential e-mails"""
    scheduled_for: datetime
    scheduled_time: str
    created_at: datetime
    entries: List[CredentialDeliveryEntry] = field(default_factory=list)
    results: List[DeliveryResult] = field(default_factory=list)

    def is_due(self, now: datetime) -> bool:
        return now >= self.scheduled_for

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "scheduledFor": format_datetime(self.scheduled_for),
            "scheduledTime": self.scheduled_time,
            "created": format_datetime(self.created_at),
            "emails": [entry.to_dict() for entry in self.entries],
        }
        if self.results:
            data["results"] = [result.to_dict() for result in self.results]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryQueue":
        return cls(
            scheduled_for=parse_datetime(data["scheduledFor"]),
            scheduled_time=data.get("scheduledTime", ""),
            created_at=parse_datetime(data.get("created")),
            entries=[CredentialDeliveryEntry.from_dict(raw) for raw in data.get("emails", [])],
            results=[DeliveryResult.from_dict(raw) for raw in data.get("results", [])],
        )


class RedisQueueLock:
    """
    Cross-process queue lock backed by a redis-py Lock

    Use in place of the default in-process lock when several hosts or cron
    triggers may dispatch the same queue directory.
    """

    def __init__(self, redis_client, name: str = "merchant_onboarding:delivery_queue",
                 timeout: int = 3600, blocking_timeout: float = 10.0):
        self.redis = redis_client
        self.name = name
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self._lock = None

    def __enter__(self):
        lock = self.redis.lock(self.name, timeout=self.timeout, blocking_timeout=self.blocking_timeout)
        if not lock.acquire():
            raise QueueLockError(f"Delivery queue lock {self.name} is held by another dispatcher")
        self._lock = lock
        return self

    def __exit__(self, exc_type, exc, tb):
        lock, self._lock = self._lock, None
        if lock is not None:
            lock.release()
        return False


class CredentialDeliveryQueue:
    """
    Single-writer manager for the pending credential queue

    enqueue, drain, archive and discard serialize on one lock; pass a
    RedisQueueLock to extend that across processes.
    """

    def __init__(self, queue_dir, lock=None, clock: Optional[Callable[[], datetime]] = None,
                 sleep: Callable[[float], None] = time.sleep, inter_send_delay: float = 2.0):
        self.queue_dir = Path(queue_dir)
        self.lock = lock or threading.RLock()
        self.clock = clock or utcnow
        self.sleep = sleep
        self.inter_send_delay = inter_send_delay

    @property
    def queue_path(self) -> Path:
        return self.queue_dir / QUEUE_FILENAME

    # === Persistence ===

    def load(self) -> Optional[DeliveryQueue]:
        """
        Read the pending queue

        Returns:
            The queue, or None when no pending artifact exists

        Raises:
            QueuePersistenceError: Artifact exists but cannot be read or parsed
        """
        try:
            with open(self.queue_path, 'r', encoding='utf-8') as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise QueuePersistenceError(f"Cannot read delivery queue: {e}",
                                        details={'path': str(self.queue_path)})

        try:
            return DeliveryQueue.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise QueuePersistenceError(f"Delivery queue is malformed: {e}",
                                        details={'path': str(self.queue_path)})

    def persist(self, queue: DeliveryQueue) -> Path:
        """Atomically replace the canonical queue artifact"""
        self._write_atomic(self.queue_path, queue.to_dict())
        logger.debug(f"Persisted delivery queue with {len(queue.entries)} entries")
        return self.queue_path

    def has_pending(self) -> bool:
        queue = self.load()
        return bool(queue and queue.entries)

    def _write_atomic(self, path: Path, payload: Dict[str, Any]) -> None:
        tmp_name = None
        try:
            self.queue_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile('w', encoding='utf-8', dir=self.queue_dir,
                                             prefix=f".{path.name}.", suffix='.tmp',
                                             delete=False) as fh:
                tmp_name = fh.name
                json.dump(payload, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            raise QueuePersistenceError(f"Cannot write {path.name}: {e}", details={'path': str(path)})
        finally:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    # === Lifecycle ===
    # Public methods take the lock once and call the unlocked helpers, so a
    # non-reentrant lock (RedisQueueLock) is never acquired twice.

    def enqueue(self, entries: Sequence[CredentialDeliveryEntry], scheduled_for: datetime,
                scheduled_time: str = "") -> DeliveryQueue:
        """
        Create and persist a new pending queue

        Raises:
            QueueAlreadyPending: A non-empty pending queue already exists
            QueuePersistenceError: The queue could not be written
        """
        with self.lock:
            self.ensure_no_pending()
            queue = DeliveryQueue(
                scheduled_for=scheduled_for,
                scheduled_time=scheduled_time or scheduled_for.strftime('%H:%M'),
                created_at=self.clock(),
                entries=list(entries),
            )
            self.persist(queue)

        logger.info(f"Enqueued {len(queue.entries)} credential e-mails for {format_datetime(scheduled_for)}")
        return queue

    def ensure_no_pending(self) -> None:
        """Raise QueueAlreadyPending when an undelivered queue exists"""
        existing = self.load()
        if existing and existing.entries:
            raise QueueAlreadyPending(
                "An undelivered credential queue already exists; drain or discard it first",
                details={
                    'pending_entries': len(existing.entries),
                    'scheduled_for': format_datetime(existing.scheduled_for),
                },
            )

    def drain(self, queue: DeliveryQueue, sender, composer,
              cancel_event: Optional[threading.Event] = None) -> DeliveryReport:
        """
        Send every outstanding entry in enqueue order

        A failed entry is recorded and the pass continues. Progress is
        persisted after each entry; entries already recorded by an earlier,
        interrupted pass are skipped.

        Args:
            queue: Loaded pending queue
            sender: EmailSender with send(to_email, subject, html_content, text_content)
            composer: Object with compose(entry) returning an EmailMessage
            cancel_event: When set, no further sends are started

        Raises:
            QueuePersistenceError: Progress could not be saved; the pass stops
        """
        with self.lock:
            return self._drain(queue, sender, composer, cancel_event)

    def archive(self, queue: DeliveryQueue, report: DeliveryReport) -> Path:
        """
        Write the immutable archive record and remove the pending artifact

        Raises:
            ValueError: The report does not cover every entry
            QueuePersistenceError: Archive could not be written
        """
        if not report.completed:
            raise ValueError("Cannot archive a queue before every entry has a delivery result")

        with self.lock:
            return self._archive(queue, report)

    def discard(self) -> Optional[Path]:
        """Archive the pending queue, with any results already recorded, so a new batch can be enqueued"""
        with self.lock:
            queue = self.load()
            if queue is None:
                return None
            report = DeliveryReport(total=len(queue.entries), results=list(queue.results))
            path = self._archive(queue, report, discarded=True)

        logger.warning(f"Discarded delivery queue with {report.total - len(report.results)} unsent entries")
        return path

    def dispatch_due(self, sender, composer, now: Optional[datetime] = None, force: bool = False,
                     cancel_event: Optional[threading.Event] = None) -> Optional[DeliveryReport]:
        """
        Load, drain and archive the pending queue under a single lock hold

        Returns:
            The delivery report, or None when nothing is pending or the
            queue is not yet due
        """
        now = now or self.clock()
        with self.lock:
            queue = self.load()
            if queue is None or not queue.entries:
                logger.info("No pending credential queue to dispatch")
                return None

            if not force and not queue.is_due(now):
                logger.info(f"Credential queue not due until {format_datetime(queue.scheduled_for)}")
                return None

            report = self._drain(queue, sender, composer, cancel_event)
            if report.completed:
                self._archive(queue, report)
            return report

    # === Internals (caller holds the lock) ===

    def _drain(self, queue: DeliveryQueue, sender, composer,
               cancel_event: Optional[threading.Event]) -> DeliveryReport:
        report = DeliveryReport(total=len(queue.entries), results=list(queue.results))
        start = len(report.results)
        if start:
            logger.info(f"Resuming delivery at entry {start + 1}/{report.total}")

        for index in range(start, report.total):
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.warning(f"Delivery cancelled after {len(report.results)}/{report.total} entries")
                break

            if index > start and self.inter_send_delay > 0:
                self.sleep(self.inter_send_delay)

            result = self._deliver(queue.entries[index], sender, composer, index)
            report.results.append(result)
            queue.results = list(report.results)
            self.persist(queue)

        if report.cancelled:
            # Cancelled before the first send still leaves a persisted artifact
            self.persist(queue)

        logger.info(f"Delivery pass: {report.successes} sent, {report.failures} failed, "
                    f"{report.total - len(report.results)} outstanding")
        return report

    def _deliver(self, entry: CredentialDeliveryEntry, sender, composer, index: int) -> DeliveryResult:
        merchant = entry.merchant
        try:
            message = composer.compose(entry)
            sender.send(merchant.email, message.subject, message.html_content, message.text_content)
        except DeliveryFailed as e:
            logger.error(f"Failed to send credentials to {merchant.business_name} ({merchant.email}): {e.message}")
            return DeliveryResult(False, merchant.business_name, merchant.email, merchant.internal_id, e.message)
        except Exception as e:
            logger.error(f"Failed to send credentials to {merchant.business_name} ({merchant.email}): {str(e)}",
                         exc_info=True)
            return DeliveryResult(False, merchant.business_name, merchant.email, merchant.internal_id, str(e))

        logger.info(f"Sent credentials {index + 1}: {merchant.business_name} ({merchant.email})")
        return DeliveryResult(True, merchant.business_name, merchant.email, merchant.internal_id)

    def _archive(self, queue: DeliveryQueue, report: DeliveryReport, discarded: bool = False) -> Path:
        sent_at = self.clock()
        payload = queue.to_dict()
        payload["sentAt"] = format_datetime(sent_at)
        payload["results"] = [result.to_dict() for result in report.results]
        if discarded:
            payload["discarded"] = True

        archive_path = self._archive_path(sent_at)
        self._write_atomic(archive_path, payload)
        try:
            self.queue_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise QueuePersistenceError(f"Archived but could not remove pending queue: {e}",
                                        details={'archive': str(archive_path)})

        logger.info(f"Archived delivery queue to {archive_path.name} "
                    f"({report.successes} sent, {report.failures} failed)")
        return archive_path

    def _archive_path(self, sent_at: datetime) -> Path:
        stamp = int(sent_at.timestamp() * 1000)
        candidate = self.queue_dir / f"{ARCHIVE_PREFIX}{stamp}.json"
        suffix = 1
        while candidate.exists():
            candidate = self.queue_dir / f"{ARCHIVE_PREFIX}{stamp}-{suffix}.json"
            suffix += 1
        return candidate

    def list_archives(self) -> List[Path]:
        if not self.queue_dir.exists():
            return []
        return sorted(self.queue_dir.glob(f"{ARCHIVE_PREFIX}*.json"))

    def load_archive(self, path) -> Dict[str, Any]:
        with open(path, 'r', encoding='utf-8') as fh:
            return json.load(fh)
