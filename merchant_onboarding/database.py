"""
SQLAlchemy persistence for merchant records

Implements the merchant store used by the onboarding subsystem:
create/find/update by id or e-mail plus an upsert keyed by a feed's
external id. Rows never leave this module; callers receive detached
MerchantRecord copies.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional, Tuple

from sqlalchemy import Boolean, Column, DateTime, JSON, String, Text, create_engine, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import DuplicateEmail, MerchantNotFound, ValidationError
from .models import (
    FEED_FIELDS,
    DocumentSet,
    MerchantRecord,
    OnboardingStatus,
    ReviewStatus,
    SetupToken,
    VerificationHistoryEntry,
    ensure_aware,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DBMerchant(Base):
    """Merchant row with onboarding state"""
    __tablename__ = 'merchants'

    id = Column(String(50), primary_key=True, default=lambda: f"mer_{uuid.uuid4().hex[:16]}")
    external_id = Column(String(100), unique=True, nullable=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    business_name = Column(String(200), nullable=False)
    phone = Column(String(30), nullable=True)
    owner_name = Column(String(150), nullable=True)
    internal_id = Column(String(50), nullable=True)
    business_type = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    address = Column(String(255), nullable=True)
    location = Column(String(255), nullable=True)
    website = Column(String(255), nullable=True)
    business_hours = Column(JSON, nullable=True)

    # Onboarding state
    onboarding_status = Column(String(30), nullable=False, default=OnboardingStatus.CREDENTIALS_PENDING.value, index=True)
    verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    account_setup_at = Column(DateTime(timezone=True), nullable=True)

    # Provenance
    created_programmatically = Column(Boolean, nullable=False, default=False)
    created_by = Column(String(100), nullable=True)

    # Credentials (hashes only)
    password_hash = Column(String(100), nullable=True)
    setup_token_hash = Column(String(64), nullable=True, index=True)
    setup_token_issued_at = Column(DateTime(timezone=True), nullable=True)
    setup_token_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Documents and review trail as JSON
    documents = Column(JSON, nullable=False, default=dict)
    review_status = Column(String(20), nullable=False, default=ReviewStatus.PENDING.value, index=True)
    documents_submitted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    verification_history = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class DatabaseService:
    """Engine and session factory for the merchant store"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        engine_kwargs: Dict[str, Any] = {}
        if database_url.startswith('sqlite') and ':memory:' in database_url:
            # One shared connection so every session sees the same in-memory database
            engine_kwargs.update(
                poolclass=StaticPool,
                connect_args={'check_same_thread': False},
            )
        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_tables(self):
        Base.metadata.create_all(self.engine)

    def drop_tables(self):
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Get database session context manager

        Commits on success, rolls back on any exception and re-raises.
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


# Record attributes that map 1:1 onto columns
_SIMPLE_FIELDS = FEED_FIELDS + (
    'external_id',
    'verified',
    'verified_at',
    'account_setup_at',
    'password_hash',
    'business_hours',
)
_PATCHABLE_FIELDS = set(_SIMPLE_FIELDS) | {
    'onboarding_status',
    'setup_token',
    'documents',
    'verification_history',
}


def normalize_email(email: str) -> str:
    return email.strip().lower()


class MerchantStore:
    """
    Merchant persistence used by the onboarding services

    E-mail uniqueness is case-insensitive: addresses are normalised before
    every write and lookup.
    """

    def __init__(self, db: DatabaseService):
        self.db = db

    # === Reads ===

    def find_by_id(self, merchant_id: str) -> Optional[MerchantRecord]:
        with self.db.get_session() as session:
            row = session.get(DBMerchant, merchant_id)
            return self._to_record(row) if row else None

    def find_by_email(self, email: str) -> Optional[MerchantRecord]:
        with self.db.get_session() as session:
            row = session.query(DBMerchant).filter_by(email=normalize_email(email)).first()
            return self._to_record(row) if row else None

    def find_by_external_id(self, external_id: str) -> Optional[MerchantRecord]:
        with self.db.get_session() as session:
            row = session.query(DBMerchant).filter_by(external_id=external_id).first()
            return self._to_record(row) if row else None

    def list_by_review_status(self, status: ReviewStatus) -> List[MerchantRecord]:
        """Merchants whose document set is in the given state, oldest submission first"""
        with self.db.get_session() as session:
            rows = (
                session.query(DBMerchant)
                .filter(DBMerchant.review_status == status.value)
                .order_by(DBMerchant.documents_submitted_at.asc(), DBMerchant.created_at.asc())
                .all()
            )
            return [self._to_record(row) for row in rows]

    def count(self) -> int:
        with self.db.get_session() as session:
            return session.query(func.count(DBMerchant.id)).scalar()

    # === Writes ===

    def create(self, record: MerchantRecord) -> str:
        """
        Insert a new merchant

        Returns:
            The new merchant id

        Raises:
            DuplicateEmail: If the e-mail is already registered
        """
        email = normalize_email(record.email)
        try:
            with self.db.get_session() as session:
                if session.query(DBMerchant.id).filter_by(email=email).first():
                    raise DuplicateEmail(
                        f"A merchant with email {email} already exists",
                        details={'email': email},
                    )
                row = DBMerchant(id=record.id) if record.id else DBMerchant()
                self._apply_fields(row, record, _PATCHABLE_FIELDS)
                row.email = email
                session.add(row)
                session.flush()
                merchant_id = row.id
        except IntegrityError:
            raise DuplicateEmail(
                f"A merchant with email {email} already exists",
                details={'email': email},
            )

        logger.info(f"Created merchant {merchant_id} ({email})")
        return merchant_id

    def update(self, merchant_id: str, patch: Dict[str, Any]) -> MerchantRecord:
        """
        Apply a field patch to a merchant

        Args:
            merchant_id: Merchant to update
            patch: Mapping of MerchantRecord attribute names to new values

        Raises:
            MerchantNotFound: If no merchant has this id
            ValidationError: If the patch names an unknown field
            DuplicateEmail: If the patch moves the e-mail onto another merchant's
        """
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown merchant fields: {', '.join(sorted(unknown))}")

        try:
            with self.db.get_session() as session:
                row = session.get(DBMerchant, merchant_id)
                if row is None:
                    raise MerchantNotFound(f"Merchant {merchant_id} not found",
                                           details={'merchant_id': merchant_id})
                staged = self._to_record(row)
                for key, value in patch.items():
                    setattr(staged, key, value)
                self._apply_fields(row, staged, patch.keys())
                if 'email' in patch:
                    row.email = normalize_email(staged.email)
                session.flush()
                return self._to_record(row)
        except IntegrityError:
            raise DuplicateEmail(f"Email {patch.get('email')} is already in use",
                                 details={'email': patch.get('email')})

    def upsert(self, external_id: str, record: MerchantRecord) -> Tuple[MerchantRecord, bool]:
        """
        Create or fully overwrite the merchant keyed by an external id

        Feed-owned fields are replaced wholesale: a field missing from the
        incoming record reverts to its default. Onboarding state, documents,
        credentials and history are not feed-owned and survive an overwrite.

        Returns:
            Tuple of (stored record, created flag)
        """
        email = normalize_email(record.email)
        try:
            with self.db.get_session() as session:
                clash = session.query(DBMerchant).filter_by(email=email).first()
                row = session.query(DBMerchant).filter_by(external_id=external_id).first()
                if clash is not None and (row is None or clash.id != row.id):
                    raise DuplicateEmail(
                        f"Email {email} belongs to another merchant",
                        details={'email': email, 'external_id': external_id},
                    )

                created = row is None
                if created:
                    row = DBMerchant(external_id=external_id)
                    self._apply_fields(row, record, _PATCHABLE_FIELDS - {'external_id'})
                    session.add(row)
                else:
                    self._apply_fields(row, record, FEED_FIELDS)
                row.email = email
                session.flush()
                stored = self._to_record(row)
        except IntegrityError:
            raise DuplicateEmail(f"Email {email} is already in use",
                                 details={'email': email, 'external_id': external_id})

        logger.info(f"{'Inserted' if created else 'Overwrote'} merchant {stored.id} from feed id {external_id}")
        return stored, created

    # === Mapping ===

    @staticmethod
    def _apply_fields(row: DBMerchant, record: MerchantRecord, fields) -> None:
        for name in fields:
            if name in _SIMPLE_FIELDS:
                setattr(row, name, getattr(record, name))
            elif name == 'onboarding_status':
                row.onboarding_status = OnboardingStatus(record.onboarding_status).value
            elif name == 'setup_token':
                token = record.setup_token
                row.setup_token_hash = token.token_hash if token else None
                row.setup_token_issued_at = token.issued_at if token else None
                row.setup_token_expires_at = token.expires_at if token else None
            elif name == 'documents':
                docs = record.documents or DocumentSet()
                row.documents = docs.to_dict()
                row.review_status = docs.review_status.value
                row.documents_submitted_at = docs.documents_submitted_at
            elif name == 'verification_history':
                row.verification_history = [entry.to_dict() for entry in record.verification_history]

    @staticmethod
    def _to_record(row: DBMerchant) -> MerchantRecord:
        token = None
        if row.setup_token_hash:
            token = SetupToken(
                token_hash=row.setup_token_hash,
                issued_at=ensure_aware(row.setup_token_issued_at),
                expires_at=ensure_aware(row.setup_token_expires_at),
                merchant_id=row.id,
            )
        return MerchantRecord(
            id=row.id,
            external_id=row.external_id,
            email=row.email,
            business_name=row.business_name,
            phone=row.phone,
            owner_name=row.owner_name,
            internal_id=row.internal_id,
            business_type=row.business_type,
            description=row.description,
            address=row.address,
            location=row.location,
            website=row.website,
            business_hours=row.business_hours,
            onboarding_status=OnboardingStatus(row.onboarding_status),
            verified=bool(row.verified),
            verified_at=ensure_aware(row.verified_at),
            created_programmatically=bool(row.created_programmatically),
            created_by=row.created_by,
            password_hash=row.password_hash,
            setup_token=token,
            account_setup_at=ensure_aware(row.account_setup_at),
            documents=DocumentSet.from_dict(row.documents),
            verification_history=[
                VerificationHistoryEntry.from_dict(entry) for entry in (row.verification_history or [])
            ],
            created_at=ensure_aware(row.created_at),
            updated_at=ensure_aware(row.updated_at),
        )
