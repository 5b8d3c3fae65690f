"""
Account setup token service

Implements the single-use credential a newly created merchant follows to
finish account setup:
- Cryptographically secure random token (256 bits, 64 hex characters)
- 14 day TTL
- Hash storage only (SHA-256 digest, plaintext never persisted)
- Constant-time comparison on verification
- Single-use via explicit consume after a successful verify
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from .errors import TokenExpired, TokenMismatch, TokenNotFound
from .models import SetupToken, utcnow

logger = logging.getLogger(__name__)

# Security configuration
TOKEN_BYTE_LENGTH = 32  # 256 bits of entropy
DEFAULT_TTL_DAYS = 14


class SetupTokenService:
    """
    Issues and verifies merchant account-setup tokens

    Issuing has no side effects: the caller persists the returned
    SetupToken through the merchant store and delivers the plaintext.
    Verification and consumption read and clear the stored hash.
    """

    def __init__(self, store, ttl_days: int = DEFAULT_TTL_DAYS,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.ttl = timedelta(days=ttl_days)
        self.clock = clock or utcnow

    @property
    def ttl_days(self) -> int:
        return self.ttl.days

    @staticmethod
    def hash_token(plaintext: str) -> str:
        """SHA-256 hex digest of a plaintext token"""
        return hashlib.sha256(plaintext.encode('utf-8')).hexdigest()

    def issue(self, merchant_id: str) -> Tuple[str, SetupToken]:
        """
        Generate a new setup token for a merchant

        Args:
            merchant_id: Merchant the token is bound to

        Returns:
            Tuple of (plaintext token to deliver - do not log or store,
            SetupToken to persist)
        """
        plaintext = secrets.token_hex(TOKEN_BYTE_LENGTH)
        issued_at = self.clock()
        token = SetupToken(
            token_hash=self.hash_token(plaintext),
            issued_at=issued_at,
            expires_at=issued_at + self.ttl,
            merchant_id=merchant_id,
        )
        return plaintext, token

    def verify(self, merchant_id: str, supplied_plaintext: str) -> SetupToken:
        """
        Check a supplied token against the one on file

        Args:
            merchant_id: Merchant claiming the token
            supplied_plaintext: Token from the setup link

        Returns:
            The stored SetupToken when valid

        Raises:
            TokenNotFound: No token on file for this merchant
            TokenMismatch: Supplied token does not match the stored hash
            TokenExpired: Token matched but is past its expiry
        """
        merchant = self.store.find_by_id(merchant_id)
        stored = merchant.setup_token if merchant else None
        if stored is None:
            raise TokenNotFound("No setup token on file", details={'merchant_id': merchant_id})

        supplied_hash = self.hash_token(supplied_plaintext or '')
        if not hmac.compare_digest(supplied_hash, stored.token_hash):
            logger.warning(f"Setup token mismatch for merchant {merchant_id}")
            raise TokenMismatch("Setup token is invalid", details={'merchant_id': merchant_id})

        if stored.is_expired(self.clock()):
            raise TokenExpired(
                "Setup token has expired",
                details={'merchant_id': merchant_id, 'expired_at': stored.expires_at.isoformat()},
            )

        return stored

    def consume(self, merchant_id: str) -> None:
        """Clear the stored token so it cannot be used again"""
        self.store.update(merchant_id, {'setup_token': None})
        logger.info(f"Setup token consumed for merchant {merchant_id}")

    def time_remaining(self, token: SetupToken) -> timedelta:
        """Time until expiry, floored at zero"""
        remaining = token.expires_at - self.clock()
        return max(remaining, timedelta(0))

    @staticmethod
    def build_setup_url(base_url: str, plaintext: str) -> str:
        return f"{base_url.rstrip('/')}/merchant/account-setup/{plaintext}"

    @staticmethod
    def build_login_url(base_url: str) -> str:
        return f"{base_url.rstrip('/')}/auth?merchant=true"
