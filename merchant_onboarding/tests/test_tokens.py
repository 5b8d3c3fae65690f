"""
Tests for account setup tokens

Covers issue/verify round trip, constant-time mismatch, the 14 day expiry
boundary, single-use consumption and hash-only storage.
"""

import re
from datetime import timedelta

import pytest

from ..database import DBMerchant
from ..errors import TokenExpired, TokenMismatch, TokenNotFound
from ..tokens import SetupTokenService


@pytest.fixture
def token_service(store, clock):
    return SetupTokenService(store, ttl_days=14, clock=clock)


@pytest.fixture
def issued(token_service, store, make_merchant):
    """Merchant with a persisted token; returns (merchant_id, plaintext, SetupToken)"""
    merchant_id = make_merchant()
    plaintext, token = token_service.issue(merchant_id)
    store.update(merchant_id, {'setup_token': token})
    return merchant_id, plaintext, token


class TestTokenIssue:
    """Test token generation"""

    def test_plaintext_is_64_hex_characters(self, token_service):
        plaintext, _ = token_service.issue("mer_1")
        assert re.fullmatch(r'[0-9a-f]{64}', plaintext)

    def test_expiry_is_fourteen_days_after_issue(self, token_service, clock):
        _, token = token_service.issue("mer_1")
        assert token.issued_at == clock.now
        assert token.expires_at - token.issued_at == timedelta(days=14)
        assert token.merchant_id == "mer_1"

    def test_only_digest_is_kept(self, token_service):
        plaintext, token = token_service.issue("mer_1")
        assert token.token_hash != plaintext
        assert token.token_hash == SetupTokenService.hash_token(plaintext)

    def test_issue_has_no_side_effects(self, token_service, store, make_merchant):
        merchant_id = make_merchant()
        token_service.issue(merchant_id)
        assert store.find_by_id(merchant_id).setup_token is None

    def test_tokens_are_unique(self, token_service):
        tokens = {token_service.issue("mer_1")[0] for _ in range(50)}
        assert len(tokens) == 50

    def test_plaintext_never_reaches_the_database(self, issued, db):
        merchant_id, plaintext, _ = issued
        with db.get_session() as session:
            row = session.get(DBMerchant, merchant_id)
            values = [str(getattr(row, column.name)) for column in DBMerchant.__table__.columns]
        assert all(plaintext not in value for value in values)


class TestTokenVerify:
    """Test token verification outcomes"""

    def test_round_trip(self, token_service, issued):
        merchant_id, plaintext, token = issued
        assert token_service.verify(merchant_id, plaintext) == token

    @pytest.mark.parametrize("supplied", ["", "deadbeef", "0" * 64])
    def test_other_strings_mismatch(self, token_service, issued, supplied):
        merchant_id, _, _ = issued
        with pytest.raises(TokenMismatch):
            token_service.verify(merchant_id, supplied)

    def test_token_of_another_merchant_mismatches(self, token_service, store, issued, make_merchant):
        merchant_id, plaintext, _ = issued
        other_id = make_merchant(email="other@shop.co.ke", business_name="Other Shop")
        _, other_token = token_service.issue(other_id)
        store.update(other_id, {'setup_token': other_token})

        with pytest.raises(TokenMismatch):
            token_service.verify(other_id, plaintext)

    def test_no_token_on_file(self, token_service, make_merchant):
        with pytest.raises(TokenNotFound):
            token_service.verify(make_merchant(), "a" * 64)

    def test_unknown_merchant(self, token_service):
        with pytest.raises(TokenNotFound):
            token_service.verify("mer_missing", "a" * 64)

    def test_valid_one_second_before_expiry(self, token_service, issued, clock):
        merchant_id, plaintext, _ = issued
        clock.advance(days=14, seconds=-1)
        assert token_service.verify(merchant_id, plaintext)

    def test_valid_at_exact_expiry(self, token_service, issued, clock):
        merchant_id, plaintext, _ = issued
        clock.advance(days=14)
        assert token_service.verify(merchant_id, plaintext)

    def test_expired_after_fourteen_days(self, token_service, issued, clock):
        merchant_id, plaintext, _ = issued
        clock.advance(days=14, seconds=1)
        with pytest.raises(TokenExpired) as exc_info:
            token_service.verify(merchant_id, plaintext)
        assert exc_info.value.error_code.value == "TOK_2003"

    def test_wrong_token_after_expiry_is_a_mismatch(self, token_service, issued, clock):
        merchant_id, _, _ = issued
        clock.advance(days=30)
        with pytest.raises(TokenMismatch):
            token_service.verify(merchant_id, "f" * 64)


class TestTokenConsume:
    """Test single-use enforcement"""

    def test_second_verify_after_consume_fails(self, token_service, issued):
        merchant_id, plaintext, _ = issued
        token_service.verify(merchant_id, plaintext)
        token_service.consume(merchant_id)

        with pytest.raises(TokenNotFound):
            token_service.verify(merchant_id, plaintext)

    def test_reissue_after_consume(self, token_service, store, issued):
        merchant_id, plaintext, _ = issued
        token_service.consume(merchant_id)

        new_plaintext, new_token = token_service.issue(merchant_id)
        store.update(merchant_id, {'setup_token': new_token})

        assert new_plaintext != plaintext
        assert token_service.verify(merchant_id, new_plaintext) == new_token

    def test_reissue_invalidates_previous_token(self, token_service, store, issued):
        merchant_id, old_plaintext, _ = issued
        _, new_token = token_service.issue(merchant_id)
        store.update(merchant_id, {'setup_token': new_token})

        with pytest.raises(TokenMismatch):
            token_service.verify(merchant_id, old_plaintext)


class TestTokenHelpers:

    def test_time_remaining_floors_at_zero(self, token_service, clock):
        _, token = token_service.issue("mer_1")
        assert token_service.time_remaining(token) == timedelta(days=14)
        clock.advance(days=20)
        assert token_service.time_remaining(token) == timedelta(0)

    def test_url_shapes(self):
        assert SetupTokenService.build_setup_url("https://nairobicbd.directory/", "abc") == \
            "https://nairobicbd.directory/merchant/account-setup/abc"
        assert SetupTokenService.build_login_url("https://nairobicbd.directory") == \
            "https://nairobicbd.directory/auth?merchant=true"
