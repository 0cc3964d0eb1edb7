"""Tests for the OTP engine state machine against the memory store."""

from datetime import datetime, timedelta, timezone

import pytest

from tenantauth.service.otp import OtpEngine, OtpState, mask_phone
from tenantauth.storage.models import OtpCode, new_id

PHONE = "9123456789"


def _issue(store, engine, code, *, purpose="login", now=None, phone=PHONE, tenant_id=None):
    now = now or datetime.now(timezone.utc)
    otp = OtpCode(
        id=new_id(),
        phone=phone,
        purpose=purpose,
        code_digest=engine.digest(phone, purpose, code),
        expires_at=engine.expiry(now),
        tenant_id=tenant_id,
        created_at=now,
    )
    store.create_otp(otp)
    return otp


def test_generate_is_six_digits(otp_engine):
    for _ in range(50):
        code = otp_engine.generate()
        assert len(code) == 6
        assert code.isdigit()


def test_expiry_is_ten_minutes(otp_engine):
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert otp_engine.expiry(now) == now + timedelta(minutes=10)


def test_digest_binds_phone_and_purpose(otp_engine):
    base = otp_engine.digest(PHONE, "login", "123456")
    assert base != otp_engine.digest(PHONE, "reset_password", "123456")
    assert base != otp_engine.digest("9000000000", "login", "123456")
    assert "123456" not in base


def test_digest_depends_on_secret(otp_engine):
    other = OtpEngine("another-secret-value-for-hmac-keys")
    assert other.digest(PHONE, "login", "123456") != otp_engine.digest(
        PHONE, "login", "123456"
    )


def test_fresh_code_verifies_once(memory_store, otp_engine):
    _issue(memory_store, otp_engine, "123456")
    now = datetime.now(timezone.utc)

    first = otp_engine.evaluate(memory_store, PHONE, "123456", "login", now)
    assert first.valid
    assert first.message == "OTP verified successfully"

    second = otp_engine.evaluate(memory_store, PHONE, "123456", "login", now)
    assert not second.valid
    assert second.message == "Invalid or expired OTP"


def test_verified_result_names_code_tenant(memory_store, otp_engine):
    _issue(memory_store, otp_engine, "123456", tenant_id="tenant-b")
    now = datetime.now(timezone.utc)

    wrong = otp_engine.evaluate(memory_store, PHONE, "000000", "login", now)
    assert wrong.tenant_id is None

    result = otp_engine.evaluate(memory_store, PHONE, "123456", "login", now)
    assert result.valid
    assert result.tenant_id == "tenant-b"


def test_wrong_code_counts_attempt(memory_store, otp_engine):
    otp = _issue(memory_store, otp_engine, "123456")
    result = otp_engine.evaluate(
        memory_store, PHONE, "000000", "login", datetime.now(timezone.utc)
    )
    assert result.state is OtpState.INVALID
    assert result.message == "Invalid OTP"
    assert memory_store.otp_codes[otp.id].attempts == 1


def test_three_failures_exhaust_code(memory_store, otp_engine):
    _issue(memory_store, otp_engine, "123456")
    now = datetime.now(timezone.utc)
    for _ in range(3):
        assert otp_engine.evaluate(memory_store, PHONE, "111111", "login", now).state is (
            OtpState.INVALID
        )
    result = otp_engine.evaluate(memory_store, PHONE, "123456", "login", now)
    assert not result.valid
    assert result.message == "Maximum attempts exceeded. Please request a new OTP."


def test_expired_code(memory_store, otp_engine):
    issued_at = datetime.now(timezone.utc) - timedelta(minutes=11)
    otp = _issue(memory_store, otp_engine, "123456", now=issued_at)
    result = otp_engine.evaluate(
        memory_store, PHONE, "123456", "login", datetime.now(timezone.utc)
    )
    assert result.state is OtpState.EXPIRED
    assert result.message == "OTP has expired"
    # expiry is decided before the attempt counter moves
    assert memory_store.otp_codes[otp.id].attempts == 0


def test_missing_code(memory_store, otp_engine):
    result = otp_engine.evaluate(
        memory_store, PHONE, "123456", "login", datetime.now(timezone.utc)
    )
    assert result.state is OtpState.NOT_FOUND


def test_new_code_invalidates_previous_for_same_purpose_only(memory_store, otp_engine):
    now = datetime.now(timezone.utc)
    old_login = _issue(memory_store, otp_engine, "111111", now=now - timedelta(seconds=30))
    reset = _issue(
        memory_store, otp_engine, "222222", purpose="reset_password", now=now - timedelta(seconds=20)
    )
    _issue(memory_store, otp_engine, "333333", now=now)

    assert memory_store.otp_codes[old_login.id].consumed_at is not None
    assert memory_store.otp_codes[reset.id].consumed_at is None

    assert not otp_engine.evaluate(memory_store, PHONE, "111111", "login", now).valid
    assert otp_engine.evaluate(memory_store, PHONE, "333333", "login", now).valid
    assert otp_engine.evaluate(memory_store, PHONE, "222222", "reset_password", now).valid


def test_concurrent_consume_has_single_winner(memory_store, otp_engine):
    """A racer that loses the consume step reports the code as gone."""

    otp = _issue(memory_store, otp_engine, "123456")
    now = datetime.now(timezone.utc)

    class RacingStore:
        def get_pending_otp(self, phone, purpose):
            return memory_store.get_pending_otp(phone, purpose)

        def increment_otp_attempts(self, otp_id):
            count = memory_store.increment_otp_attempts(otp_id)
            # another request consumes the code between our increment and consume
            memory_store.consume_otp(otp_id, now)
            return count

        def consume_otp(self, otp_id, at):
            return memory_store.consume_otp(otp_id, at)

    result = otp_engine.evaluate(RacingStore(), PHONE, "123456", "login", now)
    assert result.state is OtpState.NOT_FOUND
    assert memory_store.otp_codes[otp.id].consumed_at == now


@pytest.mark.parametrize(
    "phone,masked",
    [("9876543210", "******3210"), ("12345", "12345"), ("123456", "**3456")],
)
def test_mask_phone(phone, masked):
    assert mask_phone(phone) == masked
