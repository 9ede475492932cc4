"""Tests for one-time phone codes."""

import pytest

from propauth.service.errors import (
    AuthenticationUnavailable,
    OTPAttemptsExhausted,
    OTPExpired,
    OTPInvalid,
    ValidationError,
)
from propauth.service.otp import (
    PURPOSE_LOGIN,
    PURPOSE_PHONE_VERIFICATION,
    OTPManager,
    normalize_phone,
)

PHONE = "+254712345678"


@pytest.fixture
def otp(settings, store, notifier, clock):
    return OTPManager(settings, store, notifier, clock=clock)


def _wrong(code: str) -> str:
    return "0" * len(code) if code != "0" * len(code) else "1" * len(code)


class TestNormalizePhone:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("+254712345678", "+254712345678"),
            ("254712345678", "+254712345678"),
            (" +254 (712) 345-678 ", "+254712345678"),
            ("0712.345.678", "+0712345678"),
        ],
    )
    def test_canonical_form(self, raw, expected):
        assert normalize_phone(raw) == expected

    @pytest.mark.parametrize("raw", ["", "12345", "+1234567890123456", "phone", "+2547-12x"])
    def test_rejects_invalid(self, raw):
        with pytest.raises(ValidationError):
            normalize_phone(raw)


class TestIssueAndVerify:
    """Issuing, superseding and spending codes."""

    def test_code_shape_and_storage(self, otp, store, settings):
        handle, code = otp.issue_otp(PHONE)

        assert len(code) == settings.otp_length
        assert code.isdigit()
        record = store.otps[handle.otp_id]
        assert record.code_hash != code
        assert handle.attempts_left == settings.otp_max_attempts

    def test_correct_code_verifies_once(self, otp):
        _handle, code = otp.issue_otp(PHONE)

        record = otp.verify_otp(PHONE, code)

        assert record.phone == PHONE
        with pytest.raises(OTPInvalid):
            otp.verify_otp(PHONE, code)

    def test_formatting_of_phone_does_not_matter(self, otp):
        _handle, code = otp.issue_otp("+254 712 345 678")

        assert otp.verify_otp("254712345678", code).phone == PHONE

    def test_wrong_code_counts_down(self, otp, settings):
        _handle, code = otp.issue_otp(PHONE)

        with pytest.raises(OTPInvalid) as excinfo:
            otp.verify_otp(PHONE, _wrong(code))

        assert excinfo.value.detail["attempts_left"] == settings.otp_max_attempts - 1

    def test_attempts_exhausted_kills_the_code(self, otp, settings):
        _handle, code = otp.issue_otp(PHONE)
        for _ in range(settings.otp_max_attempts):
            with pytest.raises(OTPInvalid):
                otp.verify_otp(PHONE, _wrong(code))

        with pytest.raises(OTPAttemptsExhausted):
            otp.verify_otp(PHONE, code)

    def test_expired_code(self, otp, clock):
        _handle, code = otp.issue_otp(PHONE)
        clock.advance(minutes=11)

        with pytest.raises(OTPExpired):
            otp.verify_otp(PHONE, code)

    def test_new_code_supersedes_old(self, otp, clock):
        _handle, first = otp.issue_otp(PHONE)
        clock.advance(seconds=1)
        _handle, second = otp.issue_otp(PHONE)

        if first != second:
            with pytest.raises(OTPInvalid):
                otp.verify_otp(PHONE, first)
        assert otp.verify_otp(PHONE, second).phone == PHONE

    def test_newest_code_wins_within_the_same_instant(self, otp, store):
        first_handle, first = otp.issue_otp(PHONE)
        second_handle, second = otp.issue_otp(PHONE)

        assert store.otps[first_handle.otp_id].created_at == store.otps[second_handle.otp_id].created_at
        assert otp.verify_otp(PHONE, second).id == second_handle.otp_id

    def test_three_wrong_codes_exhaust_the_default_budget(self, otp):
        phone = "+254700000000"
        _handle, code = otp.issue_otp(phone)
        wrong = _wrong(code)

        for _ in range(3):
            with pytest.raises(OTPInvalid):
                otp.verify_otp(phone, wrong)

        with pytest.raises(OTPAttemptsExhausted):
            otp.verify_otp(phone, code)

    def test_purposes_are_separate(self, otp):
        _handle, code = otp.issue_otp(PHONE, purpose=PURPOSE_PHONE_VERIFICATION)

        with pytest.raises(OTPInvalid):
            otp.verify_otp(PHONE, code, purpose=PURPOSE_LOGIN)

    def test_no_code_issued(self, otp):
        with pytest.raises(OTPInvalid):
            otp.verify_otp(PHONE, "123456")


class TestSendOTP:
    """Delivery through the notifier."""

    async def test_code_goes_to_notifier_not_caller(self, otp, notifier):
        handle = await otp.send_otp(PHONE)

        assert notifier.otps[-1]["phone"] == PHONE
        assert notifier.otps[-1]["purpose"] == PURPOSE_LOGIN
        assert not hasattr(handle, "code")
        assert otp.verify_otp(PHONE, notifier.last_otp()).id == handle.otp_id

    async def test_delivery_failure_is_unavailable(self, otp, notifier):
        notifier.fail = True

        with pytest.raises(AuthenticationUnavailable):
            await otp.send_otp(PHONE)

    async def test_slow_delivery_times_out(self, otp, notifier):
        notifier.delay_seconds = 2.0

        with pytest.raises(AuthenticationUnavailable):
            await otp.send_otp(PHONE)
