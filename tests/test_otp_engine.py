"""Tests for the OTP challenge engine.

Tests for:
- Phone normalisation
- Issue / supersede / single consumption
- Attempt exhaustion and expiry
- Resend cooldown and resend cap
- Status and cancel
"""

import asyncio
from itertools import count

import pytest

from linkauth.service.errors import (
    ChallengeExpiredError,
    InvalidCodeError,
    NotFoundError,
    RateLimitedError,
    TooManyAttemptsError,
    ValidationError,
)
from linkauth.service.otp import normalize_phone

PHONE = "+15551234567"


@pytest.fixture
def sequential_codes(runtime):
    """Make generated codes predictable: 100001, 100002, ..."""
    counter = count(100001)
    runtime.otp._generate_code = lambda digits: str(next(counter))
    return runtime.otp


class TestNormalizePhone:
    def test_strips_formatting(self):
        """Spaces, dashes and parentheses are dropped."""
        assert normalize_phone("+1 (555) 123-4567") == PHONE

    def test_prepends_separate_country_code(self):
        """A country code given separately is prepended once."""
        assert normalize_phone("5551234567", "+1") == PHONE
        assert normalize_phone("15551234567", "1") == PHONE

    def test_rejects_garbage(self):
        """Non-numeric or too short numbers are a validation error."""
        with pytest.raises(ValidationError):
            normalize_phone("12ab")
        with pytest.raises(ValidationError):
            normalize_phone("   ")


class TestIssueAndValidate:
    async def test_issued_code_validates_once(self, sequential_codes):
        """A correct code succeeds and the challenge cannot be used twice."""
        engine = sequential_codes
        issued = await engine.issue(PHONE)
        assert issued.code == "100001"

        result = await engine.validate(PHONE, "100001")
        assert result.success
        assert result.is_new_user

        with pytest.raises(NotFoundError):
            await engine.validate(PHONE, "100001")

    async def test_concurrent_validates_consume_once(self, sequential_codes):
        """Two racing validates that both read the challenge succeed only once."""
        engine = sequential_codes
        await engine.issue(PHONE)
        get_challenge = engine.cache.get_challenge

        async def _read_then_yield(key):
            challenge = await get_challenge(key)
            await asyncio.sleep(0)
            return challenge

        engine.cache.get_challenge = _read_then_yield
        results = await asyncio.gather(
            engine.validate(PHONE, "100001", delete_on_success=True),
            engine.validate(PHONE, "100001", delete_on_success=True),
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1 and successes[0].success
        assert len(failures) == 1
        assert isinstance(failures[0], NotFoundError)

    async def test_new_issue_supersedes_previous_code(self, sequential_codes, clock):
        """Only the most recently issued code is accepted."""
        engine = sequential_codes
        await engine.issue(PHONE)
        clock.advance(seconds=61)
        await engine.issue(PHONE)

        with pytest.raises(InvalidCodeError):
            await engine.validate(PHONE, "100001")
        result = await engine.validate(PHONE, "100002")
        assert result.success

    async def test_validate_without_delete_keeps_challenge(self, sequential_codes):
        """A retained challenge can be presented again by the follow-up call."""
        engine = sequential_codes
        await engine.issue(PHONE)
        await engine.validate(PHONE, "100001", delete_on_success=False)
        result = await engine.validate(PHONE, "100001")
        assert result.success

    async def test_non_numeric_code_rejected(self, sequential_codes):
        await sequential_codes.issue(PHONE)
        with pytest.raises(ValidationError):
            await sequential_codes.validate(PHONE, "12ab56")

    async def test_code_not_returned_outside_test_mode(self, runtime):
        """The plaintext code only leaves the engine in test mode."""
        runtime.otp.settings = runtime.settings.model_copy(update={"test_mode": False})
        issued = await runtime.otp.issue(PHONE)
        assert issued.code is None
        assert "code" not in issued.to_dict()

    async def test_delivery_receives_plain_code(self, runtime):
        delivered = []
        runtime.otp.delivery = lambda phone, code: delivered.append((phone, code))
        issued = await runtime.otp.issue("+1 555 123 4567")
        assert delivered == [(PHONE, issued.code)]


class TestAttempts:
    async def test_attempts_count_down_then_exhaust(self, sequential_codes):
        """After max_attempts misses even the right code is refused."""
        engine = sequential_codes
        await engine.issue(PHONE)

        remaining = []
        for _ in range(3):
            with pytest.raises(InvalidCodeError) as exc_info:
                await engine.validate(PHONE, "999999")
            remaining.append(exc_info.value.detail["attempts_remaining"])
        assert remaining == [2, 1, 0]

        with pytest.raises(TooManyAttemptsError) as exc_info:
            await engine.validate(PHONE, "100001")
        assert exc_info.value.error_code == "TOO_MANY_ATTEMPTS"

        challenge = await engine.cache.get_challenge(PHONE)
        assert challenge.exhausted
        assert challenge.code_hash is None

    async def test_new_challenge_clears_exhaustion(self, sequential_codes, clock):
        engine = sequential_codes
        await engine.issue(PHONE)
        for _ in range(3):
            with pytest.raises(InvalidCodeError):
                await engine.validate(PHONE, "999999")
        clock.advance(seconds=61)
        await engine.issue(PHONE)
        result = await engine.validate(PHONE, "100002")
        assert result.success


class TestExpiry:
    async def test_expired_challenge_is_discarded(self, sequential_codes, clock):
        """Validation after expiry reports EXPIRED once and then not found."""
        engine = sequential_codes
        await engine.issue(PHONE)
        clock.advance(minutes=5)

        with pytest.raises(ChallengeExpiredError) as exc_info:
            await engine.validate(PHONE, "100001")
        assert exc_info.value.error_code == "EXPIRED"
        with pytest.raises(NotFoundError):
            await engine.validate(PHONE, "100001")

    async def test_expired_exhausted_challenge_is_discarded(self, sequential_codes, clock):
        engine = sequential_codes
        await engine.issue(PHONE)
        for _ in range(3):
            with pytest.raises(InvalidCodeError):
                await engine.validate(PHONE, "999999")
        clock.advance(minutes=6)
        with pytest.raises(ChallengeExpiredError):
            await engine.validate(PHONE, "100001")
        assert await engine.cache.get_challenge(PHONE) is None


class TestResend:
    async def test_resend_inside_cooldown_is_rate_limited(self, sequential_codes, clock):
        """A resend ten seconds in waits out the remaining fifty."""
        engine = sequential_codes
        await engine.issue(PHONE)
        clock.advance(seconds=10)

        with pytest.raises(RateLimitedError) as exc_info:
            await engine.resend(PHONE)
        assert exc_info.value.error_code == "RATE_LIMIT_EXCEEDED"
        assert exc_info.value.detail["retry_after_seconds"] == 50

        # The first code still works
        result = await engine.validate(PHONE, "100001")
        assert result.success

    async def test_resend_after_cooldown_replaces_code(self, sequential_codes, clock):
        engine = sequential_codes
        await engine.issue(PHONE)
        clock.advance(seconds=65)

        resent = await engine.resend(PHONE)
        assert resent.resend_count == 1
        with pytest.raises(InvalidCodeError):
            await engine.validate(PHONE, "100001")
        result = await engine.validate(PHONE, resent.code)
        assert result.success
        assert result.is_new_user

    async def test_resend_cap(self, sequential_codes, clock):
        """The fourth resend of one challenge is refused."""
        engine = sequential_codes
        await engine.issue(PHONE)
        for expected in (1, 2, 3):
            clock.advance(seconds=61)
            resent = await engine.resend(PHONE)
            assert resent.resend_count == expected
        clock.advance(seconds=61)
        with pytest.raises(RateLimitedError) as exc_info:
            await engine.resend(PHONE)
        assert exc_info.value.detail["max_resends"] == 3

    async def test_fresh_issue_after_expiry_resets_count(self, sequential_codes, clock):
        engine = sequential_codes
        await engine.issue(PHONE)
        clock.advance(seconds=61)
        await engine.resend(PHONE)
        clock.advance(minutes=10)
        issued = await engine.issue(PHONE)
        assert issued.resend_count == 0


class TestStatusAndCancel:
    async def test_status_reports_active_challenge(self, sequential_codes, clock):
        engine = sequential_codes
        empty = await engine.status(PHONE)
        assert empty["has_active_otp"] is False

        await engine.issue(PHONE)
        with pytest.raises(InvalidCodeError):
            await engine.validate(PHONE, "999999")
        status = await engine.status(PHONE)
        assert status["has_active_otp"] is True
        assert status["attempts_remaining"] == 2
        assert status["resend_available_at"] is not None

        clock.advance(seconds=61)
        status = await engine.status(PHONE)
        assert status["resend_available_at"] is None

    async def test_cancel_is_idempotent(self, sequential_codes):
        engine = sequential_codes
        await engine.issue(PHONE)
        assert await engine.cancel(PHONE) is True
        assert await engine.cancel(PHONE) is False
        with pytest.raises(NotFoundError):
            await engine.validate(PHONE, "100001")
