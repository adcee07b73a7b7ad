"""Tests for demo identity synthesis and demo credential helpers."""

import pytest

from maak.service.demo import (
    SESSION_WINDOW_HOURS,
    TOKEN_WINDOW_HOURS,
    build_demo_user,
    demo_token_age_hours,
    is_restorable_demo_token,
    new_demo_token,
    new_demo_user_id,
    parse_demo_timestamp,
    synthesize_demo_user,
)
from maak.service.errors import CredentialFailure
from maak.service.verification import VerificationResult

HOUR_MS = 3_600_000
NOW_MS = 1_760_000_000_000


class TestParseDemoTimestamp:
    def test_valid_user_id(self):
        assert parse_demo_timestamp("demo-user-12345", "demo-user-") == 12345

    @pytest.mark.parametrize(
        "value",
        [None, "", "demo-user-", "demo-user-abc", "demo-user-12a", "demo-user--5", "demo-user-0", "user-123"],
    )
    def test_rejects_unusable_values(self, value):
        assert parse_demo_timestamp(value, "demo-user-") is None


class TestSynthesizeDemoUser:
    def test_fresh_id_produces_deterministic_user(self):
        ts = NOW_MS - 1000
        result = synthesize_demo_user(
            f"demo-user-{ts}", window_hours=SESSION_WINDOW_HOURS, current_ms=NOW_MS
        )
        assert result.ok
        user = result.user
        assert user.id == f"demo-user-{ts}"
        assert user.email == f"demo{ts}@maak.se"
        assert user.phone == "+46701234567"
        assert user.audience == "authenticated"
        assert user.app_metadata == {"demo": True}
        assert user.user_metadata == {"firstName": "Demo", "lastName": "Användare", "demo": True}
        assert user.created_at.endswith("Z")

    def test_same_id_yields_same_user(self):
        user_id = f"demo-user-{NOW_MS - 5 * HOUR_MS}"
        first = synthesize_demo_user(user_id, window_hours=48, current_ms=NOW_MS)
        second = synthesize_demo_user(user_id, window_hours=48, current_ms=NOW_MS + 1000)
        assert first.user == second.user

    def test_custom_email_domain_and_token_free_tags(self):
        ts = NOW_MS - HOUR_MS
        result = synthesize_demo_user(
            f"demo-user-{ts}",
            window_hours=48,
            current_ms=NOW_MS,
            email_domain="example.org",
            auth_type="token-free",
            token_free=True,
        )
        assert result.user.email == f"demo{ts}@example.org"
        assert result.user.app_metadata == {"demo": True, "tokenFree": True}
        assert result.user.user_metadata["authType"] == "token-free"

    def test_wrong_prefix_is_malformed(self):
        result = synthesize_demo_user("user-123", window_hours=48, current_ms=NOW_MS)
        assert not result.ok
        assert result.kind == CredentialFailure.MALFORMED_CREDENTIAL
        assert result.error == "invalid demo id"

    def test_non_numeric_timestamp_is_malformed(self):
        result = synthesize_demo_user("demo-user-soon", window_hours=48, current_ms=NOW_MS)
        assert result.kind == CredentialFailure.MALFORMED_CREDENTIAL
        assert result.error == "invalid demo timestamp"

    def test_age_exactly_at_window_is_accepted(self):
        ts = NOW_MS - 48 * HOUR_MS
        result = synthesize_demo_user(f"demo-user-{ts}", window_hours=48, current_ms=NOW_MS)
        assert result.ok

    def test_age_past_window_is_expired(self):
        ts = NOW_MS - 48 * HOUR_MS - 1
        result = synthesize_demo_user(f"demo-user-{ts}", window_hours=48, current_ms=NOW_MS)
        assert not result.ok
        assert result.kind == CredentialFailure.EXPIRED_CREDENTIAL

    def test_future_timestamp_is_accepted(self):
        ts = NOW_MS + 2 * HOUR_MS
        result = synthesize_demo_user(f"demo-user-{ts}", window_hours=48, current_ms=NOW_MS)
        assert result.ok

    def test_unrepresentable_timestamp_is_malformed(self):
        result = synthesize_demo_user(
            "demo-user-99999999999999999999999", window_hours=48, current_ms=NOW_MS
        )
        assert result.kind == CredentialFailure.MALFORMED_CREDENTIAL

    def test_windows_differ_for_tokens_and_sessions(self):
        assert SESSION_WINDOW_HOURS == 48
        assert TOKEN_WINDOW_HOURS == 24


class TestVerificationResult:
    def test_requires_exactly_one_outcome(self):
        with pytest.raises(ValueError):
            VerificationResult()
        user = build_demo_user(NOW_MS)
        with pytest.raises(ValueError):
            VerificationResult(error="nope", user=user)

    def test_success_cannot_carry_kind(self):
        with pytest.raises(ValueError):
            VerificationResult(user=build_demo_user(NOW_MS), kind=CredentialFailure.UNKNOWN_USER)


class TestDemoTokens:
    def test_generated_ids_embed_timestamp(self):
        assert new_demo_user_id(42) == "demo-user-42"
        assert new_demo_token(42) == "demo-token-42"

    def test_token_age(self):
        token = new_demo_token(NOW_MS - 10 * HOUR_MS)
        assert demo_token_age_hours(token, NOW_MS) == pytest.approx(10)
        assert demo_token_age_hours("provider-token", NOW_MS) is None

    @pytest.mark.parametrize(
        ("age_hours", "restorable"),
        [(-2, False), (-0.5, True), (0, True), (10, True), (24.9, True), (25, False), (26, False)],
    )
    def test_client_restore_window(self, age_hours, restorable):
        token = new_demo_token(int(NOW_MS - age_hours * HOUR_MS))
        assert is_restorable_demo_token(token, NOW_MS) is restorable
