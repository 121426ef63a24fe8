"""
tests/test_service.py -- Unit tests for Authenticator (auth/service.py).

Runs the authentication core against a real AuthStore on shared-memory SQLite
with a FakeClock, so expiry is tested by moving time rather than sleeping.

Covers:
  - authenticate_user: success, wrong password, unknown email; both failures
    take the bcrypt path
  - sessions: start -> resume restores the user; unknown tokens restore
    nothing; terminate is final and idempotent
  - reset: second request invalidates the first, single use, expiry, split and
    rejoin round trip, unknown email creates nothing
  - password validation reasons; invalid input never burns the link
  - insert collisions are retried with fresh values
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError

from auth.errors import TOKEN_INVALID_MESSAGE, PasswordValidationError, TokenInvalid
from auth.models import Current
from auth.service import Authenticator
from auth.store import AuthStore, _reset_tokens
from auth.tokens import combine_reset_token, split_reset_token
from core.config import get_settings

EMAIL = "u1@example.com"
PASSWORD = "password123"


class TestAuthenticateUser:
    def test_correct_credentials_return_user(self, authenticator: Authenticator, make_user) -> None:
        user = make_user(EMAIL, PASSWORD)
        found = authenticator.authenticate_user(EMAIL, PASSWORD)
        assert found is not None
        assert found.id == user.id

    def test_email_lookup_is_case_insensitive(self, authenticator: Authenticator, make_user) -> None:
        make_user(EMAIL, PASSWORD)
        assert authenticator.authenticate_user("U1@Example.com", PASSWORD) is not None

    def test_wrong_password_returns_none(self, authenticator: Authenticator, make_user) -> None:
        make_user(EMAIL, PASSWORD)
        assert authenticator.authenticate_user(EMAIL, "wrongpass1") is None

    def test_unknown_email_returns_none(self, authenticator: Authenticator) -> None:
        assert authenticator.authenticate_user("nobody@example.com", PASSWORD) is None

    def test_both_failures_run_bcrypt_once(self, authenticator: Authenticator, make_user) -> None:
        """Unknown email and wrong password must both pay one bcrypt check."""
        make_user(EMAIL, PASSWORD)
        with patch("auth.tokens.bcrypt.checkpw", return_value=False) as checkpw:
            authenticator.authenticate_user("nobody@example.com", PASSWORD)
            unknown_calls = checkpw.call_count
            authenticator.authenticate_user(EMAIL, "wrongpass1")
            wrong_calls = checkpw.call_count - unknown_calls
        assert unknown_calls == wrong_calls == 1


class TestSessions:
    def test_start_then_resume_restores_user(self, authenticator: Authenticator, make_user) -> None:
        user = make_user()
        current = Current()
        session = authenticator.start_session(current, user, "10.0.0.1", "pytest-agent")

        assert current.authenticated
        assert current.user.id == user.id
        assert len(session.token) >= 43

        resumed = authenticator.resume_session(session.token)
        assert resumed.authenticated
        assert resumed.user.id == user.id
        assert resumed.session.id == session.id
        assert resumed.session.ip_address == "10.0.0.1"

    @pytest.mark.parametrize("token", [None, "", "unknown-token"])
    def test_unknown_token_restores_nothing(self, authenticator: Authenticator, make_user, token) -> None:
        authenticator.start_session(Current(), make_user())
        resumed = authenticator.resume_session(token)
        assert not resumed.authenticated
        assert resumed.user is None

    def test_each_login_gets_its_own_token(self, authenticator: Authenticator, make_user) -> None:
        user = make_user()
        first = authenticator.start_session(Current(), user)
        second = authenticator.start_session(Current(), user)
        assert first.token != second.token
        assert authenticator.resume_session(first.token).authenticated
        assert authenticator.resume_session(second.token).authenticated

    def test_terminate_is_final(self, authenticator: Authenticator, make_user) -> None:
        current = Current()
        session = authenticator.start_session(current, make_user())

        assert authenticator.terminate_session(current) is True
        assert not current.authenticated
        assert not authenticator.resume_session(session.token).authenticated

    def test_terminate_twice_is_safe(self, authenticator: Authenticator, make_user) -> None:
        current = Current()
        authenticator.start_session(current, make_user())
        authenticator.terminate_session(current)
        assert authenticator.terminate_session(current) is False
        assert authenticator.terminate_session(Current()) is False

    def test_user_agent_is_truncated(self, authenticator: Authenticator, make_user) -> None:
        session = authenticator.start_session(Current(), make_user(), None, "x" * 5000)
        assert len(authenticator.resume_session(session.token).session.user_agent) == 512

    def test_forwarded_ip_is_truncated(self, authenticator: Authenticator, make_user) -> None:
        session = authenticator.start_session(Current(), make_user(), "203.0.113.5," * 100, "curl/8")
        assert len(authenticator.resume_session(session.token).session.ip_address) == 64

    def test_token_collision_is_retried(self, authenticator: Authenticator, make_user) -> None:
        user = make_user()
        existing = authenticator.start_session(Current(), user)
        with patch("auth.service.generate_session_token", side_effect=[existing.token, "fresh-token"]):
            session = authenticator.start_session(Current(), user)
        assert session.token == "fresh-token"

    def test_collisions_give_up_after_three_attempts(self, authenticator: Authenticator, make_user) -> None:
        user = make_user()
        existing = authenticator.start_session(Current(), user)
        with patch("auth.service.generate_session_token", return_value=existing.token):
            with pytest.raises(IntegrityError):
                authenticator.start_session(Current(), user)


class TestRequestPasswordReset:
    def test_issues_one_token(self, authenticator: Authenticator, store: AuthStore, make_user) -> None:
        user = make_user()
        issued = authenticator.request_password_reset(EMAIL)

        assert issued is not None
        assert issued.user.id == user.id
        assert store.count_reset_tokens(user.id) == 1
        selector, verifier = split_reset_token(issued.token)
        stored = store.get_reset_token_by_selector(selector)
        # Only the verifier's hash is persisted.
        assert stored.verifier_hash != verifier
        assert verifier not in stored.verifier_hash

    def test_expiry_from_settings(self, authenticator: Authenticator, clock, make_user) -> None:
        make_user()
        issued = authenticator.request_password_reset(EMAIL)
        assert (issued.expires_at - clock.now).total_seconds() == authenticator.settings.reset_token_expiry

    def test_unknown_email_creates_nothing(self, authenticator: Authenticator, store: AuthStore) -> None:
        assert authenticator.request_password_reset("nobody@example.com") is None
        assert store.count_reset_tokens() == 0

    def test_unknown_email_still_runs_bcrypt(self, authenticator: Authenticator) -> None:
        with patch("auth.tokens.bcrypt.checkpw", return_value=False) as checkpw:
            authenticator.request_password_reset("nobody@example.com")
        assert checkpw.call_count == 1

    def test_second_request_invalidates_first(self, authenticator: Authenticator, store: AuthStore, make_user) -> None:
        user = make_user()
        first = authenticator.request_password_reset(EMAIL)
        second = authenticator.request_password_reset(EMAIL)

        assert store.count_reset_tokens(user.id) == 1
        with pytest.raises(TokenInvalid):
            authenticator.verify_reset_token(first.token)
        assert authenticator.verify_reset_token(second.token).user_id == user.id

    def test_selector_collision_is_retried(self, authenticator: Authenticator, store: AuthStore, make_user) -> None:
        make_user("other@example.com")
        taken = authenticator.request_password_reset("other@example.com")
        taken_selector, _ = split_reset_token(taken.token)
        user = make_user()

        with patch("auth.service.generate_selector", side_effect=[taken_selector, "fresh-selector"]):
            issued = authenticator.request_password_reset(EMAIL)

        assert split_reset_token(issued.token)[0] == "fresh-selector"
        assert store.count_reset_tokens(user.id) == 1


class TestVerifyResetToken:
    def test_round_trip_split_and_rejoin(self, authenticator: Authenticator, make_user) -> None:
        user = make_user()
        issued = authenticator.request_password_reset(EMAIL)
        rejoined = combine_reset_token(*split_reset_token(issued.token))
        assert authenticator.verify_reset_token(rejoined).user_id == user.id

    def test_verify_does_not_consume(self, authenticator: Authenticator, make_user) -> None:
        make_user()
        issued = authenticator.request_password_reset(EMAIL)
        authenticator.verify_reset_token(issued.token)
        authenticator.verify_reset_token(issued.token)

    @pytest.mark.parametrize("combined", [None, "", "no-separator", ":abc", "abc:", "unknown:selector"])
    def test_malformed_or_unknown(self, authenticator: Authenticator, combined) -> None:
        with pytest.raises(TokenInvalid) as exc:
            authenticator.verify_reset_token(combined)
        assert exc.value.message == TOKEN_INVALID_MESSAGE

    def test_wrong_verifier(self, authenticator: Authenticator, make_user) -> None:
        make_user()
        selector, _ = split_reset_token(authenticator.request_password_reset(EMAIL).token)
        with pytest.raises(TokenInvalid) as exc:
            authenticator.verify_reset_token(combine_reset_token(selector, "tampered"))
        assert exc.value.message == TOKEN_INVALID_MESSAGE

    def test_expired_token_fails_with_correct_verifier(self, authenticator: Authenticator, clock, make_user) -> None:
        make_user()
        issued = authenticator.request_password_reset(EMAIL)
        clock.advance(authenticator.settings.reset_token_expiry + 1)
        with pytest.raises(TokenInvalid) as exc:
            authenticator.verify_reset_token(issued.token)
        assert exc.value.message == TOKEN_INVALID_MESSAGE

    def test_token_valid_until_expiry(self, authenticator: Authenticator, clock, make_user) -> None:
        make_user()
        issued = authenticator.request_password_reset(EMAIL)
        clock.advance(authenticator.settings.reset_token_expiry - 1)
        authenticator.verify_reset_token(issued.token)


class TestCompletePasswordReset:
    def test_scenario_reset_changes_password(self, authenticator: Authenticator, store: AuthStore, make_user) -> None:
        user = make_user(EMAIL, PASSWORD)
        issued = authenticator.request_password_reset(EMAIL)
        assert store.count_reset_tokens(user.id) == 1

        updated = authenticator.complete_password_reset(issued.token, "newpass123", "newpass123")

        assert updated.id == user.id
        assert authenticator.authenticate_user(EMAIL, "newpass123") is not None
        assert authenticator.authenticate_user(EMAIL, PASSWORD) is None
        assert store.count_reset_tokens(user.id) == 0

    def test_single_use(self, authenticator: Authenticator, make_user) -> None:
        make_user()
        issued = authenticator.request_password_reset(EMAIL)
        authenticator.complete_password_reset(issued.token, "newpass123", "newpass123")

        with pytest.raises(TokenInvalid):
            authenticator.verify_reset_token(issued.token)
        with pytest.raises(TokenInvalid):
            authenticator.complete_password_reset(issued.token, "another123", "another123")
        assert authenticator.authenticate_user(EMAIL, "newpass123") is not None

    def test_expired_link_cannot_complete(self, authenticator: Authenticator, clock, make_user) -> None:
        make_user(EMAIL, PASSWORD)
        issued = authenticator.request_password_reset(EMAIL)
        clock.advance(authenticator.settings.reset_token_expiry + 1)
        with pytest.raises(TokenInvalid):
            authenticator.complete_password_reset(issued.token, "newpass123", "newpass123")
        assert authenticator.authenticate_user(EMAIL, PASSWORD) is not None

    @pytest.mark.parametrize(
        "password,confirmation,reason",
        [
            ("newpass123", "newpass124", "Passwords do not match"),
            ("short", "short", "Password must be at least 8 characters"),
            ("x" * 73, "x" * 73, "Password must be at most 72 bytes"),
            ("é" * 40, "é" * 40, "Password must be at most 72 bytes"),
        ],
    )
    def test_validation_failure_keeps_link(
        self, authenticator: Authenticator, store: AuthStore, make_user, password, confirmation, reason
    ) -> None:
        user = make_user()
        issued = authenticator.request_password_reset(EMAIL)
        with pytest.raises(PasswordValidationError) as exc:
            authenticator.complete_password_reset(issued.token, password, confirmation)
        assert exc.value.message == reason
        assert store.count_reset_tokens(user.id) == 1
        authenticator.complete_password_reset(issued.token, "newpass123", "newpass123")

    def test_bad_link_wins_over_bad_password(self, authenticator: Authenticator) -> None:
        with pytest.raises(TokenInvalid):
            authenticator.complete_password_reset("bad:link", "x", "y")

    def test_concurrent_completion_loses(self, authenticator: Authenticator, store: AuthStore, make_user) -> None:
        """If the token disappears between verify and consume, nothing is written."""
        user = make_user(EMAIL, PASSWORD)
        issued = authenticator.request_password_reset(EMAIL)
        selector, _ = split_reset_token(issued.token)
        real_consume = store.consume_reset_token

        def consume_after_rival(*args, **kwargs):
            with store.engine.connect() as conn:
                conn.execute(_reset_tokens.delete().where(_reset_tokens.c.selector == selector))
                conn.commit()
            return real_consume(*args, **kwargs)

        with patch.object(store, "consume_reset_token", side_effect=consume_after_rival):
            with pytest.raises(TokenInvalid):
                authenticator.complete_password_reset(issued.token, "newpass123", "newpass123")
        assert store.get_by_id(user.id).password_digest == user.password_digest

    def test_sessions_survive_reset(self, authenticator: Authenticator, make_user) -> None:
        user = make_user()
        session = authenticator.start_session(Current(), user)
        issued = authenticator.request_password_reset(EMAIL)
        authenticator.complete_password_reset(issued.token, "newpass123", "newpass123")
        assert authenticator.resume_session(session.token).authenticated


class TestAuthenticatorSettings:
    def test_uses_injected_settings(self, store: AuthStore) -> None:
        settings = get_settings().model_copy(update={"reset_token_expiry": 60})
        assert Authenticator(store, settings).settings.reset_token_expiry == 60

    def test_hashes_use_injected_cost(self, store: AuthStore, make_user) -> None:
        settings = get_settings().model_copy(update={"bcrypt_rounds": 5})
        auth = Authenticator(store, settings)
        make_user(EMAIL, PASSWORD)

        issued = auth.request_password_reset(EMAIL)
        selector, _ = split_reset_token(issued.token)
        assert store.get_reset_token_by_selector(selector).verifier_hash.startswith("$2b$05$")

        user = auth.complete_password_reset(issued.token, "newpass123", "newpass123")
        assert user.password_digest.startswith("$2b$05$")

    def test_unknown_email_burns_at_injected_cost(self, store: AuthStore) -> None:
        settings = get_settings().model_copy(update={"bcrypt_rounds": 5})
        auth = Authenticator(store, settings)
        with patch("auth.tokens.bcrypt.checkpw", return_value=False) as checkpw:
            assert auth.authenticate_user("nobody@example.com", PASSWORD) is None
        assert checkpw.call_args.args[1].startswith(b"$2b$05$")
