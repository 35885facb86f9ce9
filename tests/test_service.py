"""Tests for auth/service.py -- AuthService flows against a real SQLite database.

Covers:
- Registration, duplicate detection, seller profile and slug creation
- Login with indistinguishable failures for unknown email / wrong password / OAuth-only
- Password reset: issue, consume once, expiry, session revocation, atomic rollback
- OAuth callback: create, link by email, idempotent return, token refresh,
  email-less profiles never merged
- Concurrency: one winner per email, per reset token, and per provider account
- Pure helpers: email normalization, name split, slug, user response
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from threading import Barrier

import pytest
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateAccount, InvalidCredentials, InvalidOrExpiredToken, Unauthorized
from auth.models import Access, AccountKind, OAuthProfile, User
from auth.service import (
    build_user_response,
    normalize_email,
    seller_slug,
    split_display_name,
)
from auth.tokens import hash_reset_token

WORKERS = 5


def _profile(provider="google", account_id="g-1", email="bob@example.com", **kwargs) -> OAuthProfile:
    fields = dict(
        provider=provider,
        external_account_id=account_id,
        email=email,
        first_name="Bob",
        last_name="Builder",
        access_token="at-1",
    )
    fields.update(kwargs)
    return OAuthProfile(**fields)


def _register_alice(service, ctx, kind=AccountKind.buyer):
    return service.register("alice@example.com", "secret1", "Alice Buyer", kind, ctx)


def _race(fn, n=WORKERS):
    """Run fn() on n threads released together; return (results, errors)."""
    barrier = Barrier(n)

    def run():
        barrier.wait()
        try:
            return fn(), None
        except Exception as exc:  # noqa: BLE001 -- collected for assertions
            return None, exc

    with ThreadPoolExecutor(max_workers=n) as pool:
        outcomes = list(pool.map(lambda _: run(), range(n)))
    return [r for r, _ in outcomes if r is not None], [e for _, e in outcomes if e is not None]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_then_duplicate(self, service, gate, ctx):
        result = _register_alice(service, ctx)
        assert result.user == {"email": "alice@example.com", "name": "Alice Buyer", "userType": "buyer"}
        assert gate.authorize(result.session_id, Access.protected).id == result.user_id

        with pytest.raises(DuplicateAccount):
            _register_alice(service, ctx)

    def test_email_is_normalized(self, service, users, ctx):
        service.register("  Alice@Example.COM ", "secret1", "Alice Buyer", AccountKind.buyer, ctx)
        assert users.get_by_email("alice@example.com") is not None
        with pytest.raises(DuplicateAccount):
            service.register("alice@example.com", "secret1", "Alice", AccountKind.buyer, ctx)

    def test_password_is_stored_hashed(self, service, users, hasher, ctx):
        result = _register_alice(service, ctx)
        stored = users.get_by_id(result.user_id).hashed_password
        assert stored != "secret1"
        assert hasher.verify("secret1", stored)

    def test_name_is_split(self, service, users, ctx):
        result = service.register("c@example.com", "secret1", "Carol Ann Smith", AccountKind.buyer, ctx)
        user = users.get_by_id(result.user_id)
        assert (user.first_name, user.last_name) == ("Carol", "Ann Smith")

    def test_seller_gets_store(self, service, users, ctx):
        result = service.register("s@example.com", "secret1", "Sam's Shop!", AccountKind.seller, ctx)
        assert result.user["userType"] == "seller"
        profile = users.get_seller_profile(result.user_id)
        assert profile.store_name == "Sam's Shop!'s Store"
        assert profile.store_slug == f"sam-s-shop-{result.user_id[-8:]}"

    def test_buyer_gets_no_store(self, service, users, ctx):
        result = _register_alice(service, ctx)
        assert users.get_seller_profile(result.user_id) is None

    def test_sellers_with_same_name_get_distinct_slugs(self, service, users, ctx):
        a = service.register("a@example.com", "secret1", "Same Name", AccountKind.seller, ctx)
        b = service.register("b@example.com", "secret1", "Same Name", AccountKind.seller, ctx)
        assert users.get_seller_profile(a.user_id).store_slug != users.get_seller_profile(b.user_id).store_slug

    def test_blank_display_name_is_rejected(self, service, users, ctx):
        with pytest.raises(ValueError):
            service.register("s@example.com", "secret1", "   ", AccountKind.seller, ctx)
        assert users.get_by_email("s@example.com") is None

    def test_store_slug_clash_is_not_a_duplicate_account(self, service, users, ctx, monkeypatch):
        monkeypatch.setattr("auth.service.seller_slug", lambda name, user_id: "fixed-slug")
        service.register("a@example.com", "secret1", "Shop", AccountKind.seller, ctx)
        with pytest.raises(IntegrityError):
            service.register("b@example.com", "secret1", "Shop", AccountKind.seller, ctx)
        assert users.get_by_email("b@example.com") is None

    def test_concurrent_registrations_have_one_winner(self, service, ctx):
        results, errors = _race(lambda: _register_alice(service, ctx))
        assert len(results) == 1
        assert len(errors) == WORKERS - 1
        assert all(isinstance(e, DuplicateAccount) for e in errors)


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_opens_new_session(self, service, ctx):
        registered = _register_alice(service, ctx)
        result = service.login("alice@example.com", "secret1", ctx)
        assert result.user_id == registered.user_id
        assert result.session_id != registered.session_id

    def test_login_is_case_insensitive_on_email(self, service, ctx):
        _register_alice(service, ctx)
        assert service.login("ALICE@example.com", "secret1", ctx).user["email"] == "alice@example.com"

    def test_wrong_password_repeatedly(self, service, ctx):
        _register_alice(service, ctx)
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                service.login("alice@example.com", "wrong-pass", ctx)
        assert service.login("alice@example.com", "secret1", ctx).session_id

    def test_unknown_email_and_wrong_password_are_indistinguishable(self, service, ctx):
        _register_alice(service, ctx)
        with pytest.raises(InvalidCredentials) as unknown:
            service.login("nobody@example.com", "secret1", ctx)
        with pytest.raises(InvalidCredentials) as wrong:
            service.login("alice@example.com", "wrong-pass", ctx)
        assert (unknown.value.code, unknown.value.message) == (wrong.value.code, wrong.value.message)

    def test_unknown_email_still_runs_a_hash_check(self, service, ctx, monkeypatch):
        calls = []
        monkeypatch.setattr(service.hasher, "dummy_verify", lambda pw: calls.append(pw))
        with pytest.raises(InvalidCredentials):
            service.login("nobody@example.com", "secret1", ctx)
        assert calls == ["secret1"]

    def test_oauth_only_account_cannot_password_login(self, service, ctx):
        service.handle_oauth_callback(_profile(), ctx)
        with pytest.raises(InvalidCredentials):
            service.login("bob@example.com", "", ctx)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_session_records_device_and_expiry(self, service, sessions, clock, ctx):
        result = _register_alice(service, ctx)
        session = sessions.get(result.session_id)
        assert session.device_name == "Chrome Browser"
        assert session.ip_address == "203.0.113.7"
        assert session.expires_at == clock.now + timedelta(days=7)

    def test_logout_is_idempotent(self, service, gate, ctx):
        result = _register_alice(service, ctx)
        service.logout(result.session_id)
        service.logout(result.session_id)
        service.logout(None)
        with pytest.raises(Unauthorized):
            gate.authorize(result.session_id, Access.protected)

    def test_purge_expired(self, service, clock, ctx):
        _register_alice(service, ctx)
        raw = service.forgot_password("alice@example.com")
        assert raw
        assert service.purge_expired() == (0, 0)
        clock.advance(days=8)
        assert service.purge_expired() == (1, 1)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_reset_flow(self, service, gate, reset_tokens, clock, ctx, secret_key):
        registered = _register_alice(service, ctx)

        raw = service.forgot_password("alice@example.com")
        record = reset_tokens.get_by_hash(hash_reset_token(raw, secret_key))
        assert record.expires_at == clock.now + timedelta(hours=1)

        service.reset_password(raw, "newpass1")
        with pytest.raises(InvalidOrExpiredToken):
            service.reset_password(raw, "again")

        with pytest.raises(Unauthorized):
            gate.authorize(registered.session_id, Access.protected)
        with pytest.raises(InvalidCredentials):
            service.login("alice@example.com", "secret1", ctx)
        assert service.login("alice@example.com", "newpass1", ctx).user_id == registered.user_id

    def test_unknown_email_issues_nothing(self, service):
        assert service.forgot_password("nobody@example.com") is None

    def test_raw_token_is_not_stored(self, service, reset_tokens, ctx):
        _register_alice(service, ctx)
        raw = service.forgot_password("alice@example.com")
        assert reset_tokens.get_by_hash(raw) is None

    def test_unknown_token(self, service):
        with pytest.raises(InvalidOrExpiredToken):
            service.reset_password("not-a-token", "newpass1")

    def test_expired_token(self, service, clock, ctx):
        _register_alice(service, ctx)
        raw = service.forgot_password("alice@example.com")
        clock.advance(hours=1)
        with pytest.raises(InvalidOrExpiredToken):
            service.reset_password(raw, "newpass1")

    def test_token_just_before_expiry(self, service, clock, ctx):
        _register_alice(service, ctx)
        raw = service.forgot_password("alice@example.com")
        clock.advance(minutes=59)
        service.reset_password(raw, "newpass1")

    def test_each_token_is_independent(self, service, ctx):
        _register_alice(service, ctx)
        first = service.forgot_password("alice@example.com")
        second = service.forgot_password("alice@example.com")
        service.reset_password(first, "newpass1")
        service.reset_password(second, "newpass2")
        assert service.login("alice@example.com", "newpass2", ctx)

    def test_oauth_only_user_can_set_password(self, service, ctx):
        service.handle_oauth_callback(_profile(), ctx)
        raw = service.forgot_password("bob@example.com")
        service.reset_password(raw, "newpass1")
        assert service.login("bob@example.com", "newpass1", ctx).user["email"] == "bob@example.com"

    def test_failure_rolls_back_every_write(self, service, gate, reset_tokens, ctx, secret_key, monkeypatch):
        registered = _register_alice(service, ctx)
        raw = service.forgot_password("alice@example.com")

        def boom(*args, **kwargs):
            raise RuntimeError("store outage")

        monkeypatch.setattr(service.sessions, "delete_for_user", boom)
        with pytest.raises(RuntimeError):
            service.reset_password(raw, "newpass1")
        monkeypatch.undo()

        assert reset_tokens.get_by_hash(hash_reset_token(raw, secret_key)).used is False
        assert gate.authorize(registered.session_id, Access.protected).id == registered.user_id
        assert service.login("alice@example.com", "secret1", ctx)
        service.reset_password(raw, "newpass1")

    def test_concurrent_resets_have_one_winner(self, service, ctx):
        _register_alice(service, ctx)
        raw = service.forgot_password("alice@example.com")
        results, errors = _race(lambda: service.reset_password(raw, "newpass1") or "ok")
        assert results == ["ok"]
        assert len(errors) == WORKERS - 1
        assert all(isinstance(e, InvalidOrExpiredToken) for e in errors)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class TestOAuthCallback:
    def test_two_providers_one_user(self, service, identities, ctx):
        first = service.handle_oauth_callback(_profile(), ctx)
        second = service.handle_oauth_callback(_profile(provider="github", account_id="h-9"), ctx)
        assert first.user_id == second.user_id
        assert first.user == {"email": "bob@example.com", "name": "Bob Builder", "userType": "buyer"}
        assert {i.provider for i in identities.list_for_user(first.user_id)} == {"google", "github"}

    def test_oauth_user_has_no_password(self, service, users, ctx):
        result = service.handle_oauth_callback(_profile(avatar="https://img/bob.png"), ctx)
        user = users.get_by_id(result.user_id)
        assert user.hashed_password is None
        assert user.account_kind is AccountKind.buyer
        assert user.avatar == "https://img/bob.png"

    def test_links_to_existing_password_account(self, service, identities, ctx):
        registered = _register_alice(service, ctx)
        result = service.handle_oauth_callback(_profile(email="Alice@Example.com"), ctx)
        assert result.user_id == registered.user_id
        assert len(identities.list_for_user(registered.user_id)) == 1
        assert service.login("alice@example.com", "secret1", ctx)

    def test_returning_identity_is_idempotent(self, service, identities, ctx):
        first = service.handle_oauth_callback(_profile(), ctx)
        again = service.handle_oauth_callback(_profile(), ctx)
        assert again.user_id == first.user_id
        assert again.session_id != first.session_id
        assert len(identities.list_for_user(first.user_id)) == 1

    def test_returning_identity_refreshes_tokens(self, service, identities, ctx):
        service.handle_oauth_callback(_profile(refresh_token="rt-1"), ctx)
        service.handle_oauth_callback(_profile(access_token="at-2", refresh_token="rt-2"), ctx)
        identity, _ = identities.find_by_provider("google", "g-1")
        assert (identity.access_token, identity.refresh_token) == ("at-2", "rt-2")

    def test_missing_first_name_defaults(self, service, users, ctx):
        result = service.handle_oauth_callback(_profile(first_name="", last_name=""), ctx)
        user = users.get_by_id(result.user_id)
        assert user.first_name == "User"
        assert result.user["name"] == "User"

    def test_emailless_profiles_are_never_merged(self, service, users, ctx):
        a = service.handle_oauth_callback(_profile(account_id="g-1", email=""), ctx)
        b = service.handle_oauth_callback(_profile(account_id="g-2", email=""), ctx)
        assert a.user_id != b.user_id
        assert users.get_by_id(a.user_id).email is None
        assert a.user["email"] == ""

    def test_concurrent_first_logins_share_one_account(self, service, identities, ctx):
        results, errors = _race(lambda: service.handle_oauth_callback(_profile(), ctx))
        assert errors == []
        assert len({r.user_id for r in results}) == 1
        assert len(identities.list_for_user(results[0].user_id)) == 1


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [(" Alice@Example.COM ", "alice@example.com"), ("", ""), (None, "")],
)
def test_normalize_email(raw, expected):
    assert normalize_email(raw) == expected


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Alice Buyer", ("Alice", "Buyer")),
        ("  Carol   Ann  Smith ", ("Carol", "Ann Smith")),
        ("Mononym", ("Mononym", "")),
        ("   ", ("", "")),
    ],
)
def test_split_display_name(name, expected):
    assert split_display_name(name) == expected


def test_seller_slug_truncates_and_suffixes():
    slug = seller_slug("A" * 50, "0123456789abcdef")
    assert slug == "a" * 30 + "-89abcdef"


def test_seller_slug_without_usable_characters():
    assert seller_slug("!!!", "0123456789abcdef") == "89abcdef"


def test_build_user_response_for_seller_without_email():
    user = User(email=None, first_name="Sam", last_name="", account_kind=AccountKind.seller)
    assert build_user_response(user) == {"email": "", "name": "Sam", "userType": "seller"}
