"""Login orchestration: credential checks, lockout, company selection and sessions."""

from datetime import timedelta

import pytest

from tradegate.service.auth import LoginRequest
from tradegate.service.errors import (
    AuthenticationError,
    LoginErrorCode,
    LoginFailedError,
    SessionExpiredError,
)
from tradegate.storage.models import LoginEventType, SessionSource, utcnow

DEFAULT_PASSWORD = "Sup3rSecret!"


async def _login(runtime, email="rep@acme.test", password=DEFAULT_PASSWORD, **kwargs):
    return await runtime.auth.login(LoginRequest(email=email, password=password, **kwargs))


async def _expect_failure(runtime, code, **kwargs):
    with pytest.raises(LoginFailedError) as excinfo:
        await _login(runtime, **kwargs)
    assert excinfo.value.code == code
    assert excinfo.value.status_code == 401
    return excinfo.value


async def test_login_success_creates_verified_session(runtime, company, make_user):
    user = make_user()

    result = await _login(runtime, email="REP@acme.test ")

    assert result.user.id == user.id
    assert result.company.id == company.id
    assert not result.requires_mfa
    assert result.session.mfa_verified
    assert result.session.active_company_id == company.id
    stored = runtime.store.get_user(user.id)
    assert stored.last_login_at is not None
    assert stored.failed_login_attempts == 0
    attempts = runtime.store.list_login_attempts(user.email)
    assert attempts[0].success


async def test_unknown_email_and_wrong_password_look_the_same(runtime, make_user):
    make_user()

    unknown = await _expect_failure(
        runtime, LoginErrorCode.INVALID_CREDENTIALS, email="nobody@acme.test"
    )
    wrong = await _expect_failure(
        runtime, LoginErrorCode.INVALID_CREDENTIALS, password="Wrong-pass1"
    )
    assert unknown.message == wrong.message


async def test_fifth_failure_locks_and_correct_password_is_refused(runtime, make_user):
    user = make_user()
    for _ in range(5):
        await _expect_failure(runtime, LoginErrorCode.INVALID_CREDENTIALS, password="Wrong-pass1")

    await _expect_failure(runtime, LoginErrorCode.ACCOUNT_LOCKED)
    # a locked account does not count further failures
    assert runtime.store.get_user(user.id).failed_login_attempts == 5


async def test_locked_account_can_log_in_after_lock_expires(runtime, make_user):
    user = make_user()
    runtime.store.set_user_fields(
        user.id, failed_login_attempts=5, locked_until=utcnow() - timedelta(seconds=1)
    )

    result = await _login(runtime)

    assert result.user.failed_login_attempts == 0
    assert result.user.locked_until is None


async def test_inactive_user_is_refused_after_lock_check(runtime, make_user):
    user = make_user()
    runtime.store.update_user(user.id, user.version, {"is_active": False})

    await _expect_failure(runtime, LoginErrorCode.ACCOUNT_INACTIVE)


async def test_needs_reset_password_reports_expired(runtime, make_user):
    user = make_user()
    runtime.store.set_user_fields(user.id, needs_reset_password=True)

    await _expect_failure(runtime, LoginErrorCode.PASSWORD_EXPIRED)


async def test_company_user_without_active_company_is_refused(runtime, company, make_user):
    make_user()
    runtime.store.update_company(company.id, company.version, {"is_active": False})

    await _expect_failure(runtime, LoginErrorCode.NO_ACTIVE_COMPANIES)


async def test_login_lands_in_most_recently_used_company(runtime, company, make_user):
    user = make_user()
    second = runtime.store.create_company("Second Co")
    runtime.store.add_membership(user.id, second.id, last_accessed_at=utcnow())

    result = await _login(runtime)

    assert result.company.id == second.id
    assert result.can_switch_companies
    assert {m.company_id for m in result.memberships} == {company.id, second.id}


async def test_mfa_company_requires_verification(runtime, company, make_user):
    make_user()
    runtime.store.update_company(company.id, company.version, {"mfa_required": True})

    result = await _login(runtime)

    assert result.requires_mfa
    assert not result.session.mfa_verified


async def test_trusted_device_skips_mfa(runtime, make_user):
    user = make_user()
    runtime.store.set_user_fields(user.id, mfa_enabled=True)
    token, device = runtime.devices.trust(user.id, user_agent="Mozilla/5.0 (Macintosh) Firefox/120.0")

    result = await _login(runtime, device_trust_token=token)

    assert not result.requires_mfa
    assert result.session.mfa_verified
    assert result.trusted_device_id == device.id

    other = await _login(runtime, device_trust_token="not-a-real-token", source=SessionSource.MOBILE)
    assert other.requires_mfa


async def test_one_session_per_source(runtime, make_user):
    user = make_user()

    first = await _login(runtime)
    second = await _login(runtime)
    mobile = await _login(runtime, source=SessionSource.MOBILE)

    sids = {s.sid for s in runtime.sessions.list_for_user(user.id)}
    assert first.session.sid not in sids
    assert sids == {second.session.sid, mobile.session.sid}


async def test_existing_sid_is_reused(runtime, make_user):
    make_user()
    first = await _login(runtime)

    again = await _login(runtime, sid=first.session.sid, remember_me=True)

    assert again.session.sid == first.session.sid
    assert again.session.created_at == first.session.created_at
    assert again.session.remember_me


async def test_another_users_sid_is_never_adopted(runtime, make_user):
    make_user()
    make_user("other@acme.test")
    theirs = await _login(runtime, email="other@acme.test")

    mine = await _login(runtime, sid=theirs.session.sid)

    assert mine.session.sid != theirs.session.sid
    assert runtime.store.get_session(theirs.session.sid).user_id == theirs.user.id


async def test_unknown_sid_is_replaced_with_a_fresh_one(runtime, make_user):
    make_user()

    result = await _login(runtime, sid="planted-sid")

    assert result.session.sid != "planted-sid"
    assert runtime.store.get_session("planted-sid") is None
    with pytest.raises(AuthenticationError):
        runtime.sessions.resolve("planted-sid")


async def test_touch_never_extends_past_absolute_expiry(runtime, make_user):
    make_user()
    session = (await _login(runtime)).session
    absolute = session.absolute_expires_at
    rolling, _ = runtime.settings.session_lifetimes(False)

    early = session.created_at + timedelta(minutes=10)
    runtime.sessions.touch(session, now=early)
    assert runtime.store.get_session(session.sid).expires_at == early + rolling

    late = absolute - timedelta(minutes=5)
    runtime.sessions.touch(session, now=late)
    stored = runtime.store.get_session(session.sid)
    assert stored.expires_at == absolute
    assert stored.last_activity_at == late


async def test_touch_keeps_a_later_mfa_verification(runtime, make_user):
    user = make_user()
    session = runtime.sessions.establish(user, mfa_verified=False)
    stale = runtime.store.get_session(session.sid)

    runtime.store.mark_session_verified(session.sid)
    runtime.sessions.touch(stale)

    assert runtime.store.get_session(session.sid).mfa_verified


async def test_sessions_older_than_force_logout_are_rejected(runtime, make_user):
    user = make_user()
    session = (await _login(runtime)).session
    runtime.store.set_user_fields(
        user.id, force_logout_at=session.created_at + timedelta(seconds=1)
    )

    with pytest.raises(SessionExpiredError):
        runtime.sessions.resolve(session.sid, now=session.created_at + timedelta(seconds=2))
    assert runtime.store.get_session(session.sid) is None


async def test_session_limit_evicts_oldest(runtime, make_user):
    user = make_user()
    runtime.store.update_user(user.id, user.version, {"max_sessions": 2})

    web = await _login(runtime, source=SessionSource.WEB)
    mobile = await _login(runtime, source=SessionSource.MOBILE)
    api = await _login(runtime, source=SessionSource.API)

    sids = [s.sid for s in runtime.sessions.list_for_user(user.id)]
    assert sids == [mobile.session.sid, api.session.sid]
    assert runtime.store.get_session(web.session.sid) is None
    revoked = [
        e
        for e in runtime.store.list_login_events(user_id=user.id)
        if e.event_type == LoginEventType.SESSION_REVOKED
    ]
    assert revoked[0].metadata["reason"] == "session_limit_exceeded"


async def test_logout_removes_session(runtime, make_user):
    user = make_user()
    result = await _login(runtime)

    await runtime.auth.logout(result.session, result.user)

    assert runtime.store.get_session(result.session.sid) is None
    assert runtime.sessions.list_for_user(user.id) == []


def test_unlock_user_missing(runtime):
    from tradegate.service.errors import NotFoundError

    with pytest.raises(NotFoundError):
        runtime.auth.unlock_user("missing")


def test_admin_create_user_generates_password(runtime, company):
    user, password = runtime.auth.admin_create_user(email="gen@acme.test", company_id=company.id)

    assert len(password) >= 16
    assert runtime.passwords.verify_password(user.id, password)
