from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradegate.service.auth import LoginRequest
from tradegate.service.errors import (
    AuthenticationError,
    BadRequestError,
    MfaRequiredError,
    ServerError,
)
from tradegate.service.mfa import (
    RECOVERY_CODE_ALPHABET,
    MemoryPendingMfaStore,
    RedisPendingMfaStore,
    generate_recovery_code,
    normalize_recovery_code,
)
from tradegate.storage.models import LoginEventType, utcnow
from tradegate.storage.redis_cache import RedisCache, SyncRedisCache

PASSWORD = "Sup3rSecret!"


async def _pending_session(runtime, company, make_user):
    user = make_user()
    runtime.store.update_company(company.id, company.version, {"mfa_required": True})
    result = await runtime.auth.login(LoginRequest(email=user.email, password=PASSWORD))
    assert result.requires_mfa
    return result.user, result.session


def test_recovery_code_format():
    code = generate_recovery_code()
    head, tail = code.split("-")
    assert len(head) == len(tail) == 4
    assert all(c in RECOVERY_CODE_ALPHABET for c in head + tail)
    assert normalize_recovery_code(" abcd-efgh ") == "ABCDEFGH"


async def test_send_and_verify_code(runtime, company, make_user):
    user, session = await _pending_session(runtime, company, make_user)

    code = await runtime.mfa.send_code(user)
    assert code.isdigit() and len(code) == 6

    result = await runtime.mfa.verify_code(user, session, code)

    assert result.method == "email_code"
    assert runtime.store.get_session(session.sid).mfa_verified
    # the code is single use
    with pytest.raises(BadRequestError):
        await runtime.mfa.verify_code(user, session, code)


async def test_verify_without_pending_code(runtime, company, make_user):
    user, session = await _pending_session(runtime, company, make_user)

    with pytest.raises(BadRequestError) as excinfo:
        await runtime.mfa.verify_code(user, session, "123456")
    assert excinfo.value.detail["mfa_error"] == "no_pending_mfa"


async def test_new_code_replaces_old_one(runtime, company, make_user):
    user, session = await _pending_session(runtime, company, make_user)
    first = await runtime.mfa.send_code(user)
    second = await runtime.mfa.send_code(user)

    if first != second:
        with pytest.raises(AuthenticationError):
            await runtime.mfa.verify_code(user, session, first)
    await runtime.mfa.verify_code(user, session, second)


async def test_expired_code_is_rejected_and_removed(runtime, company, make_user):
    user, session = await _pending_session(runtime, company, make_user)
    await runtime.mfa.pending.put(user.id, "111111", utcnow() - timedelta(seconds=1))

    with pytest.raises(AuthenticationError) as excinfo:
        await runtime.mfa.verify_code(user, session, "111111")
    assert excinfo.value.detail["mfa_error"] == "mfa_code_expired"
    assert await runtime.mfa.pending.get(user.id) is None


async def test_too_many_attempts_invalidates_code(runtime, company, make_user):
    user, session = await _pending_session(runtime, company, make_user)
    code = await runtime.mfa.send_code(user)
    wrong = "000000" if code != "000000" else "999999"

    for _ in range(runtime.settings.mfa_max_attempts):
        with pytest.raises(AuthenticationError):
            await runtime.mfa.verify_code(user, session, wrong)

    # the right code no longer helps once the attempts are used up
    with pytest.raises(AuthenticationError):
        await runtime.mfa.verify_code(user, session, code)
    assert await runtime.mfa.pending.get(user.id) is None


async def test_trust_device_on_verify(runtime, company, make_user):
    user, session = await _pending_session(runtime, company, make_user)
    code = await runtime.mfa.send_code(user)

    result = await runtime.mfa.verify_code(user, session, code, trust_device=True)

    assert result.device_token and len(result.device_token) == 128
    assert runtime.devices.verify(user.id, result.device_token).id == result.device.id


async def test_recovery_code_is_single_use(runtime, company, make_user):
    user, session = await _pending_session(runtime, company, make_user)
    codes = runtime.mfa.generate_recovery_codes(user)
    assert len(codes) == runtime.settings.mfa_recovery_code_count

    result = await runtime.mfa.verify_recovery_code(user, session, codes[0].lower())
    assert result.method == "recovery_code"
    assert result.remaining_recovery_codes == len(codes) - 1

    with pytest.raises(AuthenticationError):
        await runtime.mfa.verify_recovery_code(user, session, codes[0])
    events = runtime.store.list_login_events(user_id=user.id)
    assert any(e.event_type == LoginEventType.MFA_BACKUP_CODE_USED for e in events)


def test_enable_disable_cycle(runtime, make_user):
    user = make_user()

    codes = runtime.mfa.enable(user)
    assert len(codes) == runtime.settings.mfa_recovery_code_count
    enabled = runtime.store.get_user(user.id)
    assert enabled.mfa_enabled
    with pytest.raises(BadRequestError):
        runtime.mfa.enable(enabled)

    runtime.devices.trust(enabled.id)
    runtime.mfa.disable(enabled)

    disabled = runtime.store.get_user(user.id)
    assert not disabled.mfa_enabled
    assert runtime.mfa.remaining_recovery_codes(user.id) == 0
    assert runtime.devices.list_for_user(user.id) == []
    with pytest.raises(BadRequestError):
        runtime.mfa.disable(disabled)


def test_disable_refused_when_company_requires_mfa(runtime, company, make_user):
    user = make_user()
    runtime.mfa.enable(user)
    runtime.store.update_company(company.id, company.version, {"mfa_required": True})

    with pytest.raises(BadRequestError):
        runtime.mfa.disable(runtime.store.get_user(user.id))


async def test_require_verified(runtime, company, make_user):
    user, session = await _pending_session(runtime, company, make_user)
    company = runtime.store.get_company(company.id)

    with pytest.raises(MfaRequiredError):
        runtime.mfa.require_verified(session, user, company)

    session.mfa_verified = True
    runtime.mfa.require_verified(session, user, company)


async def test_send_without_email_outside_test_mode(runtime, make_user):
    user = make_user()
    runtime.mfa.settings = runtime.settings.model_copy(update={"test_mode": False})

    with pytest.raises(ServerError):
        await runtime.mfa.send_code(user)


async def test_memory_pending_store_counts_attempts():
    store = MemoryPendingMfaStore()
    await store.put("u1", "123456", utcnow() + timedelta(minutes=5))

    assert await store.increment_attempts("u1") == 1
    assert await store.increment_attempts("u1") == 2
    assert (await store.get("u1")).attempts == 2
    await store.delete("u1")
    assert await store.increment_attempts("u1") is None


class FakeRedis:
    """Hashes with TTLs, plus the pending-code attempt script."""

    def __init__(self):
        self.hashes = {}
        self.ttls = {}

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def hset(self, key, mapping=None):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    def expire(self, key, seconds):
        self.ttls[key] = seconds

    def delete(self, key):
        self.ttls.pop(key, None)
        return int(self.hashes.pop(key, None) is not None)

    def pipeline(self):
        return FakePipeline(self)

    def attempt(self, keys, args):
        pending = self.hashes.get(keys[0])
        if pending is None:
            return -1
        pending["attempts"] = str(int(pending.get("attempts", 0)) + 1)
        return int(pending["attempts"])


class FakePipeline:
    def __init__(self, backend):
        self.backend = backend
        self.calls = []

    def delete(self, key):
        self.calls.append(lambda: self.backend.delete(key))

    def hset(self, key, mapping=None):
        self.calls.append(lambda: self.backend.hset(key, mapping=mapping))

    def expire(self, key, seconds):
        self.calls.append(lambda: self.backend.expire(key, seconds))

    def execute(self):
        return [call() for call in self.calls]


class FakeAsyncPipeline(FakePipeline):
    async def execute(self):
        return FakePipeline.execute(self)


class FakeAsyncRedis:
    def __init__(self, backend):
        self.backend = backend

    async def hgetall(self, key):
        return self.backend.hgetall(key)

    async def delete(self, key):
        return self.backend.delete(key)

    def pipeline(self):
        return FakeAsyncPipeline(self.backend)


@pytest.fixture(params=["async", "sync"])
def redis_backend(request):
    backend = FakeRedis()
    if request.param == "async":
        cache = RedisCache.__new__(RedisCache)
        cache.client = FakeAsyncRedis(backend)
        cache._mfa_attempt = AsyncMock(side_effect=backend.attempt)
    else:
        cache = SyncRedisCache.__new__(SyncRedisCache)
        cache._sync_client = backend
        cache._mfa_attempt = MagicMock(side_effect=backend.attempt)
    return backend, cache


async def test_redis_pending_store_round_trip(redis_backend):
    backend, cache = redis_backend
    store = RedisPendingMfaStore(cache)
    expires_at = utcnow() + timedelta(minutes=5)

    await store.put("u1", "123456", expires_at)

    pending = await store.get("u1")
    assert (pending.code, pending.expires_at, pending.attempts) == ("123456", expires_at, 0)
    assert 0 < backend.ttls["mfa:pending:u1"] <= 300
    assert await store.increment_attempts("u1") == 1
    assert await store.increment_attempts("u1") == 2
    assert (await store.get("u1")).attempts == 2

    await store.delete("u1")
    assert await store.get("u1") is None
    assert await store.increment_attempts("u1") is None
    # the attempt counter never recreates a deleted entry
    assert "mfa:pending:u1" not in backend.hashes


async def test_redis_put_replaces_pending_code_and_attempts(redis_backend):
    _, cache = redis_backend
    store = RedisPendingMfaStore(cache)
    await store.put("u1", "111111", utcnow() + timedelta(minutes=5))
    await store.increment_attempts("u1")

    await store.put("u1", "222222", utcnow() + timedelta(minutes=5))

    pending = await store.get("u1")
    assert pending.code == "222222"
    assert pending.attempts == 0


async def test_attempt_script_minus_one_means_nothing_pending():
    cache = RedisCache.__new__(RedisCache)
    cache._mfa_attempt = AsyncMock(return_value=-1)
    assert await cache.increment_pending_mfa_attempts("u1") is None

    cache._mfa_attempt = AsyncMock(return_value="3")
    assert await cache.increment_pending_mfa_attempts("u1") == 3
    cache._mfa_attempt.assert_awaited_once_with(keys=["mfa:pending:u1"], args=[])


async def test_verify_code_with_redis_pending_store(runtime, company, make_user, redis_backend):
    backend, cache = redis_backend
    runtime.mfa.pending = RedisPendingMfaStore(cache)
    user, session = await _pending_session(runtime, company, make_user)
    code = await runtime.mfa.send_code(user)
    wrong = "000000" if code != "000000" else "111111"

    with pytest.raises(AuthenticationError):
        await runtime.mfa.verify_code(user, session, wrong)
    assert backend.hashes[f"mfa:pending:{user.id}"]["attempts"] == "1"

    await runtime.mfa.verify_code(user, session, code)

    assert runtime.store.get_session(session.sid).mfa_verified
    assert f"mfa:pending:{user.id}" not in backend.hashes
