import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Settings are read at import time by tradegate.app; set the env first.
_test_tmp_dir = tempfile.mkdtemp(prefix="tradegate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("TOKEN_SECRET", "test-token-secret-for-testing-only-do-not-use-in-production")
# the in-process fallback keeps rate limits and pending codes per test
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tradegate.service.runtime import reset_runtime_for_tests  # noqa: E402
from tradegate.storage.models import UserType  # noqa: E402

DEFAULT_PASSWORD = "Sup3rSecret!"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # a fresh directory per test so the memory store does not reload old state
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    from tradegate.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def company(runtime):
    return runtime.store.create_company("Acme Windows")


@pytest.fixture
def internal_company(runtime):
    return runtime.store.create_company("Tradegate Internal", is_internal=True)


@pytest.fixture
def make_user(runtime, company):
    """Create a user with a password, a membership and the named roles."""

    def _make(
        email="rep@acme.test",
        password=DEFAULT_PASSWORD,
        *,
        roles=("salesRep",),
        target_company=None,
        user_type=UserType.COMPANY,
    ):
        home = target_company or company
        user, _ = runtime.auth.admin_create_user(
            email=email, password=password, user_type=user_type, company_id=home.id
        )
        if user_type == UserType.COMPANY:
            runtime.store.add_membership(user.id, home.id)
        for name in roles:
            role = runtime.store.get_role_by_name(name, "system") or runtime.store.get_role_by_name(
                name, "platform"
            )
            runtime.permissions.assign_role(user, role, home.id)
        return runtime.store.get_user(user.id)

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
