import importlib.util
from datetime import datetime, timezone
from pathlib import Path

import pytest

from warden.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


@pytest.fixture
def alice():
    return get_runtime().store.create_identity(
        "alice", "a@x.com", "00" * 64, "11" * 16, datetime(2100, 1, 1, tzinfo=timezone.utc)
    )


class TestBootstrapAdmin:
    async def test_grants_admin_role(self, bootstrap, alice):
        result = await bootstrap("alice")
        assert result["status"] == "granted"
        resolved = await get_runtime().permissions.resolve(alice.id)
        assert resolved.roles == ["admin"]
        assert resolved.permissions == ["manage-roles"]

    async def test_second_run_changes_nothing(self, bootstrap, alice):
        await bootstrap("a@x.com")
        assert (await bootstrap("a@x.com"))["status"] == "already_admin"
        assert len(get_runtime().permissions.list_roles()) == 1

    async def test_dry_run_writes_nothing(self, bootstrap, alice):
        assert (await bootstrap("alice", dry_run=True))["status"] == "dry_run"
        assert get_runtime().permissions.list_roles() == []
        assert get_runtime().permissions.list_permissions() == []

    async def test_unknown_identity(self, bootstrap):
        with pytest.raises(LookupError):
            await bootstrap("nobody")
