import importlib.util
from pathlib import Path

import pytest

from authkernel.service.runtime import get_runtime
from authkernel.storage.models import Role

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    module_spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module.bootstrap_admin


async def test_creates_admin(bootstrap):
    result = await bootstrap("Site Admin", "admin@x.com", "Sup3r!Secret")

    assert result["status"] == "created"
    identity = get_runtime().store.get_identity(result["identity_id"])
    assert identity.role == Role.ADMIN


async def test_promotes_existing_identity(bootstrap):
    registered = await get_runtime().auth.register("Alice", "alice@x.com", "Str0ng!Pass")

    result = await bootstrap("Ignored", "alice@x.com", "Sup3r!Secret")

    assert result["status"] == "promoted"
    assert get_runtime().store.get_identity(registered.value.identity.id).role == Role.ADMIN
    again = await bootstrap("Ignored", "alice@x.com", "Sup3r!Secret")
    assert again["status"] == "already_admin"


async def test_dry_run_changes_nothing(bootstrap):
    result = await bootstrap("Site Admin", "admin@x.com", "Sup3r!Secret", dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.get_identity_by_email("admin@x.com") is None


async def test_weak_password_raises(bootstrap):
    with pytest.raises(RuntimeError, match="at least 8"):
        await bootstrap("Site Admin", "admin@x.com", "short")
