import pytest

from gamcauth.service.errors import ValidationError
from gamcauth.service.runtime import get_runtime
from gamcauth.storage.models import Role
from scripts.bootstrap_admin import bootstrap_admin


def test_creates_admin_that_can_log_in():
    result = bootstrap_admin("admin@gamc.gov.bo", "Segura$2024", org_unit_id=1)

    assert result["status"] == "created"
    runtime = get_runtime()
    user = runtime.store.get_user(result["user_id"])
    assert user.role is Role.ADMIN
    assert runtime.auth.verify_password(user.id, "Segura$2024")


def test_promotes_existing_user():
    runtime = get_runtime()
    user = runtime.store.create_user("jefa@gamc.gov.bo", "Jefa", "Unidad", role=Role.INPUT)

    result = bootstrap_admin("jefa@gamc.gov.bo", "Segura$2024")

    assert result == {"user_id": user.id, "email": "jefa@gamc.gov.bo", "status": "promoted"}
    assert runtime.store.get_user(user.id).role is Role.ADMIN
    assert bootstrap_admin("jefa@gamc.gov.bo", "Segura$2024")["status"] == "already_admin"


def test_dry_run_changes_nothing():
    result = bootstrap_admin("nuevo@gamc.gov.bo", "Segura$2024", dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("nuevo@gamc.gov.bo") is None


def test_weak_password_is_rejected():
    with pytest.raises(ValidationError):
        bootstrap_admin("debil@gamc.gov.bo", "password")
