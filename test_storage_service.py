from datetime import date

import pytest

from tools.lab_manual import PHYSICS_LAB_MANUAL_CONTEXT
from tools.storage_service import DEFAULT_DAILY_LIMIT, StorageService


@pytest.fixture
def storage(tmp_path):
    return StorageService(tmp_path)


def test_register_assigns_roles(storage):
    student = storage.register_user("kim@uni.ac.ke")
    admin = storage.register_user("admin@uni.ac.ke")
    assert student["role"] == "student"
    assert student["customLimit"] == DEFAULT_DAILY_LIMIT
    assert admin["role"] == "admin"
    assert storage.register_user("kim@uni.ac.ke")["registeredAt"] == student["registeredAt"]
    assert [u["email"] for u in storage.get_all_users()] == ["kim@uni.ac.ke", "admin@uni.ac.ke"]


def test_data_survives_a_new_instance(tmp_path):
    StorageService(tmp_path).register_user("kim@uni.ac.ke")
    assert StorageService(tmp_path).get_user("kim@uni.ac.ke") is not None


def test_corrupt_database_is_kept_aside(tmp_path):
    (tmp_path / "lab_reports_db.json").write_text("{not json", encoding="utf-8")
    storage = StorageService(tmp_path)
    assert storage.get_all_users() == []
    backups = list(tmp_path.glob("lab_reports_db.json.corrupt-*"))
    assert len(backups) == 1
    assert backups[0].read_text(encoding="utf-8") == "{not json"

    storage.register_user("kim@uni.ac.ke")
    assert storage.get_user("kim@uni.ac.ke")
    assert backups[0].read_text(encoding="utf-8") == "{not json"
    assert len(list(tmp_path.glob("lab_reports_db.json.corrupt-*"))) == 1


def test_non_object_database_is_kept_aside(tmp_path):
    (tmp_path / "lab_reports_db.json").write_text("[1, 2]", encoding="utf-8")
    assert StorageService(tmp_path).get_reports("kim@uni.ac.ke") == []
    assert len(list(tmp_path.glob("lab_reports_db.json.corrupt-*"))) == 1


def test_reports_newest_first(storage):
    storage.register_user("kim@uni.ac.ke")
    first = storage.save_report("kim@uni.ac.ke", "A-1", "{}")
    second = storage.save_report("kim@uni.ac.ke", "A-2", "{}")
    assert [r["id"] for r in storage.get_reports("kim@uni.ac.ke")] == [second["id"], first["id"]]
    assert storage.get_report("kim@uni.ac.ke", first["id"])["experimentCode"] == "A-1"
    assert storage.get_report("other@uni.ac.ke", first["id"]) is None
    assert storage.get_user("kim@uni.ac.ke")["reportsGenerated"] == 2


def test_daily_limit(storage):
    storage.register_user("kim@uni.ac.ke")
    storage.update_user_limit("kim@uni.ac.ke", 2)
    assert storage.check_daily_limit("kim@uni.ac.ke")
    storage.increment_daily_limit("kim@uni.ac.ke")
    storage.increment_daily_limit("kim@uni.ac.ke")
    assert not storage.check_daily_limit("kim@uni.ac.ke")
    assert storage.get_daily_count("kim@uni.ac.ke") == 2
    assert storage.get_daily_count("kim@uni.ac.ke", day=date(2000, 1, 1)) == 0
    assert storage.usage("kim@uni.ac.ke") == {"dailyCount": 2, "limit": 2, "remaining": 0}


def test_admins_are_never_limited(storage):
    storage.register_user("admin@uni.ac.ke")
    storage.update_user_limit("admin@uni.ac.ke", 0)
    assert storage.check_daily_limit("admin@uni.ac.ke")
    assert storage.usage("admin@uni.ac.ke")["limit"] is None


def test_revoke_toggles(storage):
    storage.register_user("kim@uni.ac.ke")
    assert storage.revoke_user("kim@uni.ac.ke")["isRevoked"] is True
    assert storage.revoke_user("kim@uni.ac.ke")["isRevoked"] is False
    assert storage.revoke_user("nobody@uni.ac.ke") is None
    assert storage.update_user_limit("nobody@uni.ac.ke", 5) is None


def test_references_and_context(storage):
    storage.add_reference("Experiment Z-9: Magnetism")
    storage.add_reference("Experiment Z-10: Optics")
    assert storage.remove_reference(0) == ["Experiment Z-10: Optics"]
    with pytest.raises(IndexError):
        storage.remove_reference(3)
    context = storage.get_full_context()
    assert context.startswith(PHYSICS_LAB_MANUAL_CONTEXT)
    assert context.endswith("ADDITIONAL ADMIN REFERENCES:\nExperiment Z-10: Optics")
