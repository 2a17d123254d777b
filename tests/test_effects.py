import pytest

from activity import activity, record_activity
from effects import SideEffect, run_side_effects
from storage import LocalBackend


def test_runs_every_effect_and_collects_failures(caplog):
    calls = []

    def fail():
        raise RuntimeError("boom")

    failures = run_side_effects([
        SideEffect("first", calls.append, (1,)),
        SideEffect("broken", fail),
        SideEffect("third", calls.append, (3,)),
    ])

    assert calls == [1, 3]
    assert [f.description for f in failures] == ["broken"]
    assert isinstance(failures[0].error, RuntimeError)
    assert "Side effect failed: broken" in caplog.text


def test_activity_effect_records_on_run(db, pm):
    effect = activity(db, "project_created", pm["_id"], metadata={"project_name": "X"})
    assert db["activity"].count_documents({}) == 0

    assert run_side_effects([effect]) == []
    stored = db["activity"].find_one()
    assert stored["title"] == "Project created"
    assert stored["actor_id"] == pm["_id"]


def test_unknown_activity_type_is_rejected(db, pm):
    with pytest.raises(ValueError):
        record_activity(db, "made_coffee", pm["_id"])


def test_local_backend_writes_and_deletes(tmp_path):
    storage = LocalBackend(str(tmp_path), "/files/")
    url = storage.put("tasks/a/report.txt", b"hello", "text/plain")

    assert url == "/files/tasks/a/report.txt"
    assert (tmp_path / "tasks" / "a" / "report.txt").read_bytes() == b"hello"
    storage.delete("tasks/a/report.txt")
    assert not (tmp_path / "tasks" / "a" / "report.txt").exists()
    # deleting twice is a no-op
    storage.delete("tasks/a/report.txt")


def test_local_backend_rejects_traversal(tmp_path):
    storage = LocalBackend(str(tmp_path / "root"), "/files")
    with pytest.raises(ValueError):
        storage.put("../escape.txt", b"nope")
