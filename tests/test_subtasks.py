import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError

from database import create_document

PAST = datetime(2001, 1, 1, tzinfo=timezone.utc)


@pytest.fixture()
def make_subtask(db, pm):
    def _make(task, status="pending", assigned_to=(), **extra):
        return create_document(db, "subtask", {
            "task_id": task["_id"],
            "project_id": task["project_id"],
            "title": extra.pop("title", "Check copy"),
            "description": "",
            "status": status,
            "priority": "normal",
            "assigned_to": [user["_id"] for user in assigned_to],
            "due_date": extra.pop("due_date", datetime(2031, 1, 1, tzinfo=timezone.utc)),
            "sequence": extra.pop("sequence", 1),
            "comments": [],
            "attachments": [],
            "created_by": pm["_id"],
            **extra,
        })

    return _make


def _payload(task, **extra):
    payload = {"task_id": str(task["_id"]), "title": "Proofread", "due_date": "2031-02-01T00:00:00Z"}
    payload.update(extra)
    return payload


def test_create_numbers_subtasks_within_task(client, project, customer, pm, employee, auth, db, make_milestone, make_task):
    task = make_task(make_milestone(project))
    headers = auth(pm)

    first = client.post("/api/subtasks", json=_payload(task, assigned_to=[str(employee["_id"])]), headers=headers)
    second = client.post("/api/subtasks", json=_payload(task, title="Publish"), headers=headers)

    assert first.status_code == 201
    data = first.json()["data"]
    assert data["sequence"] == 1
    assert data["project_id"] == str(project["_id"])
    assert data["customer_id"] == str(customer["_id"])
    assert second.json()["data"]["sequence"] == 2
    assert db["activity"].count_documents({"type": "subtask_created"}) == 2


def test_only_pm_creates_subtasks(client, project, employee, auth, make_milestone, make_task):
    task = make_task(make_milestone(project), assigned_to=[employee])
    response = client.post("/api/subtasks", json=_payload(task), headers=auth(employee))
    assert response.status_code == 403


def test_assignee_completes_subtask(client, project, employee, auth, db, make_milestone, make_task, make_subtask):
    subtask = make_subtask(make_task(make_milestone(project)), assigned_to=[employee])

    response = client.patch(
        f"/api/subtasks/{subtask['_id']}/status", json={"status": "completed"}, headers=auth(employee),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "completed"
    assert data["completed_by"] == str(employee["_id"])
    assert db["activity"].find_one({"type": "subtask_status_changed"})["metadata"]["new_status"] == "completed"


def test_unassigned_team_member_cannot_change_status(
    client, project, make_user, db, auth, make_milestone, make_task, make_subtask, employee,
):
    teammate = make_user("employee")
    db["project"].update_one({"_id": project["_id"]}, {"$push": {"assigned_team": teammate["_id"]}})
    subtask = make_subtask(make_task(make_milestone(project)), assigned_to=[employee])

    response = client.patch(
        f"/api/subtasks/{subtask['_id']}/status", json={"status": "completed"}, headers=auth(teammate),
    )

    assert response.status_code == 403
    assert response.json()["message"] == "You do not have permission to update this subtask"


def test_pm_changes_status_of_any_subtask(client, project, pm, auth, make_milestone, make_task, make_subtask):
    subtask = make_subtask(make_task(make_milestone(project)))
    response = client.patch(f"/api/subtasks/{subtask['_id']}/status", json={"status": "in-progress"}, headers=auth(pm))
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "in-progress"


def test_completing_subtask_leaves_percentages_alone(
    client, project, employee, auth, db, rollup, make_milestone, make_task, make_subtask,
):
    milestone = make_milestone(project)
    task = make_task(milestone)
    make_task(milestone, status="completed", sequence=2)
    subtask = make_subtask(task, assigned_to=[employee])
    rollup.recalculate_project(project["_id"])

    response = client.patch(
        f"/api/subtasks/{subtask['_id']}/status", json={"status": "completed"}, headers=auth(employee),
    )

    assert response.status_code == 200
    assert db["task"].find_one({"_id": task["_id"]})["status"] == "pending"
    assert db["milestone"].find_one({"_id": milestone["_id"]})["progress"] == 50
    # one pending milestone plus one of two tasks done
    assert db["project"].find_one({"_id": project["_id"]})["progress"] == 33


def test_update_is_pm_only(client, project, pm, employee, auth, make_milestone, make_task, make_subtask):
    subtask = make_subtask(make_task(make_milestone(project)), assigned_to=[employee])
    url = f"/api/subtasks/{subtask['_id']}"

    denied = client.put(url, json={"title": "Mine now"}, headers=auth(employee))
    allowed = client.put(url, json={"title": "Proofread twice", "priority": "high"}, headers=auth(pm))

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["data"]["title"] == "Proofread twice"
    assert allowed.json()["data"]["priority"] == "high"


def test_copy_subtask(client, project, pm, auth, make_milestone, make_task, make_subtask):
    task = make_task(make_milestone(project))
    original = make_subtask(task, status="completed", title="Proofread")

    response = client.post(f"/api/subtasks/{original['_id']}/copy", headers=auth(pm))

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["title"] == "Proofread (Copy)"
    assert data["status"] == "pending"
    assert data["sequence"] == 2
    assert data["copied_from"] == str(original["_id"])


def test_delete_subtask(client, project, pm, employee, auth, db, make_milestone, make_task, make_subtask):
    subtask = make_subtask(make_task(make_milestone(project)), assigned_to=[employee])
    url = f"/api/subtasks/{subtask['_id']}"

    assert client.delete(url, headers=auth(employee)).status_code == 403
    response = client.delete(url, headers=auth(pm))

    assert response.status_code == 200
    assert db["subtask"].count_documents({}) == 0
    assert client.get(url, headers=auth(pm)).status_code == 404


def test_list_by_task_is_ordered(client, project, employee, auth, make_milestone, make_task, make_subtask):
    task = make_task(make_milestone(project))
    make_subtask(task, sequence=2, title="Second")
    make_subtask(task, sequence=1, title="First")

    response = client.get(f"/api/subtasks/task/{task['_id']}", headers=auth(employee))

    assert [s["title"] for s in response.json()["data"]] == ["First", "Second"]


def test_outsider_cannot_read_subtask(client, project, outsider, auth, make_milestone, make_task, make_subtask):
    subtask = make_subtask(make_task(make_milestone(project)))
    assert client.get(f"/api/subtasks/{subtask['_id']}", headers=auth(outsider)).status_code == 403


def test_subtask_comments(client, project, customer, employee, auth, db, make_milestone, make_task, make_subtask):
    subtask = make_subtask(make_task(make_milestone(project)))
    url = f"/api/subtasks/{subtask['_id']}/comments"

    created = client.post(url, json={"message": "Please use the new logo"}, headers=auth(customer))
    comment_id = created.json()["data"]["id"]
    not_author = client.delete(f"{url}/{comment_id}", headers=auth(employee))
    removed = client.delete(f"{url}/{comment_id}", headers=auth(customer))

    assert created.status_code == 201
    assert not_author.status_code == 403
    assert removed.status_code == 200
    assert db["subtask"].find_one({"_id": subtask["_id"]})["comments"] == []


def test_stats_are_scoped_by_role(
    client, project, make_project, customer, pm, employee, auth, make_milestone, make_task, make_subtask,
):
    task = make_task(make_milestone(project))
    make_subtask(task, status="completed", assigned_to=[employee])
    make_subtask(task, sequence=2)
    hidden = make_task(make_milestone(make_project(customer, name="Other")))
    make_subtask(hidden, title="Elsewhere")

    as_pm = client.get("/api/subtasks/stats", headers=auth(pm)).json()["data"]
    as_employee = client.get("/api/subtasks/stats", headers=auth(employee)).json()["data"]
    for_task = client.get(f"/api/subtasks/stats?task_id={task['_id']}", headers=auth(customer)).json()["data"]

    assert as_pm["total"] == 3
    assert as_employee == {"total": 1, "pending": 0, "in-progress": 0, "completed": 1, "cancelled": 0, "overdue": 0}
    assert for_task["total"] == 2
    assert for_task["pending"] == 1


def test_stats_count_overdue(client, project, pm, auth, make_milestone, make_task, make_subtask):
    task = make_task(make_milestone(project))
    make_subtask(task, due_date=PAST)
    make_subtask(task, sequence=2, status="completed", due_date=PAST)

    stats = client.get("/api/subtasks/stats", headers=auth(pm)).json()["data"]

    assert stats["overdue"] == 1


def test_failed_insert_removes_uploaded_files(app, project, pm, auth, settings, make_milestone, make_task, monkeypatch):
    task = make_task(make_milestone(project))

    def refuse(*args, **kwargs):
        raise PyMongoError("write failed")

    monkeypatch.setattr("routers.subtasks.create_document", refuse)
    client = TestClient(app, raise_server_exceptions=False)
    response = client.post(
        "/api/subtasks",
        data={"data": json.dumps(_payload(task))},
        files=[("files", ("notes.txt", b"draft", "text/plain"))],
        headers=auth(pm),
    )

    assert response.status_code == 500
    assert not [p for p in Path(settings.storage_local_root).rglob("*") if p.is_file()]
