import json
from pathlib import Path

from bson import ObjectId
from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError


def _payload(project, milestone, **extra):
    payload = {
        "project_id": str(project["_id"]),
        "milestone_id": str(milestone["_id"]),
        "title": "Write copy",
        "due_date": "2031-02-01T00:00:00Z",
    }
    payload.update(extra)
    return payload


def test_create_task_rolls_up(client, project, pm, employee, auth, db, make_milestone):
    milestone = make_milestone(project)
    response = client.post(
        "/api/tasks",
        json=_payload(project, milestone, assigned_to=[str(employee["_id"])]),
        headers=auth(pm),
    )

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["sequence"] == 1
    assert data["assigned_to"] == [str(employee["_id"])]
    assert db["milestone"].find_one({"_id": milestone["_id"]})["progress"] == 0
    assert db["activity"].count_documents({"type": "task_created"}) == 1


def test_milestone_must_belong_to_project(client, project, make_project, customer, pm, auth, make_milestone):
    foreign = make_milestone(make_project(customer, name="Other"))
    response = client.post("/api/tasks", json=_payload(project, foreign), headers=auth(pm))
    assert response.status_code == 404
    assert response.json()["message"] == "Milestone not found in this project"


def test_sequence_continues_within_milestone(client, project, pm, auth, make_milestone, make_task):
    milestone = make_milestone(project)
    make_task(milestone, sequence=4)
    response = client.post("/api/tasks", json=_payload(project, milestone), headers=auth(pm))
    assert response.json()["data"]["sequence"] == 5


def test_assignee_completes_task(client, project, employee, auth, db, make_milestone, make_task):
    milestone = make_milestone(project)
    task = make_task(milestone, assigned_to=[employee])
    make_task(milestone, sequence=2)

    response = client.patch(f"/api/tasks/{task['_id']}/status", json={"status": "completed"}, headers=auth(employee))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "completed"
    assert data["completed_by"] == str(employee["_id"])
    assert db["milestone"].find_one({"_id": milestone["_id"]})["progress"] == 50
    # (0 milestones + 1 task) / (1 milestone + 2 tasks)
    assert db["project"].find_one({"_id": project["_id"]})["progress"] == 33


def test_reopening_clears_completion(client, project, pm, auth, db, make_milestone, make_task):
    milestone = make_milestone(project)
    task = make_task(milestone, status="completed", completed_by=pm["_id"])

    response = client.patch(f"/api/tasks/{task['_id']}/status", json={"status": "in-progress"}, headers=auth(pm))

    assert response.json()["data"]["completed_by"] is None
    assert db["milestone"].find_one({"_id": milestone["_id"]})["progress"] == 0


def test_team_member_not_assigned_cannot_change_status(client, project, make_user, make_project, customer,
                                                       auth, make_milestone, make_task, employee):
    colleague = make_user("employee")
    shared = make_project(customer, team=[employee, colleague], name="Shared")
    task = make_task(make_milestone(shared), assigned_to=[employee])

    response = client.patch(f"/api/tasks/{task['_id']}/status", json={"status": "completed"}, headers=auth(colleague))

    assert response.status_code == 403


def test_employee_update_is_limited_to_status(client, project, employee, auth, make_milestone, make_task):
    task = make_task(make_milestone(project), assigned_to=[employee])
    headers = auth(employee)

    status_only = client.put(f"/api/tasks/{task['_id']}", json={"status": "in-progress"}, headers=headers)
    with_title = client.put(f"/api/tasks/{task['_id']}", json={"title": "Mine now"}, headers=headers)

    assert status_only.status_code == 200
    assert with_title.status_code == 403
    assert with_title.json()["message"] == "Employees can only update task status"


def test_customer_cannot_update_tasks(client, project, customer, auth, make_milestone, make_task):
    task = make_task(make_milestone(project))
    response = client.put(f"/api/tasks/{task['_id']}", json={"status": "completed"}, headers=auth(customer))
    assert response.status_code == 403


def test_moving_task_recomputes_both_milestones(client, project, pm, auth, db, make_milestone, make_task):
    source = make_milestone(project, sequence=1)
    target = make_milestone(project, sequence=2)
    task = make_task(source, status="completed")

    response = client.put(f"/api/tasks/{task['_id']}", json={"milestone_id": str(target["_id"])}, headers=auth(pm))

    assert response.status_code == 200
    assert db["milestone"].find_one({"_id": source["_id"]})["progress"] == 0
    assert db["milestone"].find_one({"_id": target["_id"]})["progress"] == 100


def test_delete_task_removes_subtasks(client, project, pm, auth, db, make_milestone, make_task):
    milestone = make_milestone(project)
    task = make_task(milestone, status="completed")
    make_task(milestone, sequence=2)
    db["subtask"].insert_one({"task_id": task["_id"], "project_id": project["_id"], "title": "Check"})

    response = client.delete(f"/api/tasks/{task['_id']}", headers=auth(pm))

    assert response.status_code == 200
    assert db["subtask"].count_documents({}) == 0
    assert db["milestone"].find_one({"_id": milestone["_id"]})["progress"] == 0


def test_copy_task(client, project, pm, auth, db, make_milestone, make_task):
    milestone = make_milestone(project)
    task = make_task(milestone, status="completed")

    response = client.post(f"/api/tasks/{task['_id']}/copy", json={}, headers=auth(pm))

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "pending"
    assert data["sequence"] == 2
    assert db["milestone"].find_one({"_id": milestone["_id"]})["progress"] == 50


def test_list_filters_and_scope(client, project, make_project, customer, pm, employee, auth, make_milestone, make_task):
    make_task(make_milestone(project), assigned_to=[employee], title="Visible")
    make_task(make_milestone(make_project(customer, name="Hidden")), title="Hidden")

    as_employee = client.get("/api/tasks", headers=auth(employee)).json()
    as_pm = client.get("/api/tasks", headers=auth(pm)).json()

    assert [t["title"] for t in as_employee["data"]] == ["Visible"]
    assert as_pm["pagination"]["total"] == 2


def test_missing_task(client, pm, auth):
    assert client.get(f"/api/tasks/{ObjectId()}", headers=auth(pm)).status_code == 404


def test_failed_insert_removes_uploaded_files(app, project, pm, auth, settings, make_milestone, monkeypatch):
    milestone = make_milestone(project)

    def refuse(*args, **kwargs):
        raise PyMongoError("write failed")

    monkeypatch.setattr("routers.tasks.create_document", refuse)
    client = TestClient(app, raise_server_exceptions=False)
    response = client.post(
        "/api/tasks",
        data={"data": json.dumps(_payload(project, milestone))},
        files=[("files", ("brief.pdf", b"%PDF", "application/pdf"))],
        headers=auth(pm),
    )

    assert response.status_code == 500
    assert not [p for p in Path(settings.storage_local_root).rglob("*") if p.is_file()]
