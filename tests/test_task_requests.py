import pytest


@pytest.fixture()
def milestone(project, make_milestone):
    return make_milestone(project)


def _payload(project, milestone, **extra):
    payload = {
        "project_id": str(project["_id"]),
        "milestone_id": str(milestone["_id"]),
        "title": "Add dark mode",
        "description": "Customers keep asking for a dark theme on the dashboard.",
        "due_date": "2031-05-01T00:00:00Z",
        "reason": "feature-request",
    }
    payload.update(extra)
    return payload


@pytest.fixture()
def submitted(client, project, milestone, customer, auth):
    response = client.post("/api/task-requests", json=_payload(project, milestone), headers=auth(customer))
    assert response.status_code == 201
    return response.json()["data"]


def test_customer_submits_request(submitted, customer):
    assert submitted["status"] == "pending"
    assert submitted["requested_by"] == str(customer["_id"])
    assert submitted["milestone_title"] == "Milestone 1"


def test_request_validation(client, project, milestone, customer, auth):
    headers = auth(customer)
    short = client.post("/api/task-requests", json=_payload(project, milestone, title="Hi"), headers=headers)
    past = client.post(
        "/api/task-requests", json=_payload(project, milestone, due_date="2001-01-01T00:00:00Z"), headers=headers,
    )
    assert short.status_code == 400
    assert past.status_code == 400


def test_customer_cannot_request_on_foreign_project(client, make_project, make_user, make_milestone, customer, auth):
    foreign = make_project(make_user("customer"), name="Foreign")
    response = client.post(
        "/api/task-requests", json=_payload(foreign, make_milestone(foreign)), headers=auth(customer),
    )
    assert response.status_code == 403


def test_only_customers_submit(client, project, milestone, pm, auth):
    response = client.post("/api/task-requests", json=_payload(project, milestone), headers=auth(pm))
    assert response.status_code == 403


def test_mine_lists_own_requests(client, submitted, customer, make_user, auth):
    mine = client.get("/api/task-requests/mine", headers=auth(customer)).json()
    theirs = client.get("/api/task-requests/mine", headers=auth(make_user("customer"))).json()
    assert [r["id"] for r in mine["data"]] == [submitted["id"]]
    assert theirs["data"] == []


def test_customer_edits_and_cancels_pending(client, submitted, customer, auth, db):
    headers = auth(customer)
    url = f"/api/task-requests/{submitted['id']}"

    updated = client.put(url, json={"priority": "high"}, headers=headers)
    cancelled = client.delete(url, headers=headers)
    again = client.put(url, json={"priority": "low"}, headers=headers)

    assert updated.json()["data"]["priority"] == "high"
    assert cancelled.status_code == 200
    assert again.status_code == 404


def test_other_customer_cannot_edit(client, submitted, make_user, auth):
    response = client.put(
        f"/api/task-requests/{submitted['id']}", json={"priority": "low"}, headers=auth(make_user("customer")),
    )
    assert response.status_code == 404


def test_approval_creates_exactly_one_task(client, submitted, milestone, make_task, pm, auth, db):
    make_task(milestone, status="completed")

    response = client.put(
        f"/api/task-requests/{submitted['id']}/review",
        json={"action": "approve", "review_comments": "Scheduled"},
        headers=auth(pm),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["request"]["status"] == "approved"
    assert data["task"]["status"] == "pending"
    assert data["task"]["sequence"] == 2
    assert db["task"].count_documents({"task_request_id": {"$exists": True}}) == 1
    # one of two tasks is complete now
    assert db["milestone"].find_one({"_id": milestone["_id"]})["progress"] == 50

    second = client.put(f"/api/task-requests/{submitted['id']}/review", json={"action": "approve"}, headers=auth(pm))
    assert second.status_code == 400
    assert db["task"].count_documents({"task_request_id": {"$exists": True}}) == 1


def test_rejection_creates_nothing(client, submitted, pm, auth, db):
    response = client.put(
        f"/api/task-requests/{submitted['id']}/review", json={"action": "reject"}, headers=auth(pm),
    )
    assert response.json()["data"]["request"]["status"] == "rejected"
    assert response.json()["data"]["task"] is None
    assert db["task"].count_documents({}) == 0


def test_pm_lists_requests_by_status(client, submitted, pm, auth):
    pending = client.get("/api/task-requests?status=pending", headers=auth(pm)).json()
    approved = client.get("/api/task-requests?status=approved", headers=auth(pm)).json()
    assert pending["pagination"]["total"] == 1
    assert approved["pagination"]["total"] == 0
