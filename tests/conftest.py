import itertools
from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import create_document
from main import create_app
from progress import ProgressRollup
from security import create_token, hash_password

PASSWORD = "secret123"
DUE = datetime(2031, 1, 1, tzinfo=timezone.utc)

_emails = itertools.count(1)


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        environment="test",
        jwt_secret="test-secret",
        cors_origins=["http://testserver"],
        storage_local_root=str(tmp_path / "uploads"),
        storage_local_url_prefix="/uploads",
    )


@pytest.fixture()
def db():
    return mongomock.MongoClient(tz_aware=True)["projectflow_test"]


@pytest.fixture()
def rollup(db):
    return ProgressRollup(db)


@pytest.fixture()
def app(settings, db):
    return create_app(settings, db)


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def make_user(db):
    def _make(role="employee", status="active", password=PASSWORD, **extra):
        n = next(_emails)
        return create_document(db, "user", {
            "full_name": extra.pop("full_name", f"{role.title()} {n}"),
            "email": extra.pop("email", f"{role}{n}@example.com"),
            "password": hash_password(password),
            "role": role,
            "status": status,
            "last_login": None,
            **extra,
        })

    return _make


@pytest.fixture()
def auth(settings):
    def _headers(user):
        return {"Authorization": f"Bearer {create_token(settings, user)}"}

    return _headers


@pytest.fixture()
def pm(make_user):
    return make_user("pm")


@pytest.fixture()
def customer(make_user):
    return make_user("customer")


@pytest.fixture()
def employee(make_user):
    return make_user("employee")


@pytest.fixture()
def outsider(make_user):
    return make_user("employee")


@pytest.fixture()
def make_project(db, pm):
    def _make(customer, team=(), **extra):
        return create_document(db, "project", {
            "name": extra.pop("name", "Website relaunch"),
            "description": "",
            "customer_id": customer["_id"],
            "project_manager_id": pm["_id"],
            "assigned_team": [member["_id"] for member in team],
            "status": extra.pop("status", "active"),
            "priority": "normal",
            "start_date": DUE,
            "due_date": DUE,
            "tags": [],
            "progress": 0,
            "attachments": [],
            **extra,
        })

    return _make


@pytest.fixture()
def project(make_project, customer, employee):
    return make_project(customer, team=[employee])


@pytest.fixture()
def make_milestone(db, pm):
    def _make(project, sequence=1, status="pending", **extra):
        return create_document(db, "milestone", {
            "project_id": project["_id"],
            "title": extra.pop("title", f"Milestone {sequence}"),
            "description": "",
            "sequence": sequence,
            "due_date": DUE,
            "status": status,
            "priority": "normal",
            "assigned_to": [],
            "progress": 0,
            "comments": [],
            "attachments": [],
            "created_by": pm["_id"],
            **extra,
        })

    return _make


@pytest.fixture()
def make_task(db, pm):
    def _make(milestone, status="pending", assigned_to=(), **extra):
        return create_document(db, "task", {
            "project_id": milestone["project_id"],
            "milestone_id": milestone["_id"],
            "title": extra.pop("title", "Build landing page"),
            "description": "",
            "status": status,
            "priority": "normal",
            "assigned_to": [user["_id"] for user in assigned_to],
            "due_date": DUE,
            "sequence": extra.pop("sequence", 1),
            "comments": [],
            "attachments": [],
            "created_by": pm["_id"],
            **extra,
        })

    return _make
