import pytest
from bson import ObjectId

from access import (
    CustomerPolicy,
    EmployeePolicy,
    ProjectManagerPolicy,
    UnknownRolePolicy,
    check_access,
    is_assignee,
    policy_for,
    project_scope,
)


@pytest.fixture()
def ids():
    return {"customer": ObjectId(), "member": ObjectId(), "stranger": ObjectId()}


@pytest.fixture()
def project_doc(ids):
    return {"_id": ObjectId(), "customer_id": ids["customer"], "assigned_team": [ids["member"]]}


def test_pm_is_always_allowed(project_doc, ids):
    assert check_access(project_doc, ids["stranger"], "pm").allowed


def test_customer_allowed_only_on_own_project(project_doc, ids):
    assert check_access(project_doc, ids["customer"], "customer").allowed
    assert check_access(project_doc, str(ids["customer"]), "customer").allowed
    denied = check_access(project_doc, ids["stranger"], "customer")
    assert not denied.allowed
    assert denied.reason == "Access denied"


def test_employee_allowed_only_when_on_team(project_doc, ids):
    assert check_access(project_doc, str(ids["member"]), "employee").allowed
    assert not check_access(project_doc, ids["stranger"], "employee").allowed


def test_customer_on_team_list_is_not_enough(project_doc, ids):
    # team membership grants nothing to a customer
    assert not check_access(project_doc, ids["member"], "customer").allowed


@pytest.mark.parametrize("role", ["admin", "", None])
def test_unknown_role_is_denied(project_doc, ids, role):
    decision = check_access(project_doc, ids["customer"], role)
    assert not decision.allowed
    assert decision.reason == "Invalid role"


def test_policy_lookup():
    assert isinstance(policy_for("pm"), ProjectManagerPolicy)
    assert isinstance(policy_for("customer"), CustomerPolicy)
    assert isinstance(policy_for("employee"), EmployeePolicy)
    assert isinstance(policy_for("guest"), UnknownRolePolicy)


def test_scopes_match_the_policies(ids):
    assert project_scope({"id": str(ids["customer"]), "role": "pm"}) == {}
    assert project_scope({"id": str(ids["customer"]), "role": "customer"}) == {"customer_id": ids["customer"]}
    assert project_scope({"id": str(ids["member"]), "role": "employee"}) == {"assigned_team": ids["member"]}
    assert project_scope({"id": str(ids["member"]), "role": "guest"}) == {"_id": {"$in": []}}


def test_is_assignee_accepts_lists_and_single_ids(ids):
    assert is_assignee({"assigned_to": [ids["member"]]}, str(ids["member"]))
    assert is_assignee({"assigned_to": ids["member"]}, ids["member"])
    assert not is_assignee({"assigned_to": []}, ids["member"])
    assert not is_assignee({}, ids["member"])
