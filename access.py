"""Role-based access to projects.

Each role has an ``AccessPolicy``; ``check_access`` is a pure predicate over
an already-fetched project document. Callers translate a missing project to
``NotFound`` and a denied decision to ``PermissionDenied``.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo.database import Database

from database import oid
from errors import NotFound, PermissionDenied

ROLES = ("pm", "employee", "customer")


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[str] = None


ALLOWED = AccessDecision(True)


class AccessPolicy:
    role = ""

    def can_access(self, project: Dict[str, Any], user_id: Any) -> AccessDecision:
        raise NotImplementedError

    def scope(self, user_id: Any) -> Dict[str, Any]:
        """Mongo filter selecting the projects this role may see."""
        raise NotImplementedError


class ProjectManagerPolicy(AccessPolicy):
    role = "pm"

    def can_access(self, project, user_id):
        return ALLOWED

    def scope(self, user_id):
        return {}


class CustomerPolicy(AccessPolicy):
    role = "customer"

    def can_access(self, project, user_id):
        if str(project.get("customer_id")) == str(user_id):
            return ALLOWED
        return AccessDecision(False, "Access denied")

    def scope(self, user_id):
        return {"customer_id": oid(user_id)}


class EmployeePolicy(AccessPolicy):
    role = "employee"

    def can_access(self, project, user_id):
        team = {str(member) for member in project.get("assigned_team", [])}
        if str(user_id) in team:
            return ALLOWED
        return AccessDecision(False, "Access denied")

    def scope(self, user_id):
        return {"assigned_team": oid(user_id)}


class UnknownRolePolicy(AccessPolicy):
    def can_access(self, project, user_id):
        return AccessDecision(False, "Invalid role")

    def scope(self, user_id):
        # matches nothing
        return {"_id": {"$in": []}}


POLICIES: Dict[str, AccessPolicy] = {
    p.role: p for p in (ProjectManagerPolicy(), CustomerPolicy(), EmployeePolicy())
}


def policy_for(role: Optional[str]) -> AccessPolicy:
    return POLICIES.get(role or "", UnknownRolePolicy())


def check_access(project: Dict[str, Any], user_id: Any, role: Optional[str]) -> AccessDecision:
    return policy_for(role).can_access(project, user_id)


def project_scope(user: Dict[str, Any]) -> Dict[str, Any]:
    return policy_for(user.get("role")).scope(user["id"])


def accessible_project(db: Database, project_id: Any, user: Dict[str, Any]) -> Dict[str, Any]:
    """Load a project and apply the gate, raising 404/403."""
    project = db["project"].find_one({"_id": oid(project_id)})
    if not project:
        raise NotFound("Project not found")
    decision = check_access(project, user["id"], user.get("role"))
    if not decision.allowed:
        raise PermissionDenied(decision.reason or "Access denied")
    return project


def accessible_child(db: Database, collection: str, doc_id: Any, user: Dict[str, Any], label: str):
    """Load a milestone/task/subtask and the project it belongs to."""
    doc = db[collection].find_one({"_id": oid(doc_id)})
    if not doc:
        raise NotFound(f"{label} not found")
    project = accessible_project(db, doc["project_id"], user)
    return doc, project


def is_assignee(doc: Dict[str, Any], user_id: Any) -> bool:
    assigned = doc.get("assigned_to") or []
    if isinstance(assigned, (str, ObjectId)):
        assigned = [assigned]
    return str(user_id) in {str(a) for a in assigned}
