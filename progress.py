"""Progress rollup for Project -> Milestone -> Task.

Percentages are always recomputed from counts, never patched incrementally.
Milestone progress is the share of its tasks that are completed. Project
progress counts milestones and tasks as equally weighted items:

    round((completed milestones + completed tasks) / (milestones + tasks) * 100)

Subtasks are a checklist under their task and do not feed either number.

The ``on_*`` callbacks are invoked by the command handlers after their own
write; they are best effort and only log failures. ``recalculate_project``
is the manual path and lets errors propagate.
"""
import logging
import math
from typing import Any, Dict, Optional

from pymongo.database import Database

from database import now, oid

logger = logging.getLogger(__name__)

COMPLETED = "completed"


def percentage(done: int, total: int) -> int:
    if total <= 0:
        return 0
    # half-up, so 12.5 -> 13
    return int(math.floor(done * 100 / total + 0.5))


class ProgressRollup:
    def __init__(self, db: Database):
        self.db = db

    # -- computation -------------------------------------------------------

    def milestone_percentage(self, milestone_id: Any) -> int:
        tasks = self.db["task"]
        total = tasks.count_documents({"milestone_id": oid(milestone_id)})
        done = tasks.count_documents({"milestone_id": oid(milestone_id), "status": COMPLETED})
        return percentage(done, total)

    def project_percentage(self, project_id: Any) -> int:
        pid = oid(project_id)
        milestones = self.db["milestone"].count_documents({"project_id": pid})
        milestones_done = self.db["milestone"].count_documents({"project_id": pid, "status": COMPLETED})
        tasks = self.db["task"].count_documents({"project_id": pid})
        tasks_done = self.db["task"].count_documents({"project_id": pid, "status": COMPLETED})
        return percentage(milestones_done + tasks_done, milestones + tasks)

    # -- persistence -------------------------------------------------------

    def recompute_project_progress(self, project_id: Any) -> int:
        value = self.project_percentage(project_id)
        self.db["project"].update_one({"_id": oid(project_id)}, {"$set": {"progress": value, "updated_at": now()}})
        logger.debug("Project %s progress -> %s%%", project_id, value)
        return value

    def recompute_milestone_progress(self, milestone_id: Any) -> int:
        """Persist the milestone percentage, then roll up to its project."""
        milestone = self.db["milestone"].find_one({"_id": oid(milestone_id)}, {"project_id": 1})
        value = self.milestone_percentage(milestone_id)
        if milestone is None:
            return value
        self.db["milestone"].update_one({"_id": milestone["_id"]}, {"$set": {"progress": value, "updated_at": now()}})
        logger.debug("Milestone %s progress -> %s%%", milestone_id, value)
        self.recompute_project_progress(milestone["project_id"])
        return value

    def recalculate_project(self, project_id: Any) -> Dict[str, Any]:
        milestones = {}
        for milestone in self.db["milestone"].find({"project_id": oid(project_id)}, {"_id": 1}):
            value = self.milestone_percentage(milestone["_id"])
            self.db["milestone"].update_one({"_id": milestone["_id"]}, {"$set": {"progress": value}})
            milestones[str(milestone["_id"])] = value
        progress = self.recompute_project_progress(project_id)
        logger.info("Recalculated project %s: %s%% over %d milestones", project_id, progress, len(milestones))
        return {"project_progress": progress, "milestones": milestones}

    # -- triggers ----------------------------------------------------------

    def _best_effort(self, what: str, func, *args) -> Optional[int]:
        try:
            return func(*args)
        except Exception:
            logger.exception("Progress recompute failed (%s)", what)
            return None

    def on_task_created(self, task: Dict[str, Any]) -> Optional[int]:
        return self._best_effort("task created", self.recompute_milestone_progress, task["milestone_id"])

    def on_task_deleted(self, task: Dict[str, Any]) -> Optional[int]:
        return self._best_effort("task deleted", self.recompute_milestone_progress, task["milestone_id"])

    def on_task_status_changed(self, task: Dict[str, Any], old_status: str, new_status: str) -> Optional[int]:
        if old_status == new_status or COMPLETED not in (old_status, new_status):
            return None
        return self._best_effort("task status", self.recompute_milestone_progress, task["milestone_id"])

    def on_task_moved(self, task: Dict[str, Any], old_milestone_id: Any) -> None:
        self._best_effort("task moved", self.recompute_milestone_progress, old_milestone_id)
        self._best_effort("task moved", self.recompute_milestone_progress, task["milestone_id"])

    def on_subtask_status_changed(self, subtask: Dict[str, Any], old_status: str, new_status: str) -> Optional[int]:
        if old_status == new_status or COMPLETED not in (old_status, new_status):
            return None
        task = self.db["task"].find_one({"_id": subtask["task_id"]}, {"milestone_id": 1})
        if not task:
            return None
        return self._best_effort("subtask status", self.recompute_milestone_progress, task["milestone_id"])

    def on_milestone_saved(self, milestone: Dict[str, Any]) -> Optional[int]:
        return self._best_effort("milestone saved", self.recompute_milestone_progress, milestone["_id"])

    def on_milestone_deleted(self, project_id: Any) -> Optional[int]:
        return self._best_effort("milestone deleted", self.recompute_project_progress, project_id)
