"""Bulk subtask import from a Jira export.

The export groups subtasks under their parent issue; parents are matched to
existing tasks by DATACO number. ``preview`` is a dry run that reports every
problem at once; ``run`` applies stricter rules and creates the subtasks,
skipping any whose DATACO number already exists.
"""

from typing import Any, Dict, List, Optional, Union

from constants import (
    DATACO_PREFIX, IMPORT_DAY_TIMES, IMPORT_ISSUE_TYPES, IMPORT_PREVIEW_ISSUE_TYPES,
    IMPORT_SCENES, IMPORT_WEATHER,
)
from core.database import Database
from core.logging import get_logger
from models.database import Subtask, Task
from services.activity import ActivityLogger

logger = get_logger(__name__)

ALL_DAY_TIMES = ["day", "night", "dusk", "dawn"]


class ImportValidationError(ValueError):
    """The payload failed validation; nothing was written."""

    def __init__(self, message: str, errors: List[str]):
        super().__init__(message)
        self.errors = errors


class ParentTasksNotFoundError(LookupError):
    """Some parent issues do not match an existing task."""

    def __init__(self, errors: List[str]):
        super().__init__("Some parent tasks not found")
        self.errors = errors


def strip_dataco_prefix(value: str) -> str:
    value = str(value).strip()
    return value[len(DATACO_PREFIX):] if value.startswith(DATACO_PREFIX) else value


def map_day_time(value: Union[str, List[str], None]) -> List[str]:
    """Lists pass through; "Mixed" means every time of day."""
    if isinstance(value, list):
        return value
    if value == "Mixed":
        return list(ALL_DAY_TIMES)
    mapped = IMPORT_DAY_TIMES.get(value or "")
    return [mapped] if mapped else []


def map_weather(value: Any) -> str:
    if value == "Unknown":
        return "Mixed"
    return value if value in IMPORT_WEATHER else "Clear"


def map_scene(road_type: Any) -> str:
    return road_type if road_type in IMPORT_SCENES else "Mixed"


def _label(parent: Dict[str, Any], index: int) -> str:
    return parent.get("key") or f"at index {index}"


def _amount(value: Any):
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def validate_payload(data: Any, preview: bool = False) -> Dict[str, List[str]]:
    """Structural checks. Preview mode is looser and also returns warnings."""
    errors: List[str] = []
    warnings: List[str] = []
    if not isinstance(data, dict) or not isinstance(data.get("parent_issues"), list):
        return {"errors": ["Missing or invalid parent_issues array"], "warnings": warnings}

    issue_types = IMPORT_PREVIEW_ISSUE_TYPES if preview else IMPORT_ISSUE_TYPES
    for p_index, parent in enumerate(data["parent_issues"]):
        if not isinstance(parent, dict):
            errors.append(f"Parent issue at index {p_index} is not an object")
            continue
        label = _label(parent, p_index)
        if not parent.get("key"):
            errors.append(f"Parent issue at index {p_index} is missing a key (DATACO number)")
        if not isinstance(parent.get("subtasks"), list):
            errors.append(f"Parent issue {label} is missing subtasks array")
            continue

        for s_index, subtask in enumerate(parent["subtasks"]):
            if not isinstance(subtask, dict):
                errors.append(f"Subtask at index {s_index} of parent {label} is not an object")
                continue
            name = subtask.get("dataco_number") or f"at index {s_index}"
            if not subtask.get("dataco_number"):
                errors.append(f"Subtask at index {s_index} of parent {label} is missing dataco_number")
            if not subtask.get("summary"):
                errors.append(f"Subtask {name} is missing summary")
            issue_type = subtask.get("issue_type")
            if not issue_type:
                errors.append(f"Subtask {name} is missing issue_type")
            elif issue_type not in issue_types:
                errors.append(f"Subtask {name} has invalid issue_type: {issue_type}. "
                              f"Must be one of: {', '.join(sorted(issue_types))}")

            amount = _amount(subtask.get("amount_needed"))
            if subtask.get("amount_needed") is None:
                errors.append(f"Subtask {name} is missing amount_needed")
            elif amount is None or amount < 0 or (amount == 0 and not preview):
                errors.append(f"Subtask {name} has invalid amount_needed: {subtask.get('amount_needed')}")
            elif amount == 0:
                warnings.append(f"Subtask {name} has amount_needed 0")

            if preview:
                if subtask.get("weather") == "Unknown":
                    warnings.append(f"Subtask {name} has weather Unknown, it will be mapped to Mixed")
                if "/" in str(subtask.get("road_type") or ""):
                    warnings.append(f"Subtask {name} has a combined road_type: {subtask['road_type']}")

    return {"errors": errors, "warnings": warnings}


class BulkImportService:
    def __init__(self, database: Database, activity: ActivityLogger):
        self.database = database
        self.activity = activity

    async def resolve_parents(self, parents: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Map each parent key to its task; unknown keys become errors."""
        errors: List[str] = []
        task_map: Dict[str, Task] = {}
        for parent in parents:
            key = parent.get("key")
            if not key:
                continue
            task = await self.database.get_task_by_dataco_number(strip_dataco_prefix(key))
            if task is None:
                errors.append(f"Task with DATACO number {key} not found in the system")
            else:
                task_map[key] = task
        return {"errors": errors, "task_map": task_map}

    async def preview(self, data: Any) -> Dict[str, Any]:
        checked = validate_payload(data, preview=True)
        errors = list(checked["errors"])
        task_map: Dict[str, Task] = {}
        if isinstance(data, dict) and isinstance(data.get("parent_issues"), list):
            parents = [p for p in data["parent_issues"] if isinstance(p, dict)]
            resolved = await self.resolve_parents(parents)
            errors.extend(resolved["errors"])
            task_map = resolved["task_map"]
        return {
            "valid": not errors,
            "errors": errors,
            "warnings": checked["warnings"],
            "task_map": {key: {"id": task.id, "title": task.title} for key, task in task_map.items()},
        }

    async def run(self, data: Any, user_id: Optional[int] = None) -> Dict[str, Any]:
        """Create the subtasks. Raises before writing anything if validation fails."""
        checked = validate_payload(data)
        if checked["errors"]:
            raise ImportValidationError("Invalid import data structure", checked["errors"])
        resolved = await self.resolve_parents(data["parent_issues"])
        if resolved["errors"]:
            raise ParentTasksNotFoundError(resolved["errors"])

        actor = str(user_id) if user_id else None
        results: Dict[str, Any] = {
            "total_processed": 0,
            "successful": 0,
            "failed": 0,
            "errors": [],
            "task_results": [],
        }
        for parent in data["parent_issues"]:
            task = resolved["task_map"][parent["key"]]
            target_car = parent.get("target_car") or []
            if not isinstance(target_car, list):
                target_car = [target_car]
            added = 0

            for item in parent["subtasks"]:
                results["total_processed"] += 1
                dataco_number = strip_dataco_prefix(item["dataco_number"])
                if await self.database.get_subtasks_by_dataco_number(dataco_number):
                    results["failed"] += 1
                    results["errors"].append({
                        "task_key": parent["key"],
                        "subtask_key": item["dataco_number"],
                        "error": "Subtask with this DATACO number already exists",
                    })
                    continue
                try:
                    subtask = await self.database.create_subtask(Subtask(
                        task_id=task.id,
                        title=item["summary"],
                        subtitle="",
                        dataco_number=dataco_number,
                        type=item["issue_type"].lower(),
                        amount_needed=int(float(item["amount_needed"])),
                        labels=list(item.get("labels") or []),
                        target_car=list(target_car),
                        weather=map_weather(item.get("weather")),
                        scene=map_scene(item.get("road_type")),
                        day_time=map_day_time(item.get("day_time")),
                    ))
                except Exception as e:
                    logger.error("Subtask import failed", task_key=parent["key"],
                                 subtask_key=item["dataco_number"], error=str(e))
                    results["failed"] += 1
                    results["errors"].append({
                        "task_key": parent["key"], "subtask_key": item["dataco_number"], "error": str(e),
                    })
                    continue
                await self.activity.log_subtask_activity("created", subtask.id, subtask.title, task.id,
                                                         user_id=actor)
                results["successful"] += 1
                added += 1

            await self.update_task_amount(task.id)
            results["task_results"].append({"task_key": parent["key"], "subtasks_added": added})

        logger.info("Bulk import completed", total_processed=results["total_processed"],
                    successful=results["successful"], failed=results["failed"], user_id=user_id)
        return results

    async def update_task_amount(self, task_id: int) -> int:
        """Set the task's amount_needed to the sum over its subtasks."""
        subtasks = await self.database.get_subtasks_by_task(task_id)
        total = sum(s.amount_needed or 0 for s in subtasks)
        await self.database.update_task(task_id, {"amount_needed": total})
        return total
