"""Task and subtask routes. Hidden items are only visible to data managers."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field, field_validator

from constants import CREATE_TASKS, DELETE_TASKS, EDIT_TASKS, TASK_TYPES
from core.cache import CacheManager
from core.container import container
from core.database import Database
from core.logging import get_logger
from models.auth import AppUser
from models.database import Subtask, Task
from routers.deps import (
    get_activity, get_cache, get_database, get_optional_user, is_data_manager, require_admin, require_permission,
)
from services.activity import ActivityLogger
from services.analytics import SUMMARY_KEY_PATTERN
from services.bulk_import import BulkImportService, ImportValidationError, ParentTasksNotFoundError

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["tasks"])


def _check_types(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is not None:
        unknown = set(values) - TASK_TYPES
        if unknown:
            raise ValueError(f"Invalid task type: {', '.join(sorted(unknown))}")
    return values


class TaskCreate(BaseModel):
    project_id: int
    title: str = Field(min_length=1, max_length=255)
    subtitle: Optional[str] = Field(default=None, max_length=255)
    dataco_number: str = Field(min_length=1, max_length=100)
    description: Optional[Dict[str, Any]] = None
    type: List[str] = Field(default_factory=list)
    locations: List[str] = Field(default_factory=list)
    target_car: List[str] = Field(default_factory=list)
    day_time: List[str] = Field(default_factory=list)
    amount_needed: Optional[int] = Field(default=None, ge=0)
    lidar: bool = False
    priority: int = Field(default=0, ge=0, le=10)
    is_visible: bool = True

    @field_validator("type")
    @classmethod
    def validate_types(cls, v):
        return _check_types(v)


class TaskPatch(BaseModel):
    project_id: Optional[int] = None
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    subtitle: Optional[str] = Field(default=None, max_length=255)
    dataco_number: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[Dict[str, Any]] = None
    type: Optional[List[str]] = None
    locations: Optional[List[str]] = None
    target_car: Optional[List[str]] = None
    day_time: Optional[List[str]] = None
    amount_needed: Optional[int] = Field(default=None, ge=0)
    lidar: Optional[bool] = None
    priority: Optional[int] = Field(default=None, ge=0, le=10)
    is_visible: Optional[bool] = None

    @field_validator("type")
    @classmethod
    def validate_types(cls, v):
        return _check_types(v)


class VisibilityRequest(BaseModel):
    is_visible: bool


class SubtaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    subtitle: Optional[str] = Field(default=None, max_length=255)
    image: Optional[str] = None
    dataco_number: str = Field(min_length=1, max_length=100)
    type: str = "events"
    amount_needed: Optional[int] = Field(default=None, ge=0)
    labels: List[str] = Field(default_factory=list)
    target_car: List[str] = Field(default_factory=list)
    weather: Optional[str] = Field(default=None, max_length=50)
    scene: Optional[str] = Field(default=None, max_length=50)
    day_time: List[str] = Field(default_factory=list)
    is_visible: bool = True

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        if v not in TASK_TYPES:
            raise ValueError(f"Invalid subtask type: {v}")
        return v


class SubtaskPatch(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    subtitle: Optional[str] = Field(default=None, max_length=255)
    image: Optional[str] = None
    dataco_number: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[str] = None
    amount_needed: Optional[int] = Field(default=None, ge=0)
    labels: Optional[List[str]] = None
    target_car: Optional[List[str]] = None
    weather: Optional[str] = Field(default=None, max_length=50)
    scene: Optional[str] = Field(default=None, max_length=50)
    day_time: Optional[List[str]] = None
    is_visible: Optional[bool] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        if v is not None and v not in TASK_TYPES:
            raise ValueError(f"Invalid subtask type: {v}")
        return v


async def _visible_task(database: Database, task_id: int, user: Optional[AppUser]) -> Task:
    task = await database.get_task(task_id)
    if task is None or (not task.is_visible and not is_data_manager(user)):
        raise HTTPException(status_code=404, detail="Task not found")
    return task


# ============================================================================
# Tasks
# ============================================================================

@router.get("/tasks")
async def list_tasks(
    project_id: Optional[int] = Query(default=None),
    user: Optional[AppUser] = Depends(get_optional_user),
    database: Database = Depends(get_database),
):
    tasks = await database.get_all_tasks(include_hidden=is_data_manager(user), project_id=project_id)
    return {"success": True, "tasks": [t.model_dump(mode="json") for t in tasks], "count": len(tasks)}


@router.get("/tasks/{task_id}")
async def get_task(
    task_id: int,
    user: Optional[AppUser] = Depends(get_optional_user),
    database: Database = Depends(get_database),
    activity: ActivityLogger = Depends(get_activity),
):
    task = await _visible_task(database, task_id, user)
    subtasks = await database.get_subtasks_by_task(task_id, include_hidden=is_data_manager(user))
    if user is None:
        await activity.log_task_activity("viewed", task.id, task.title, user_type="visitor")
    return {
        "success": True,
        "task": task.model_dump(mode="json"),
        "subtasks": [s.model_dump(mode="json") for s in subtasks],
    }


@router.post("/tasks", status_code=201)
async def create_task(
    request: TaskCreate,
    user: AppUser = Depends(require_permission(CREATE_TASKS)),
    database: Database = Depends(get_database),
    activity: ActivityLogger = Depends(get_activity),
    cache: CacheManager = Depends(get_cache),
):
    if await database.get_project(request.project_id) is None:
        raise HTTPException(status_code=400, detail="Project does not exist")
    task = await database.create_task(Task(**request.model_dump()))
    await activity.log_task_activity("created", task.id, task.title, user_id=str(user.id),
                                     details={"project_id": task.project_id})
    cache.invalidate_pattern(SUMMARY_KEY_PATTERN)
    return {"success": True, "task": task.model_dump(mode="json")}


@router.put("/tasks/{task_id}")
async def update_task(
    task_id: int,
    request: TaskPatch,
    user: AppUser = Depends(require_permission(EDIT_TASKS)),
    database: Database = Depends(get_database),
    activity: ActivityLogger = Depends(get_activity),
    cache: CacheManager = Depends(get_cache),
):
    updates = request.model_dump(exclude_unset=True)
    if "project_id" in updates and await database.get_project(updates["project_id"]) is None:
        raise HTTPException(status_code=400, detail="Project does not exist")
    task = await database.update_task(task_id, updates)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    await activity.log_task_activity("updated", task.id, task.title, user_id=str(user.id),
                                     details={"fields": sorted(updates)})
    cache.invalidate_pattern(SUMMARY_KEY_PATTERN)
    return {"success": True, "task": task.model_dump(mode="json")}


@router.put("/tasks/{task_id}/visibility")
async def set_task_visibility(
    task_id: int,
    request: VisibilityRequest,
    user: AppUser = Depends(require_permission(EDIT_TASKS)),
    database: Database = Depends(get_database),
    activity: ActivityLogger = Depends(get_activity),
    cache: CacheManager = Depends(get_cache),
):
    task = await database.update_task(task_id, {"is_visible": request.is_visible})
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    await activity.log_task_activity("visibility_changed", task.id, task.title, user_id=str(user.id),
                                     details={"is_visible": request.is_visible})
    cache.invalidate_pattern(SUMMARY_KEY_PATTERN)
    return {"success": True, "task": task.model_dump(mode="json")}


@router.delete("/tasks/{task_id}")
async def delete_task(
    task_id: int,
    user: AppUser = Depends(require_permission(DELETE_TASKS)),
    database: Database = Depends(get_database),
    activity: ActivityLogger = Depends(get_activity),
    cache: CacheManager = Depends(get_cache),
):
    task = await database.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    await database.delete_task(task_id)
    await activity.log_task_activity("deleted", task_id, task.title, user_id=str(user.id))
    cache.invalidate_pattern(SUMMARY_KEY_PATTERN)
    return {"success": True}


# ============================================================================
# Subtasks
# ============================================================================

@router.get("/tasks/{task_id}/subtasks")
async def list_subtasks(
    task_id: int,
    user: Optional[AppUser] = Depends(get_optional_user),
    database: Database = Depends(get_database),
):
    await _visible_task(database, task_id, user)
    subtasks = await database.get_subtasks_by_task(task_id, include_hidden=is_data_manager(user))
    return {"success": True, "subtasks": [s.model_dump(mode="json") for s in subtasks], "count": len(subtasks)}


@router.post("/tasks/{task_id}/subtasks", status_code=201)
async def create_subtask(
    task_id: int,
    request: SubtaskCreate,
    user: AppUser = Depends(require_permission(CREATE_TASKS)),
    database: Database = Depends(get_database),
    activity: ActivityLogger = Depends(get_activity),
    cache: CacheManager = Depends(get_cache),
):
    if await database.get_task(task_id) is None:
        raise HTTPException(status_code=404, detail="Task not found")
    subtask = await database.create_subtask(Subtask(task_id=task_id, **request.model_dump()))
    await activity.log_subtask_activity("created", subtask.id, subtask.title, task_id, user_id=str(user.id))
    cache.invalidate_pattern(SUMMARY_KEY_PATTERN)
    return {"success": True, "subtask": subtask.model_dump(mode="json")}


@router.get("/subtasks/{subtask_id}")
async def get_subtask(
    subtask_id: int,
    user: Optional[AppUser] = Depends(get_optional_user),
    database: Database = Depends(get_database),
):
    subtask = await database.get_subtask(subtask_id)
    if subtask is None or (not subtask.is_visible and not is_data_manager(user)):
        raise HTTPException(status_code=404, detail="Subtask not found")
    return {"success": True, "subtask": subtask.model_dump(mode="json")}


@router.put("/subtasks/{subtask_id}")
async def update_subtask(
    subtask_id: int,
    request: SubtaskPatch,
    user: AppUser = Depends(require_permission(EDIT_TASKS)),
    database: Database = Depends(get_database),
    activity: ActivityLogger = Depends(get_activity),
):
    updates = request.model_dump(exclude_unset=True)
    subtask = await database.update_subtask(subtask_id, updates)
    if subtask is None:
        raise HTTPException(status_code=404, detail="Subtask not found")
    await activity.log_subtask_activity("updated", subtask.id, subtask.title, subtask.task_id,
                                        user_id=str(user.id), details={"fields": sorted(updates)})
    return {"success": True, "subtask": subtask.model_dump(mode="json")}


@router.delete("/subtasks/{subtask_id}")
async def delete_subtask(
    subtask_id: int,
    user: AppUser = Depends(require_permission(DELETE_TASKS)),
    database: Database = Depends(get_database),
    activity: ActivityLogger = Depends(get_activity),
    cache: CacheManager = Depends(get_cache),
):
    subtask = await database.get_subtask(subtask_id)
    if subtask is None:
        raise HTTPException(status_code=404, detail="Subtask not found")
    await database.delete_subtask(subtask_id)
    await activity.log_subtask_activity("deleted", subtask_id, subtask.title, subtask.task_id, user_id=str(user.id))
    cache.invalidate_pattern(SUMMARY_KEY_PATTERN)
    return {"success": True}


# ============================================================================
# Bulk import (Jira export)
# ============================================================================

def get_bulk_import_service() -> BulkImportService:
    return container.bulk_import_service()


@router.post("/tasks/bulk-import/validate")
async def validate_bulk_import(
    payload: Any = Body(...),
    user: AppUser = Depends(require_permission(CREATE_TASKS)),
    service: BulkImportService = Depends(get_bulk_import_service),
):
    """Dry run: every structural problem, missing parent and warning in one report."""
    report = await service.preview(payload)
    return {"success": True, **report}


@router.post("/tasks/bulk-import")
async def run_bulk_import(
    payload: Any = Body(...),
    user: AppUser = Depends(require_admin),
    service: BulkImportService = Depends(get_bulk_import_service),
    cache: CacheManager = Depends(get_cache),
):
    try:
        results = await service.run(payload, user_id=user.id)
    except ImportValidationError as e:
        return _import_error(400, str(e), e.errors)
    except ParentTasksNotFoundError as e:
        return _import_error(404, str(e), e.errors)
    if results["successful"]:
        cache.invalidate_pattern(SUMMARY_KEY_PATTERN)
    return {"success": True, "message": "Bulk import completed", "results": results}


def _import_error(status_code: int, message: str, errors: List[str]) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code, content={
        "success": False, "error": message, "validation_errors": errors,
    })
