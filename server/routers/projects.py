"""Project routes. Reads are public, writes need project permissions."""

from collections import Counter
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from constants import CREATE_PROJECTS, DELETE_PROJECTS, EDIT_PROJECTS
from core.cache import CacheManager
from core.database import Database
from core.logging import get_logger
from models.auth import AppUser
from models.database import Project
from routers.deps import get_activity, get_cache, get_database, get_optional_user, is_data_manager, require_permission
from services.activity import ActivityLogger
from services.analytics import SUMMARY_KEY_PATTERN

logger = get_logger(__name__)
router = APIRouter(prefix="/api/projects", tags=["projects"])


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)


class ProjectPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)


@router.get("")
async def list_projects(
    user: Optional[AppUser] = Depends(get_optional_user),
    database: Database = Depends(get_database),
):
    projects = await database.get_all_projects()
    tasks = await database.get_all_tasks(include_hidden=is_data_manager(user))
    counts = Counter(t.project_id for t in tasks)
    return {
        "success": True,
        "projects": [{**p.model_dump(mode="json"), "task_count": counts.get(p.id, 0)} for p in projects],
        "count": len(projects),
    }


@router.get("/{project_id}")
async def get_project(
    project_id: int,
    user: Optional[AppUser] = Depends(get_optional_user),
    database: Database = Depends(get_database),
):
    project = await database.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    tasks = await database.get_all_tasks(include_hidden=is_data_manager(user), project_id=project_id)
    return {
        "success": True,
        "project": project.model_dump(mode="json"),
        "tasks": [t.model_dump(mode="json") for t in tasks],
    }


@router.post("", status_code=201)
async def create_project(
    request: ProjectCreate,
    user: AppUser = Depends(require_permission(CREATE_PROJECTS)),
    database: Database = Depends(get_database),
    activity: ActivityLogger = Depends(get_activity),
    cache: CacheManager = Depends(get_cache),
):
    name = request.name.strip()
    if await database.get_project_by_name(name):
        raise HTTPException(status_code=400, detail="Project name already exists")

    project = await database.create_project(Project(name=name, description=request.description))
    await activity.log_project_activity("created", project.id, project.name, user_id=str(user.id))
    cache.invalidate_pattern(SUMMARY_KEY_PATTERN)
    return {"success": True, "project": project.model_dump(mode="json")}


@router.put("/{project_id}")
async def update_project(
    project_id: int,
    request: ProjectPatch,
    user: AppUser = Depends(require_permission(EDIT_PROJECTS)),
    database: Database = Depends(get_database),
    activity: ActivityLogger = Depends(get_activity),
    cache: CacheManager = Depends(get_cache),
):
    updates = request.model_dump(exclude_unset=True)
    if updates.get("name"):
        updates["name"] = updates["name"].strip()
        other = await database.get_project_by_name(updates["name"])
        if other and other.id != project_id:
            raise HTTPException(status_code=400, detail="Project name already exists")

    project = await database.update_project(project_id, updates)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    await activity.log_project_activity("updated", project.id, project.name, user_id=str(user.id),
                                        details={"fields": sorted(updates)})
    cache.invalidate_pattern(SUMMARY_KEY_PATTERN)
    return {"success": True, "project": project.model_dump(mode="json")}


@router.delete("/{project_id}")
async def delete_project(
    project_id: int,
    user: AppUser = Depends(require_permission(DELETE_PROJECTS)),
    database: Database = Depends(get_database),
    activity: ActivityLogger = Depends(get_activity),
    cache: CacheManager = Depends(get_cache),
):
    project = await database.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    await database.delete_project(project_id)
    await activity.log_project_activity("deleted", project_id, project.name, user_id=str(user.id))
    cache.invalidate_pattern(SUMMARY_KEY_PATTERN)
    logger.info("Project deleted", project_id=project_id, actor_id=user.id)
    return {"success": True}
