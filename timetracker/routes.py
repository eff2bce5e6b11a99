"""
HTTP routes mapping requests onto the time tracking service.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from timetracker.dependencies import get_current_user_id, get_service
from timetracker.entities import UNSET
from timetracker.schemas import (
    AnonymousSessionPayload,
    BulkUpdateTaskPayload,
    CategoryPayload,
    ManualEntryPayload,
    MergeTasksPayload,
    RenameTaskPayload,
    SettingsPayload,
    StartEntryPayload,
    UpdateEntryPayload,
)
from timetracker.service import TimeTrackingService

router = APIRouter()


# Sessions


@router.post("/session/anonymous")
def anonymous_session(
    payload: AnonymousSessionPayload,
    service: TimeTrackingService = Depends(get_service),
):
    user = service.get_or_create_anonymous_user(payload.session_id)
    return {"user": user.as_dict()}


# Analytics


@router.get("/analytics")
def get_analytics(
    start: str = Query(...),
    end: str = Query(...),
    timezone_offset: int = Query(0, alias="timezoneOffset"),
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    return service.get_analytics(user_id, start, end, timezone_offset).as_dict()


@router.get("/analytics/task-names")
def list_task_names(
    start: str = Query(...),
    end: str = Query(...),
    page: int = Query(1),
    page_size: int = Query(20, alias="pageSize"),
    sort_by: str = Query("time", alias="sortBy"),
    search: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    result = service.list_task_names(
        user_id,
        start,
        end,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        search=search,
        category_name=category,
    )
    return result.as_dict()


@router.get("/analytics/category/{name}")
def category_drilldown(
    name: str,
    start: str = Query(...),
    end: str = Query(...),
    page: int = Query(1),
    page_size: int = Query(20, alias="pageSize"),
    sort_by: str = Query("time", alias="sortBy"),
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    result = service.get_category_drilldown(
        user_id, name, start, end, page=page, page_size=page_size, sort_by=sort_by
    )
    return result.as_dict()


# Categories


@router.get("/categories")
def list_categories(
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    return [category.as_dict() for category in service.list_categories(user_id)]


@router.post("/categories", status_code=201)
def create_category(
    payload: CategoryPayload,
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    return service.create_category(user_id, payload.name, payload.color).as_dict()


@router.put("/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryPayload,
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    return service.update_category(
        user_id, category_id, payload.name, payload.color
    ).as_dict()


@router.delete("/categories/{category_id}")
def delete_category(
    category_id: int,
    replacement_category_id: Optional[int] = Query(None, alias="replacementCategoryId"),
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    reassigned = service.delete_category(user_id, category_id, replacement_category_id)
    return {"deleted": True, "reassignedCount": reassigned}


# Time entries


@router.get("/time-entries")
def list_time_entries(
    limit: int = Query(100),
    offset: int = Query(0),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    category_id: Optional[int] = Query(None, alias="categoryId"),
    search: Optional[str] = Query(None),
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    entries = service.list_entries(
        user_id,
        limit=limit,
        offset=offset,
        start_date=start_date,
        end_date=end_date,
        category_id=category_id,
        search=search,
    )
    return [entry.as_dict() for entry in entries]


@router.get("/time-entries/active")
def get_active_entry(
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    entry = service.get_active_entry(user_id)
    return entry.as_dict() if entry else None


@router.get("/time-entries/suggestions")
def task_suggestions(
    category_id: Optional[int] = Query(None, alias="categoryId"),
    q: str = Query(""),
    limit: int = Query(10),
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    suggestions = service.task_suggestions(user_id, category_id, q, limit)
    return [item.as_dict() for item in suggestions]


@router.post("/time-entries/start", status_code=201)
def start_entry(
    payload: StartEntryPayload,
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    entry = service.start_entry(
        user_id, payload.category_id, payload.task_name, payload.scheduled_end_time
    )
    return entry.as_dict()


@router.post("/time-entries/{entry_id}/stop")
def stop_entry(
    entry_id: int,
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    return service.stop_entry(user_id, entry_id).as_dict()


@router.post("/time-entries", status_code=201)
def create_manual_entry(
    payload: ManualEntryPayload,
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    entry = service.create_manual_entry(
        user_id,
        payload.category_id,
        payload.start_time,
        payload.end_time,
        payload.task_name,
    )
    return entry.as_dict()


@router.put("/time-entries/task-names/rename")
def rename_task_name(
    payload: RenameTaskPayload,
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    updated = service.rename_task_name(
        user_id,
        payload.old_task_name,
        new_task_name=payload.new_task_name,
        category_id=payload.category_id,
    )
    return {"updatedCount": updated}


@router.post("/time-entries/task-names/merge")
def merge_task_names(
    payload: MergeTasksPayload,
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    updated = service.merge_task_names(
        user_id,
        payload.source_task_names,
        payload.target_task_name,
        payload.target_category_id,
    )
    return {"entriesUpdated": updated}


@router.put("/time-entries/task-names/bulk-update")
def bulk_update_task_name(
    payload: BulkUpdateTaskPayload,
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    updated = service.bulk_update_task_name(
        user_id,
        payload.old_task_name,
        payload.old_category_id,
        payload.new_task_name,
        payload.new_category_id,
    )
    return {"updatedCount": updated}


@router.delete("/time-entries/by-date")
def delete_entries_by_date(
    date: str = Query(...),
    timezone_offset: int = Query(0, alias="timezoneOffset"),
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    deleted = service.delete_entries_by_date(user_id, date, timezone_offset)
    return {"deletedCount": deleted}


@router.put("/time-entries/{entry_id}")
def update_entry(
    entry_id: int,
    payload: UpdateEntryPayload,
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    fields = payload.provided()
    entry = service.update_entry(
        user_id,
        entry_id,
        category_id=fields.get("category_id", UNSET),
        task_name=fields.get("task_name", UNSET),
        start_time=fields.get("start_time", UNSET),
        end_time=fields.get("end_time", UNSET),
        scheduled_end_time=fields.get("scheduled_end_time", UNSET),
    )
    return entry.as_dict()


@router.delete("/time-entries/{entry_id}")
def delete_entry(
    entry_id: int,
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    service.delete_entry(user_id, entry_id)
    return {"deleted": True}


# Export and settings


@router.get("/export")
def export_entries(
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    return {"rows": [row.as_dict() for row in service.export_rows(user_id)]}


@router.get("/settings")
def get_settings(
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    return service.get_settings(user_id)


@router.put("/settings")
def update_settings(
    payload: SettingsPayload,
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    settings = service.update_settings(user_id, payload.timezone)
    return {"timezone": settings.timezone}


@router.post("/settings/reset")
def reset_data(
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    removed = service.reset_user_data(user_id)
    return {"message": "Data reset successfully", "deletedEntries": removed}


@router.delete("/account")
def delete_account(
    user_id: int = Depends(get_current_user_id),
    service: TimeTrackingService = Depends(get_service),
):
    service.delete_account(user_id)
    return {"deleted": True}
