"""
Pydantic request schemas for the HTTP glue.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CategoryPayload(BaseModel):
    name: str = Field(..., max_length=100)
    color: Optional[str] = Field(default=None, max_length=32)


class StartEntryPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    category_id: int = Field(..., alias="categoryId")
    task_name: Optional[str] = Field(default=None, alias="taskName", max_length=500)
    scheduled_end_time: Optional[str] = Field(default=None, alias="scheduledEndTime")


class ManualEntryPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    category_id: int = Field(..., alias="categoryId")
    start_time: str = Field(..., alias="startTime")
    end_time: str = Field(..., alias="endTime")
    task_name: Optional[str] = Field(default=None, alias="taskName", max_length=500)


class UpdateEntryPayload(BaseModel):
    """Partial update: only the fields present in the body are applied."""

    model_config = ConfigDict(populate_by_name=True)

    category_id: Optional[int] = Field(default=None, alias="categoryId")
    task_name: Optional[str] = Field(default=None, alias="taskName", max_length=500)
    start_time: Optional[str] = Field(default=None, alias="startTime")
    end_time: Optional[str] = Field(default=None, alias="endTime")
    scheduled_end_time: Optional[str] = Field(default=None, alias="scheduledEndTime")

    def provided(self) -> dict:
        return {name: getattr(self, name) for name in self.model_fields_set}


class RenameTaskPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    old_task_name: str = Field(..., alias="oldTaskName")
    new_task_name: Optional[str] = Field(default=None, alias="newTaskName")
    category_id: Optional[int] = Field(default=None, alias="categoryId")


class MergeTasksPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_task_names: List[str] = Field(..., alias="sourceTaskNames")
    target_task_name: str = Field(..., alias="targetTaskName")
    target_category_id: Optional[int] = Field(default=None, alias="targetCategoryId")


class BulkUpdateTaskPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    old_task_name: str = Field(..., alias="oldTaskName")
    old_category_id: int = Field(..., alias="oldCategoryId")
    new_task_name: str = Field(..., alias="newTaskName")
    new_category_id: int = Field(..., alias="newCategoryId")


class SettingsPayload(BaseModel):
    timezone: Optional[str] = None


class AnonymousSessionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=128)
