from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Literal

class CreateSnapshotRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    notes: Optional[str] = Field(default=None, max_length=500)
    # accepted for older clients; the stored flag follows the calendar
    is_month_end: bool = Field(default=False, alias="isMonthEnd")
    is_manual: bool = Field(default=False, alias="isManual")
    created_by: Optional[str] = Field(default=None, alias="createdBy", max_length=100)

class SaveResultModel(BaseModel):
    id: int
    result: Literal['created', 'updated']

class CreateSnapshotResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    success: bool
    message: str
    result: SaveResultModel
    periode: str
    date: str
    is_manual: bool = Field(alias="isManual")

class DeleteSnapshotResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    success: bool
    message: str
    deleted_rows: int = Field(alias="deletedRows")
