"""Pydantic schemas for bulk messaging."""

from uuid import UUID

from pydantic import BaseModel, Field


class BulkSmsRequest(BaseModel):
    subject_ids: list[UUID] = Field(..., min_length=1)
    message: str = Field(..., min_length=1, max_length=1600)
    current_user: str | None = None


class BulkEmailRequest(BaseModel):
    subject_ids: list[UUID] = Field(..., min_length=1)
    subject: str = Field(..., min_length=1, max_length=255)
    body: str = Field(..., min_length=1)
    current_user: str | None = None


class BulkSendItem(BaseModel):
    id: str
    name: str
    status: str
    reason: str | None = None
    note_logged: bool = False


class BulkSendResponse(BaseModel):
    sent: int
    skipped: int
    failed: int
    results: list[BulkSendItem]
