from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SessionCreate(BaseModel):
    title: Optional[str] = Field(default=None, max_length=200)
    model: Optional[str] = Field(default=None, max_length=255)


class SessionRename(BaseModel):
    title: Optional[str] = None


class MessageRead(_CamelModel):
    id: int
    role: str
    content: str
    attachments: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(..., serialization_alias="createdAt")


class SessionSummary(_CamelModel):
    id: str
    title: str
    model: str
    created_at: datetime = Field(..., serialization_alias="createdAt")
    updated_at: datetime = Field(..., serialization_alias="updatedAt")


class SessionRead(SessionSummary):
    messages: List[MessageRead] = Field(default_factory=list)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class SessionListResponse(BaseModel):
    sessions: List[SessionSummary] = Field(default_factory=list)
    pagination: Pagination


class SessionRenamed(_CamelModel):
    id: str
    title: str
    updated_at: datetime = Field(..., serialization_alias="updatedAt")


class DeleteResponse(BaseModel):
    success: bool = True


__all__ = [
    "DeleteResponse",
    "MessageRead",
    "Pagination",
    "SessionCreate",
    "SessionListResponse",
    "SessionRead",
    "SessionRename",
    "SessionRenamed",
    "SessionSummary",
]
