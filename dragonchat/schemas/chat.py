from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AttachmentRef(BaseModel):
    """
    Reference to a file held by the storage service. Field names follow the
    upload response so clients can forward it untouched.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    file_id: str = Field(..., alias="fileId", min_length=1)
    file_name: str = Field("", alias="fileName")
    file_type: str = Field("application/octet-stream", alias="fileType")
    file_size: int = Field(0, alias="fileSize", ge=0)
    gcs_url: Optional[str] = Field(default=None, alias="gcsUrl")
    download_url: Optional[str] = Field(default=None, alias="downloadUrl")

    def to_storage_dict(self) -> dict:
        return self.model_dump(by_alias=True)


class ChatMessageIn(BaseModel):
    # role/content are checked by the orchestrator so the error text is ours.
    model_config = ConfigDict(extra="ignore")

    role: Optional[str] = None
    content: Optional[str] = None
    attachments: List[AttachmentRef] = Field(default_factory=list)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: Optional[List[ChatMessageIn]] = None
    model: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class ModelInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    key: str = Field(..., description="provider/model composite key accepted by POST /api/chat")
    default: bool = False
    vision: bool = False
    max_context: Optional[int] = Field(default=None, serialization_alias="maxContext")


class ProviderInfo(BaseModel):
    id: str
    name: str
    models: List[ModelInfo] = Field(default_factory=list)


class ProvidersResponse(BaseModel):
    providers: List[ProviderInfo] = Field(default_factory=list)


__all__ = [
    "AttachmentRef",
    "ChatMessageIn",
    "ChatRequest",
    "ModelInfo",
    "ProviderInfo",
    "ProvidersResponse",
]
