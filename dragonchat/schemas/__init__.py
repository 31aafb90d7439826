from .chat import (
    AttachmentRef,
    ChatMessageIn,
    ChatRequest,
    ModelInfo,
    ProviderInfo,
    ProvidersResponse,
)
from .session import (
    DeleteResponse,
    MessageRead,
    Pagination,
    SessionCreate,
    SessionListResponse,
    SessionRead,
    SessionRename,
    SessionRenamed,
    SessionSummary,
)

__all__ = [
    "AttachmentRef",
    "ChatMessageIn",
    "ChatRequest",
    "DeleteResponse",
    "MessageRead",
    "ModelInfo",
    "Pagination",
    "ProviderInfo",
    "ProvidersResponse",
    "SessionCreate",
    "SessionListResponse",
    "SessionRead",
    "SessionRename",
    "SessionRenamed",
    "SessionSummary",
]
