from .channel import Channel, StdioChannel, WebSocketChannel
from .errors import (
    AcpError,
    AcpProtocolError,
    AcpTimeoutError,
    AcpTransportError,
)
from .models import (
    ChangeInfo,
    EditLocation,
    InitializeResult,
    NewSessionResult,
    Observer,
    Reference,
    RefactorResult,
    RequestContext,
)
from .pool import SessionPool, SessionRegistry
from .process import AgentProcess
from .refactor import RefactorOrchestrator, locations_from_references, supports_parallel
from .session import Session
from .transport import Transport
from .workspace import FileWorkspace, Workspace

__all__ = [
    "AcpError",
    "AcpProtocolError",
    "AcpTimeoutError",
    "AcpTransportError",
    "AgentProcess",
    "ChangeInfo",
    "Channel",
    "EditLocation",
    "FileWorkspace",
    "InitializeResult",
    "NewSessionResult",
    "Observer",
    "Reference",
    "RefactorOrchestrator",
    "RefactorResult",
    "RequestContext",
    "Session",
    "SessionPool",
    "SessionRegistry",
    "StdioChannel",
    "Transport",
    "WebSocketChannel",
    "Workspace",
    "locations_from_references",
    "supports_parallel",
]
