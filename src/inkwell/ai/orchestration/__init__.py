"""Conversation loop, tool dispatch and approval handling."""

from .approval import REJECTION_MESSAGE, PendingChangeManager, UnknownChangeError
from .dispatcher import DispatchListener, DispatchOutcome, ToolDispatcher
from .document import DocumentContext, DocumentSink, TextFileDocumentSink, read_markdown_article
from .loop import ChatController, ConversationLoop, LoopConfig
from .permissions import ApprovalPolicy
from .persistence import InMemoryMessageStore, MessageStore, SafeMessageStore
from .session import ChatSession
from .turn import TurnAccumulator

# Core types
from .types import (
    ChangeOperation,
    ChangeTarget,
    ExecutionLocation,
    InvalidStatusTransition,
    LoopState,
    Message,
    MessageStatus,
    PausedLoopState,
    PendingChange,
    Role,
    ToolCallRecord,
    ToolCallStatus,
)

__all__ = [
    "REJECTION_MESSAGE",
    "PendingChangeManager",
    "UnknownChangeError",
    "DispatchListener",
    "DispatchOutcome",
    "ToolDispatcher",
    "DocumentContext",
    "DocumentSink",
    "TextFileDocumentSink",
    "read_markdown_article",
    "ChatController",
    "ConversationLoop",
    "LoopConfig",
    "ApprovalPolicy",
    "InMemoryMessageStore",
    "MessageStore",
    "SafeMessageStore",
    "ChatSession",
    "TurnAccumulator",
    "ChangeOperation",
    "ChangeTarget",
    "ExecutionLocation",
    "InvalidStatusTransition",
    "LoopState",
    "Message",
    "MessageStatus",
    "PausedLoopState",
    "PendingChange",
    "Role",
    "ToolCallRecord",
    "ToolCallStatus",
]
