"""
Pydantic models for the transaction extraction and conversation API.
Python 3.9 compatible - uses typing.List, typing.Dict, typing.Optional
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class EventKind(str, Enum):
    START = "START"
    UTTERANCE = "UTTERANCE"
    SILENCE_TIMEOUT = "SILENCE_TIMEOUT"
    SESSION_ENDED = "SESSION_ENDED"
    USER_CLOSED = "USER_CLOSED"
    RETRY = "RETRY"
    SPEECH_ERROR = "SPEECH_ERROR"


class ContextPayload(BaseModel):
    """Client-held context for the stateless /extract endpoint."""
    type: Optional[str] = None
    partialData: Dict[str, str] = Field(default_factory=dict)
    missingFields: List[str] = Field(default_factory=list)
    message: Optional[str] = None  # Last prompt the user was asked


class ExtractRequest(BaseModel):
    text: str
    context: Optional[ContextPayload] = None


class IncompleteExtraction(BaseModel):
    incomplete: bool = True
    type: str
    partialData: Dict[str, str]
    missingFields: List[str]
    message: str


class ErrorResponse(BaseModel):
    error: str


# ============================================================
# Conversation (server-held dialogue state machine)
# ============================================================

class ConversationEventRequest(BaseModel):
    conversationId: str
    event: EventKind
    text: Optional[str] = None
    final: bool = True
    # Speech recognizer error code for SPEECH_ERROR (e.g. "no-speech")
    errorCode: Optional[str] = None
    # Idempotency key to prevent duplicate events (e.g., double-tap confirm)
    idempotencyKey: Optional[str] = None


class ErrorInfo(BaseModel):
    kind: str
    message: str
    retryable: bool


class ConversationSnapshot(BaseModel):
    conversationId: str
    state: str
    transactionType: Optional[str] = None
    fields: Dict[str, str] = Field(default_factory=dict)
    missingFields: List[str] = Field(default_factory=list)
    assistantMessages: List[str] = Field(default_factory=list)
    interimText: Optional[str] = None
    error: Optional[ErrorInfo] = None
    payment: Optional[Dict[str, str]] = None
