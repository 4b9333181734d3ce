"""
Voice Transaction Backend - FastAPI Application

Two ways in:
- POST /extract: stateless extraction, the client holds the context
- /v2/conversation/*: server-held dialogue state machine per conversation

Rule-based extraction always runs first; the OpenAI-backed semantic
extractor is consulted only when the rules cannot classify the utterance.

Python 3.9 compatible.
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from engine.draft import ConversationContext
from engine.errors import (
    EXTRACTOR_UNAVAILABLE_MESSAGE,
    DialogueError,
    ErrorKind,
)
from engine.extract import build_draft, extract_transaction
from engine.merge import accept_extraction
from engine.planner import select_prompt
from transactions.specs import FIELD_NAMES, TransactionType

from .config import get_config, load_environment
from .conversation_service import (
    get_conversation_service,
    get_semantic_extractor,
)
from .models import (
    ContextPayload,
    ConversationEventRequest,
    ConversationSnapshot,
    ErrorResponse,
    ExtractRequest,
    IncompleteExtraction,
)
from .rate_limit import RATE_LIMIT_MESSAGE, client_address, get_rate_limiter

APP_VERSION = "1.0.0"

load_environment()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if get_config().debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# HTTP status per error kind on /extract
ERROR_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.UNCLASSIFIABLE: 400,
    ErrorKind.INVALID_FORMAT: 400,
    ErrorKind.NO_SPEECH_DETECTED: 400,
    ErrorKind.DISABLED_TYPE: 403,
    ErrorKind.EXTRACTOR_UNAVAILABLE: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - log configuration and warm up services."""
    config = get_config()

    logger.info("=" * 60)
    logger.info("Initializing Voice Transaction Backend")
    logger.info("=" * 60)

    config.log_summary()
    get_conversation_service()
    logger.info("Conversation service initialized successfully")

    logger.info("=" * 60)

    yield

    # Shutdown
    await get_conversation_service().shutdown()
    logger.info("Shutting down Voice Transaction Backend")


app = FastAPI(
    title="Voice Transaction Backend",
    description="Slot-filling dialogue for spoken Indonesian financial transactions",
    version=APP_VERSION,
    lifespan=lifespan,
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": APP_VERSION}


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _context_from_payload(payload: Optional[ContextPayload]) -> Optional[ConversationContext]:
    """
    Rebuild a ConversationContext from the client-held payload.

    Missing fields are recomputed from partialData rather than trusted.
    An unknown type yields no context at all.
    """
    if payload is None or not payload.type:
        return None
    try:
        transaction_type = TransactionType(payload.type.lower())
    except ValueError:
        logger.warning(f"Ignoring context with unknown type '{payload.type}'")
        return None

    fields = {
        name: str(value).strip()
        for name, value in payload.partialData.items()
        if name in FIELD_NAMES and value is not None and str(value).strip()
    }
    draft = build_draft(transaction_type, fields, get_config().gold_price_per_gram)
    return ConversationContext(draft=draft, last_prompt=payload.message)


# ============================================================
# Stateless extraction
# ============================================================

@app.post(
    "/extract",
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def extract(request: ExtractRequest, http_request: Request):
    """
    Extract a transaction from one utterance.

    Returns:
        The complete draft ({type, amount, ...}) or an IncompleteExtraction
        carrying partialData, missingFields and the next prompt.
        Errors come back as {"error": <Indonesian message>}.
    """
    client_id = client_address(http_request)
    config = get_config()
    if not get_rate_limiter(config.rate_limit_per_minute).check(client_id):
        return _error_response(429, RATE_LIMIT_MESSAGE)

    preview = request.text[:50] + "..." if len(request.text) > 50 else request.text
    logger.info(
        f"Extract request: client={client_id}, text='{preview}', "
        f"context_type={request.context.type if request.context else None}"
    )

    context = _context_from_payload(request.context)
    service = get_conversation_service()

    try:
        result = await extract_transaction(
            request.text,
            context=context,
            semantic_extractor=get_semantic_extractor(),
            gold_price_per_gram=config.gold_price_per_gram,
        )
        draft = accept_extraction(result, context, service.enablement, config.gold_price_per_gram)
    except DialogueError as e:
        status_code = ERROR_STATUS[e.kind]
        logger.info(f"METRIC extract_rejected kind={e.kind.value} status={status_code} detail={e}")
        return _error_response(status_code, e.user_message)
    except Exception as e:
        # FINAL SAFETY NET: never a 500 for an utterance
        logger.error(
            f"METRIC endpoint_unexpected_error endpoint=extract error={type(e).__name__}",
            exc_info=True,
        )
        return _error_response(503, EXTRACTOR_UNAVAILABLE_MESSAGE)

    logger.info(
        f"Extract result: type={draft.transaction_type.value}, "
        f"complete={draft.complete}, missing={draft.missing_fields}, "
        f"llm_used={getattr(result, 'llm_used', False)} "
        f"llm_model={getattr(result, 'llm_model', None) or 'none'}"
    )

    if draft.complete:
        return draft.public_fields()

    return IncompleteExtraction(
        type=draft.transaction_type.value,
        partialData={k: v for k, v in draft.public_fields().items() if k != "type"},
        missingFields=draft.missing_fields,
        message=select_prompt(draft.transaction_type, draft.missing_fields),
    )


# ============================================================
# Conversation Endpoints (server-held state machine)
# ============================================================

@app.post("/v2/conversation/event", response_model=ConversationSnapshot)
async def conversation_event(request: ConversationEventRequest) -> ConversationSnapshot:
    """
    Feed one speech event into the conversation and return its snapshot.

    The conversation is created on first use. assistantMessages holds
    everything spoken since the previous snapshot.
    """
    return await get_conversation_service().handle_event(request)


@app.get("/v2/conversation/{conversation_id}", response_model=ConversationSnapshot)
async def conversation_snapshot(conversation_id: str) -> ConversationSnapshot:
    """Current snapshot, including transitions driven by server-side timers."""
    snapshot = get_conversation_service().snapshot(conversation_id)
    if snapshot is None:
        raise HTTPException(
            status_code=404,
            detail=f"conversation_not_found: {conversation_id}",
        )
    return snapshot


@app.delete("/v2/conversation/{conversation_id}")
async def conversation_close(conversation_id: str):
    """Close a conversation and cancel its timers."""
    if not get_conversation_service().close(conversation_id):
        raise HTTPException(
            status_code=404,
            detail=f"conversation_not_found: {conversation_id}",
        )
    return {"status": "closed", "conversationId": conversation_id}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_config().port)
