"""
Server-held conversations for the /v2/conversation endpoints.

Each conversationId maps to one engine Conversation (the dialogue state
machine) plus the task that consumes its timer events. This module:
1. Creates conversations on first use and prunes idle ones
2. Translates API events into engine events
3. Builds snapshots (draining the speech outbox)
4. Logs one structured summary per turn and keeps in-memory counters
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from engine.dialogue import (
    Conversation,
    DialogueSettings,
    DialogueState,
    Retry,
    SessionEnded,
    SpeechError,
    Start,
    TimerFired,
    TimerKind,
    UserClosed,
    Utterance,
)
from engine.semantic import SemanticExtractor
from transactions.specs import TypeEnablement

from .config import get_config
from .models import (
    ConversationEventRequest,
    ConversationSnapshot,
    ErrorInfo,
    EventKind,
)

logger = logging.getLogger(__name__)

CONVERSATION_IDLE_TTL = timedelta(minutes=30)
_IDEMPOTENCY_TTL = timedelta(minutes=5)


def _preview(text: Optional[str], limit: int = 50) -> str:
    if not text:
        return ""
    return text[:limit] + "..." if len(text) > limit else text


def _log_turn_summary(
    conversation_id: str,
    event: str,
    state: str,
    transaction_type: Optional[str],
    missing_fields: List[str],
    llm_used: bool,
    llm_model: Optional[str] = None,
) -> None:
    """
    Structured summary log for each conversation turn.

    Single line for monitoring and debugging:
    - conversation_id: Unique conversation identifier
    - event: The API event that drove the turn
    - state: Dialogue state after the turn
    - transaction_type: Draft type, if any
    - missing_fields: Fields still needed
    - llm_used: Whether the semantic extractor ran on the last extraction
    - llm_model: Model that produced the last extraction, if any
    """
    logger.info(
        "[TURN-SUMMARY] "
        f"id={conversation_id} "
        f"event={event} "
        f"state={state} "
        f"type={transaction_type or 'none'} "
        f"missing={','.join(missing_fields) or 'none'} "
        f"llm_used={llm_used} "
        f"llm_model={llm_model or 'none'}"
    )


# =============================================================================
# Internal Metrics Counters (for anomaly detection, not exposed via API)
# =============================================================================
class _Metrics:
    """
    Simple in-memory counters for dialogue metrics.

    Counters reset on server restart; they are for log-based monitoring only.
    """

    SUMMARY_EVERY = 100

    def __init__(self):
        self.total_turns = 0
        self.llm_turns = 0
        self.completed = 0
        self.cancelled = 0
        self.errors = 0
        self.no_response = 0
        self.idempotency_hits = 0
        # Anomaly detection
        self.consecutive_errors = 0
        self.max_consecutive_errors = 0

    def record_turn(self, history_states: List[DialogueState], llm_used: bool) -> None:
        """Record metrics for one processed event."""
        self.total_turns += 1
        if llm_used:
            self.llm_turns += 1

        if DialogueState.COMPLETE in history_states:
            self.completed += 1
        if DialogueState.CANCELLED in history_states:
            self.cancelled += 1
        if DialogueState.NO_RESPONSE in history_states:
            self.no_response += 1

        if DialogueState.ERROR in history_states:
            self.errors += 1
            self.consecutive_errors += 1
            self.max_consecutive_errors = max(self.max_consecutive_errors, self.consecutive_errors)
            if self.consecutive_errors >= 3:
                logger.warning(
                    f"[ANOMALY] consecutive_errors={self.consecutive_errors} "
                    f"(threshold=3, max_seen={self.max_consecutive_errors})"
                )
        elif history_states:
            self.consecutive_errors = 0

        if self.total_turns % self.SUMMARY_EVERY == 0:
            self.log_summary()

    def record_idempotency_hit(self) -> None:
        self.idempotency_hits += 1

    def log_summary(self) -> None:
        """Log a summary of current metrics."""
        if self.total_turns == 0:
            return

        llm_rate = (self.llm_turns / self.total_turns) * 100
        logger.info(
            f"[METRICS] "
            f"total={self.total_turns} "
            f"llm_rate={llm_rate:.1f}% "
            f"idempotency_hits={self.idempotency_hits} "
            f"outcomes={{COMPLETE={self.completed}, CANCELLED={self.cancelled}, "
            f"ERROR={self.errors}, NO_RESPONSE={self.no_response}}}"
        )


@dataclass
class _Entry:
    conversation: Conversation
    task: Optional["asyncio.Task[None]"]
    last_seen: datetime = field(default_factory=datetime.now)


class ConversationService:
    """In-memory registry of live conversations."""

    def __init__(
        self,
        semantic_extractor: Any = None,
        enablement: Optional[TypeEnablement] = None,
        settings: Optional[DialogueSettings] = None,
        idle_ttl: timedelta = CONVERSATION_IDLE_TTL,
    ):
        self.semantic_extractor = semantic_extractor
        self.enablement = enablement or TypeEnablement()
        self.settings = settings or DialogueSettings()
        self.idle_ttl = idle_ttl
        self.metrics = _Metrics()
        self._entries: Dict[str, _Entry] = {}
        self._idempotency_store: Dict[str, Tuple[ConversationSnapshot, datetime]] = {}
        # Payloads not yet returned in a snapshot, keyed by conversation
        self._pending_payments: Dict[str, Dict[str, str]] = {}

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def _create(self, conversation_id: str) -> _Entry:
        def on_complete(payload: Dict[str, str]) -> None:
            self._pending_payments[conversation_id] = payload

        conversation = Conversation(
            conversation_id,
            semantic_extractor=self.semantic_extractor,
            enablement=self.enablement,
            settings=self.settings,
            on_complete=on_complete,
        )
        task = asyncio.get_running_loop().create_task(conversation.run())
        entry = _Entry(conversation=conversation, task=task)
        self._entries[conversation_id] = entry
        logger.info(f"Conversation created: id={conversation_id} live={len(self._entries)}")
        return entry

    def get(self, conversation_id: str) -> Optional[Conversation]:
        entry = self._entries.get(conversation_id)
        return entry.conversation if entry else None

    def _get_or_create(self, conversation_id: str) -> _Entry:
        self.prune()
        entry = self._entries.get(conversation_id)
        if entry is None:
            entry = self._create(conversation_id)
        entry.last_seen = datetime.now()
        return entry

    def prune(self) -> int:
        """Close conversations idle for longer than the TTL."""
        cutoff = datetime.now() - self.idle_ttl
        stale = [cid for cid, entry in self._entries.items() if entry.last_seen < cutoff]
        for cid in stale:
            self.close(cid)
        if stale:
            logger.info(f"Pruned {len(stale)} idle conversations")
        return len(stale)

    def close(self, conversation_id: str) -> bool:
        entry = self._entries.pop(conversation_id, None)
        if entry is None:
            return False
        entry.conversation.close()
        self._pending_payments.pop(conversation_id, None)
        logger.info(f"Conversation closed: id={conversation_id}")
        return True

    async def shutdown(self) -> None:
        for cid in list(self._entries):
            entry = self._entries[cid]
            self.close(cid)
            if entry.task is not None:
                entry.task.cancel()

    # -------------------------------------------------------------------------
    # Idempotency
    # -------------------------------------------------------------------------

    def _get_idempotent_response(self, key: str) -> Optional[ConversationSnapshot]:
        """Get cached snapshot for idempotency key if still valid."""
        if key in self._idempotency_store:
            snapshot, timestamp = self._idempotency_store[key]
            if datetime.now() - timestamp < _IDEMPOTENCY_TTL:
                logger.info(f"Idempotency hit for key={key}")
                return snapshot
            del self._idempotency_store[key]
        return None

    def _store_idempotent_response(self, key: str, snapshot: ConversationSnapshot) -> None:
        self._idempotency_store[key] = (snapshot, datetime.now())
        if len(self._idempotency_store) > 1000:
            cutoff = datetime.now() - _IDEMPOTENCY_TTL
            keys_to_remove = [k for k, (_, ts) in self._idempotency_store.items() if ts < cutoff]
            for k in keys_to_remove:
                del self._idempotency_store[k]

    # -------------------------------------------------------------------------
    # Events and snapshots
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_engine_event(request: ConversationEventRequest, conversation: Conversation) -> Any:
        kind = request.event
        if kind == EventKind.START:
            return Start()
        if kind == EventKind.UTTERANCE:
            return Utterance(text=request.text or "", final=request.final)
        if kind == EventKind.SILENCE_TIMEOUT:
            # Client-side silence detection fires the current silence timer
            return TimerFired(TimerKind.SILENCE, conversation.timer_generation(TimerKind.SILENCE))
        if kind == EventKind.SESSION_ENDED:
            return SessionEnded()
        if kind == EventKind.USER_CLOSED:
            return UserClosed()
        if kind == EventKind.RETRY:
            return Retry()
        if kind == EventKind.SPEECH_ERROR:
            return SpeechError(code=request.errorCode or "no-speech")
        raise ValueError(f"Unknown event kind: {kind}")

    def snapshot(self, conversation_id: str) -> Optional[ConversationSnapshot]:
        """Current state of a conversation; drains its speech outbox."""
        entry = self._entries.get(conversation_id)
        if entry is None:
            return None
        conversation = entry.conversation
        entry.last_seen = datetime.now()

        draft = conversation.draft
        error = None
        if conversation.error is not None:
            error = ErrorInfo(
                kind=conversation.error.kind.value,
                message=conversation.error.user_message,
                retryable=conversation.error.retryable,
            )

        return ConversationSnapshot(
            conversationId=conversation_id,
            state=conversation.state.value,
            transactionType=draft.transaction_type.value if draft and draft.transaction_type else None,
            fields=dict(draft.fields) if draft else {},
            missingFields=list(draft.missing_fields) if draft else [],
            assistantMessages=conversation.drain_outbox(),
            interimText=conversation.interim_text or None,
            error=error,
            payment=self._pending_payments.pop(conversation_id, None),
        )

    async def handle_event(self, request: ConversationEventRequest) -> ConversationSnapshot:
        """
        Feed one API event into the conversation and return its snapshot.

        Flow:
        1. Check idempotency
        2. Get or create the conversation
        3. Dispatch the event (waits behind any in-flight extraction)
        4. Log the turn summary and record metrics
        """
        logger.info(
            f"Conversation event: id={request.conversationId}, "
            f"event={request.event.value}, final={request.final}, "
            f"text='{_preview(request.text)}'"
        )

        if request.idempotencyKey:
            cached = self._get_idempotent_response(request.idempotencyKey)
            if cached:
                self.metrics.record_idempotency_hit()
                return cached

        entry = self._get_or_create(request.conversationId)
        conversation = entry.conversation
        history_start = len(conversation.history)

        await conversation.dispatch(self._to_engine_event(request, conversation))

        new_states = [record.to_state for record in conversation.history[history_start:]]
        snapshot = self.snapshot(request.conversationId)

        _log_turn_summary(
            request.conversationId,
            request.event.value,
            snapshot.state,
            snapshot.transactionType,
            snapshot.missingFields,
            conversation.last_llm_used,
            conversation.last_llm_model,
        )
        self.metrics.record_turn(new_states, conversation.last_llm_used)

        if request.idempotencyKey:
            self._store_idempotent_response(request.idempotencyKey, snapshot)
        return snapshot


# =============================================================================
# Process-wide instances
# =============================================================================

_semantic_extractor: Optional[SemanticExtractor] = None
_semantic_checked = False
_service: Optional[ConversationService] = None


def get_semantic_extractor() -> Optional[SemanticExtractor]:
    """The configured SemanticExtractor, or None when OPENAI_API_KEY is unset."""
    global _semantic_extractor, _semantic_checked
    if not _semantic_checked:
        config = get_config()
        if config.openai_api_key:
            _semantic_extractor = SemanticExtractor.from_api_key(
                config.openai_api_key,
                model=config.openai_model,
                gold_price_per_gram=config.gold_price_per_gram,
            )
        else:
            logger.warning("OPENAI_API_KEY not set - extraction runs rule-based only")
        _semantic_checked = True
    return _semantic_extractor


def get_conversation_service() -> ConversationService:
    """Get or create the process-wide ConversationService."""
    global _service
    if _service is None:
        config = get_config()
        _service = ConversationService(
            semantic_extractor=get_semantic_extractor(),
            enablement=TypeEnablement(config.enabled_types),
            settings=config.dialogue_settings(),
        )
    return _service


def reset_services() -> None:
    """Drop cached instances so the next getter call re-reads config (tests)."""
    global _semantic_extractor, _semantic_checked, _service
    _semantic_extractor = None
    _semantic_checked = False
    _service = None
