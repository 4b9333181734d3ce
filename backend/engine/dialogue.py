"""
Dialogue state machine.

One Conversation object owns everything a single spoken session needs:
state, transcript, context, draft, correction session, timers and the
speech outbox. Events are processed one at a time:
- run() consumes an asyncio.Queue fed by post() and by timer callbacks
- dispatch() holds an asyncio.Lock, so a direct caller (the HTTP layer)
  waits behind an in-flight extraction instead of racing it

Timers carry a per-kind generation token. Every arm/cancel bumps the
generation, and a firing whose token is stale is ignored.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from transactions.lexicon import (
    CANCEL_WORDS,
    CONFIRM_WORDS,
    CORRECTION_WORDS,
    contains_any_word,
)
from transactions.specs import TypeEnablement
from .correction import (
    CorrectionSession,
    CorrectionStatus,
    get_correction_prompt,
    resolve_correction,
)
from .draft import Classified, ConversationContext, ExtractionResult, TransactionDraft
from .errors import DialogueError, NoSpeechDetectedError
from .extract import DEFAULT_GOLD_PRICE_PER_GRAM, extract_transaction
from .merge import accept_extraction
from .planner import (
    build_confirmation_text,
    build_payment_payload,
    select_prompt,
)

logger = logging.getLogger(__name__)

COMPLETE_MESSAGE = "Oke, membuka halaman pembayaran"
CANCEL_MESSAGE = "Oke, coba sebutin ulang transaksimu ya"

# Speech-recognizer error codes that are not user-facing
IGNORED_SPEECH_ERRORS = frozenset({"aborted"})


class DialogueState(str, Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    SILENCE_TIMEOUT = "SILENCE_TIMEOUT"
    USER_CLOSED = "USER_CLOSED"
    EXTRACTING = "EXTRACTING"
    INCOMPLETE_PROMPT = "INCOMPLETE_PROMPT"
    CONFIRMING = "CONFIRMING"
    CORRECTING_FIELD_SELECT = "CORRECTING_FIELD_SELECT"
    CORRECTING_FIELD_VALUE = "CORRECTING_FIELD_VALUE"
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"
    ERROR = "ERROR"
    NO_RESPONSE = "NO_RESPONSE"


class TimerKind(str, Enum):
    SILENCE = "SILENCE"
    NO_RESPONSE = "NO_RESPONSE"
    PROMPT_PLAYBACK = "PROMPT_PLAYBACK"


# =============================================================================
# EVENTS
# =============================================================================

@dataclass
class Start:
    """User opened the microphone."""


@dataclass
class Utterance:
    """Speech-to-text result; interim results are display-only."""
    text: str
    final: bool = True


@dataclass
class TimerFired:
    kind: TimerKind
    generation: int


@dataclass
class SessionEnded:
    """Speech input stopped on its own."""


@dataclass
class UserClosed:
    """User explicitly closed the microphone."""


@dataclass
class Retry:
    """User asked to try again after an error."""


@dataclass
class SpeechError:
    """Speech input reported an error (e.g. "no-speech")."""
    code: str = "no-speech"


# =============================================================================
# SETTINGS / COLLABORATORS
# =============================================================================

@dataclass
class DialogueSettings:
    """Timing and business knobs; no environment access here."""
    silence_timeout: float = 3.0
    no_response_timeout: float = 5.0
    gold_price_per_gram: int = DEFAULT_GOLD_PRICE_PER_GRAM
    accessibility_mode: bool = False


def speech_delay(message: str, accessibility_mode: bool = False) -> float:
    """
    Minimum seconds to let a spoken message play before listening again.

    30 ms per character plus 1 s, or 60 ms per character plus 0.5 s in
    accessibility mode (slower speech rate).
    """
    if accessibility_mode:
        return len(message) * 0.06 + 0.5
    return len(message) * 0.03 + 1.0


class SpeechOutput:
    """Speech output collaborator. The default implementation is silent."""

    def speak(self, text: str, interrupt: bool = False) -> None:
        pass


@dataclass
class TransitionRecord:
    from_state: DialogueState
    to_state: DialogueState
    trigger: str


# =============================================================================
# CONVERSATION
# =============================================================================

class Conversation:
    """
    A single spoken transaction session.

    Args:
        conversation_id: Identifier used in logs
        semantic_extractor: Object with async extract(text, context), or None
        enablement: Transaction type enablement predicate
        settings: DialogueSettings
        speech_output: Speech output collaborator
        on_complete: Called with the payment payload on COMPLETE (sync or async)
    """

    def __init__(
        self,
        conversation_id: str,
        semantic_extractor: Any = None,
        enablement: Optional[TypeEnablement] = None,
        settings: Optional[DialogueSettings] = None,
        speech_output: Optional[SpeechOutput] = None,
        on_complete: Optional[Callable[[Dict[str, str]], Any]] = None,
    ):
        self.conversation_id = conversation_id
        self.semantic_extractor = semantic_extractor
        self.enablement = enablement or TypeEnablement()
        self.settings = settings or DialogueSettings()
        self.speech_output = speech_output or SpeechOutput()
        self.on_complete = on_complete

        self.state = DialogueState.IDLE
        self.transcript = ""
        self.interim_text = ""
        self.context: Optional[ConversationContext] = None
        self.draft: Optional[TransactionDraft] = None
        self.correction: Optional[CorrectionSession] = None
        self.error: Optional[DialogueError] = None
        self.payment: Optional[Dict[str, str]] = None
        self.last_llm_used = False
        self.last_llm_model: Optional[str] = None

        self.outbox: List[str] = []
        self.history: List[TransitionRecord] = []

        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._timers: Dict[TimerKind, asyncio.TimerHandle] = {}
        self._generations: Dict[TimerKind, int] = {kind: 0 for kind in TimerKind}
        self._closed = False

    # -------------------------------------------------------------------------
    # Event intake
    # -------------------------------------------------------------------------

    def post(self, event: Any) -> None:
        """Queue an event for run()."""
        self._queue.put_nowait(event)

    async def run(self) -> None:
        """Consume queued events until close()."""
        while not self._closed:
            event = await self._queue.get()
            try:
                if event is None:
                    break
                await self.dispatch(event)
            finally:
                self._queue.task_done()

    async def dispatch(self, event: Any) -> None:
        """Process one event to completion."""
        async with self._lock:
            if self._closed:
                return
            await self._handle(event)

    def close(self) -> None:
        """Cancel timers and stop run()."""
        self._cancel_all_timers()
        self._closed = True
        self._queue.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed

    def drain_outbox(self) -> List[str]:
        messages, self.outbox = self.outbox, []
        return messages

    def timer_generation(self, kind: TimerKind) -> int:
        return self._generations[kind]

    def timer_armed(self, kind: TimerKind) -> bool:
        return kind in self._timers

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def _arm(self, kind: TimerKind, delay: float) -> None:
        self._cancel(kind)
        generation = self._generations[kind]
        loop = asyncio.get_running_loop()
        self._timers[kind] = loop.call_later(delay, self.post, TimerFired(kind, generation))

    def _cancel(self, kind: TimerKind) -> None:
        handle = self._timers.pop(kind, None)
        if handle is not None:
            handle.cancel()
        self._generations[kind] += 1

    def _cancel_all_timers(self) -> None:
        for kind in TimerKind:
            self._cancel(kind)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _transition(self, new_state: DialogueState, trigger: str) -> None:
        old_state = self.state
        self.history.append(TransitionRecord(old_state, new_state, trigger))
        self.state = new_state
        logger.info(f"[{self.conversation_id}] {old_state.value} -> {new_state.value} ({trigger})")

    def speak(self, text: str, interrupt: bool = False) -> None:
        self.outbox.append(text)
        self.speech_output.speak(text, interrupt)

    def _reset_transaction(self) -> None:
        self.transcript = ""
        self.interim_text = ""
        self.context = None
        self.draft = None
        self.correction = None
        self.error = None

    def _enter_listening(self, trigger: str, awaiting_answer: bool = False) -> None:
        self._cancel_all_timers()
        self.interim_text = ""
        self._transition(DialogueState.LISTENING, trigger)
        if awaiting_answer:
            self._arm(TimerKind.NO_RESPONSE, self.settings.no_response_timeout)

    def _fail(self, error: DialogueError) -> None:
        self._cancel_all_timers()
        self.error = error
        self.transcript = ""
        self.interim_text = ""
        state = DialogueState.NO_RESPONSE if isinstance(error, NoSpeechDetectedError) else DialogueState.ERROR
        logger.warning(
            f"METRIC dialogue_error kind={error.kind.value} retryable={error.retryable} "
            f"conversationId={self.conversation_id}"
        )
        self._transition(state, error.kind.value)
        self.speak(error.user_message, interrupt=True)

    # -------------------------------------------------------------------------
    # Event handling
    # -------------------------------------------------------------------------

    async def _handle(self, event: Any) -> None:
        if isinstance(event, TimerFired):
            await self._on_timer(event)
        elif isinstance(event, Start):
            self._on_start()
        elif isinstance(event, Utterance):
            await self._on_utterance(event)
        elif isinstance(event, SessionEnded):
            await self._on_session_ended()
        elif isinstance(event, UserClosed):
            await self._on_user_closed()
        elif isinstance(event, Retry):
            self._on_retry()
        elif isinstance(event, SpeechError):
            self._on_speech_error(event)
        else:
            raise TypeError(f"Unknown dialogue event: {event!r}")

    def _on_start(self) -> None:
        if self.state == DialogueState.IDLE:
            self.transcript = ""
            self._enter_listening("start")
        elif self.state in (DialogueState.ERROR, DialogueState.NO_RESPONSE):
            self._on_retry()

    async def _on_utterance(self, event: Utterance) -> None:
        text = event.text.strip()
        if not text:
            return

        if not event.final:
            self.interim_text = text
            if self.state == DialogueState.LISTENING:
                self._cancel(TimerKind.NO_RESPONSE)
                self._arm(TimerKind.SILENCE, self.settings.silence_timeout)
            return

        if self.state == DialogueState.IDLE:
            self._enter_listening("utterance")
        elif self.state in (DialogueState.ERROR, DialogueState.NO_RESPONSE):
            self.error = None
            self._enter_listening("utterance")
        elif self.state == DialogueState.INCOMPLETE_PROMPT:
            self._enter_listening("barge_in")

        if self.state == DialogueState.LISTENING:
            self.transcript = f"{self.transcript} {text}".strip()
            self.interim_text = ""
            self._cancel(TimerKind.NO_RESPONSE)
            self._arm(TimerKind.SILENCE, self.settings.silence_timeout)
        elif self.state == DialogueState.CONFIRMING:
            await self._on_confirming(text)
        elif self.state == DialogueState.CORRECTING_FIELD_SELECT:
            await self._on_field_select(text)
        elif self.state == DialogueState.CORRECTING_FIELD_VALUE:
            await self._on_field_value(text)
        else:
            logger.debug(f"[{self.conversation_id}] utterance ignored in {self.state.value}")

    async def _on_timer(self, event: TimerFired) -> None:
        if event.generation != self._generations[event.kind]:
            logger.info(
                f"METRIC stale_timer kind={event.kind.value} "
                f"conversationId={self.conversation_id}"
            )
            return
        handle = self._timers.pop(event.kind, None)
        if handle is not None:
            # No-op when the loop fired it; drops the pending call when fired externally
            handle.cancel()

        if event.kind == TimerKind.PROMPT_PLAYBACK:
            if self.state == DialogueState.INCOMPLETE_PROMPT:
                self._enter_listening("prompt_played", awaiting_answer=True)
            return

        if self.state != DialogueState.LISTENING:
            return

        if event.kind == TimerKind.SILENCE:
            self._transition(DialogueState.SILENCE_TIMEOUT, "silence")
            await self._extract("silence")
        elif event.kind == TimerKind.NO_RESPONSE and not self.transcript.strip():
            self._fail(NoSpeechDetectedError("no response to prompt"))

    async def _on_session_ended(self) -> None:
        if self.state == DialogueState.LISTENING and self.transcript.strip():
            self._transition(DialogueState.SILENCE_TIMEOUT, "session_ended")
            await self._extract("session_ended")

    async def _on_user_closed(self) -> None:
        self._cancel_all_timers()
        if self.state == DialogueState.LISTENING and self.transcript.strip():
            self._transition(DialogueState.USER_CLOSED, "user_closed")
            await self._extract("user_closed")
            return
        if self.state != DialogueState.IDLE:
            self._transition(DialogueState.USER_CLOSED, "user_closed")
            self._reset_transaction()
            self._transition(DialogueState.IDLE, "closed")

    def _on_retry(self) -> None:
        if self.state not in (DialogueState.ERROR, DialogueState.NO_RESPONSE):
            return
        self.error = None
        self.transcript = ""
        self._enter_listening("retry", awaiting_answer=self.context is not None)

    def _on_speech_error(self, event: SpeechError) -> None:
        if event.code in IGNORED_SPEECH_ERRORS:
            return
        if self.state in (DialogueState.LISTENING, DialogueState.IDLE) and not self.transcript.strip():
            self._fail(NoSpeechDetectedError(f"speech error: {event.code}"))

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def _accept(self, result: ExtractionResult) -> TransactionDraft:
        """Gate a result by enablement and format, then merge it into the context."""
        try:
            return accept_extraction(result, self.context, self.enablement, self.settings.gold_price_per_gram)
        except DialogueError as e:
            logger.info(f"[{self.conversation_id}] extraction rejected: {e.kind.value}")
            raise

    async def _extract(self, trigger: str) -> None:
        text = self.transcript.strip()
        self._cancel_all_timers()
        self._transition(DialogueState.EXTRACTING, trigger)

        if not text:
            self._fail(NoSpeechDetectedError("empty transcript"))
            return

        try:
            result = await extract_transaction(
                text,
                context=self.context,
                semantic_extractor=self.semantic_extractor,
                gold_price_per_gram=self.settings.gold_price_per_gram,
            )
            self.last_llm_used = getattr(result, "llm_used", False)
            self.last_llm_model = getattr(result, "llm_model", None)
            if isinstance(result, Classified):
                logger.info(
                    f"[{self.conversation_id}] classified type={result.draft.transaction_type.value} "
                    f"confidence={result.confidence} llm_model={result.llm_model or 'none'}"
                )
            draft = self._accept(result)
        except DialogueError as e:
            self._fail(e)
            return

        self.transcript = ""
        self.interim_text = ""
        self.error = None
        self.draft = draft

        if draft.complete:
            confirmation = build_confirmation_text(draft)
            self.context = ConversationContext(draft=draft, last_prompt=confirmation)
            self._transition(DialogueState.CONFIRMING, "complete_draft")
            self.speak(confirmation, interrupt=True)
            return

        prompt = select_prompt(draft.transaction_type, draft.missing_fields)
        self.context = ConversationContext(draft=draft, last_prompt=prompt)
        self._transition(DialogueState.INCOMPLETE_PROMPT, "missing_fields")
        self.speak(prompt, interrupt=True)
        self._arm(
            TimerKind.PROMPT_PLAYBACK,
            speech_delay(prompt, self.settings.accessibility_mode),
        )

    # -------------------------------------------------------------------------
    # Confirmation and correction
    # -------------------------------------------------------------------------

    async def _on_confirming(self, text: str) -> None:
        if contains_any_word(text, CORRECTION_WORDS):
            self.correction = CorrectionSession()
            self._transition(DialogueState.CORRECTING_FIELD_SELECT, "correction_requested")
            self.speak(get_correction_prompt(self.draft.transaction_type), interrupt=True)
        elif contains_any_word(text, CANCEL_WORDS):
            self._cancel_transaction()
        elif contains_any_word(text, CONFIRM_WORDS):
            await self._complete()
        else:
            logger.debug(f"[{self.conversation_id}] non-keyword utterance discarded while confirming")

    async def _correction_shortcut(self, text: str) -> bool:
        """Cancel and confirmation words end a correction session before any parsing."""
        if contains_any_word(text, CANCEL_WORDS):
            self._cancel_transaction()
            return True
        if contains_any_word(text, CONFIRM_WORDS):
            await self._complete()
            return True
        return False

    async def _on_field_select(self, text: str) -> None:
        if await self._correction_shortcut(text):
            return

        outcome = resolve_correction(self.correction, self.draft, text)
        if outcome.status == CorrectionStatus.FIELD_SELECTED:
            self.correction = outcome.session
            self._transition(DialogueState.CORRECTING_FIELD_VALUE, f"field_{outcome.session.target_field}")
        self.speak(outcome.prompt, interrupt=True)

    async def _on_field_value(self, text: str) -> None:
        if await self._correction_shortcut(text):
            return

        outcome = resolve_correction(self.correction, self.draft, text)
        if outcome.status == CorrectionStatus.VALUE_APPLIED:
            self.draft = outcome.draft
            self.correction = None
            confirmation = build_confirmation_text(self.draft)
            self.context = ConversationContext(draft=self.draft, last_prompt=confirmation)
            self._transition(DialogueState.CONFIRMING, "value_applied")
            self.speak(confirmation, interrupt=True)
        else:
            self.speak(outcome.prompt, interrupt=True)

    async def _complete(self) -> None:
        payload = build_payment_payload(self.draft)
        self.payment = payload
        self._transition(DialogueState.COMPLETE, "confirmed")
        self.speak(COMPLETE_MESSAGE)
        logger.info(
            f"[{self.conversation_id}] transaction complete type={payload['type']} "
            f"fields={sorted(k for k in payload if k != 'type')}"
        )
        if self.on_complete is not None:
            outcome = self.on_complete(payload)
            if inspect.isawaitable(outcome):
                await outcome
        self._reset_transaction()
        self._enter_listening("reset")

    def _cancel_transaction(self) -> None:
        self._transition(DialogueState.CANCELLED, "cancelled")
        self.speak(CANCEL_MESSAGE, interrupt=True)
        self._reset_transaction()
        self._enter_listening("reset")

