"""
Tests for the dialogue state machine.

Timers are driven explicitly by dispatching TimerFired with the current
generation, except in TestRunLoop which lets short real timers fire.
"""
import asyncio
from typing import List
from unittest.mock import AsyncMock

import pytest

from engine.dialogue import (
    CANCEL_MESSAGE,
    COMPLETE_MESSAGE,
    Conversation,
    DialogueSettings,
    DialogueState,
    Retry,
    SpeechError,
    Start,
    TimerFired,
    TimerKind,
    UserClosed,
    Utterance,
    speech_delay,
)
from engine.draft import Classified
from engine.errors import (
    DisabledTypeError,
    ErrorKind,
    NoSpeechDetectedError,
    UnclassifiableError,
)
from engine.extract import build_draft
from transactions.specs import TransactionType

TRANSFER_COMMAND = "transfer 100 ribu ke BCA 1234567890"


def states(conversation: Conversation) -> List[DialogueState]:
    return [record.to_state for record in conversation.history]


async def fire(conversation: Conversation, kind: TimerKind) -> None:
    """Fire the currently armed timer of a kind."""
    await conversation.dispatch(TimerFired(kind, conversation.timer_generation(kind)))


async def say(conversation: Conversation, text: str) -> None:
    """Speak a final utterance and let the silence window elapse."""
    await conversation.dispatch(Utterance(text))
    await fire(conversation, TimerKind.SILENCE)


@pytest.fixture
async def conversation():
    conv = Conversation("test-conv")
    await conv.dispatch(Start())
    yield conv
    conv.close()


async def confirming(conv: Conversation) -> Conversation:
    await say(conv, TRANSFER_COMMAND)
    assert conv.state == DialogueState.CONFIRMING
    conv.drain_outbox()
    return conv


class TestListening:
    """Start, transcript accumulation and silence handling."""

    @pytest.mark.asyncio
    async def test_start_enters_listening(self, conversation):
        assert conversation.state == DialogueState.LISTENING
        assert states(conversation) == [DialogueState.LISTENING]

    @pytest.mark.asyncio
    async def test_interim_text_is_display_only(self, conversation):
        await conversation.dispatch(Utterance("transfer seratus", final=False))

        assert conversation.interim_text == "transfer seratus"
        assert conversation.transcript == ""
        assert conversation.timer_armed(TimerKind.SILENCE)

    @pytest.mark.asyncio
    async def test_final_utterances_accumulate(self, conversation):
        await conversation.dispatch(Utterance("transfer 100 ribu"))
        await conversation.dispatch(Utterance("ke BCA 1234567890"))

        assert conversation.transcript == TRANSFER_COMMAND

    @pytest.mark.asyncio
    async def test_stale_silence_timer_is_ignored(self, conversation):
        await conversation.dispatch(Utterance("transfer 100 ribu"))
        stale = conversation.timer_generation(TimerKind.SILENCE)
        await conversation.dispatch(Utterance("ke BCA 1234567890"))

        await conversation.dispatch(TimerFired(TimerKind.SILENCE, stale))

        assert conversation.state == DialogueState.LISTENING
        assert conversation.transcript == TRANSFER_COMMAND

    @pytest.mark.asyncio
    async def test_silence_extracts_complete_draft(self, conversation):
        await say(conversation, TRANSFER_COMMAND)

        assert conversation.state == DialogueState.CONFIRMING
        assert states(conversation)[-3:] == [
            DialogueState.SILENCE_TIMEOUT,
            DialogueState.EXTRACTING,
            DialogueState.CONFIRMING,
        ]
        assert conversation.drain_outbox() == [
            "Transfer seratus ribu rupiah ke BCA, nomor rekening "
            "satu dua tiga. empat lima enam. tujuh delapan sembilan. nol. Sudah benar?"
        ]
        assert conversation.transcript == ""

    @pytest.mark.asyncio
    async def test_final_utterance_in_idle_starts_listening(self):
        conv = Conversation("idle-conv")

        await conv.dispatch(Utterance("beli pulsa"))

        assert conv.state == DialogueState.LISTENING
        assert conv.transcript == "beli pulsa"
        conv.close()


class TestIncompletePrompt:
    """Follow-up prompts, barge-in and no-response."""

    @pytest.mark.asyncio
    async def test_missing_phone_prompt(self, conversation):
        await say(conversation, "beli pulsa 20000")

        assert conversation.state == DialogueState.INCOMPLETE_PROMPT
        assert conversation.drain_outbox() == ["Ke nomor HP berapa?"]
        assert conversation.timer_armed(TimerKind.PROMPT_PLAYBACK)
        assert conversation.context.draft.missing_fields == ["phoneNumber"]

    @pytest.mark.asyncio
    async def test_answer_completes_draft(self, conversation):
        await say(conversation, "beli pulsa 20000")
        await fire(conversation, TimerKind.PROMPT_PLAYBACK)

        assert conversation.state == DialogueState.LISTENING
        assert conversation.timer_armed(TimerKind.NO_RESPONSE)

        await say(conversation, "082354614676")

        assert conversation.state == DialogueState.CONFIRMING
        assert conversation.draft.fields == {
            "amount": "20000",
            "phoneNumber": "082354614676",
            "provider": "TELKOMSEL",
        }

    @pytest.mark.asyncio
    async def test_barge_in_during_prompt(self, conversation):
        await say(conversation, "beli pulsa 20000")

        await conversation.dispatch(Utterance("081234567890"))

        assert conversation.state == DialogueState.LISTENING
        assert conversation.transcript == "081234567890"
        assert not conversation.timer_armed(TimerKind.PROMPT_PLAYBACK)

    @pytest.mark.asyncio
    async def test_no_response_after_prompt(self, conversation):
        await say(conversation, "beli pulsa 20000")
        await fire(conversation, TimerKind.PROMPT_PLAYBACK)
        conversation.drain_outbox()

        await fire(conversation, TimerKind.NO_RESPONSE)

        assert conversation.state == DialogueState.NO_RESPONSE
        assert isinstance(conversation.error, NoSpeechDetectedError)
        assert conversation.drain_outbox() == [conversation.error.user_message]
        # The partial draft survives for the retry
        assert conversation.context.draft.fields == {"amount": "20000"}

        await conversation.dispatch(Retry())

        assert conversation.state == DialogueState.LISTENING
        assert conversation.timer_armed(TimerKind.NO_RESPONSE)

    @pytest.mark.asyncio
    async def test_type_switch_discards_partial(self, conversation):
        await say(conversation, "beli pulsa 20000")
        await conversation.dispatch(Utterance(TRANSFER_COMMAND))
        await fire(conversation, TimerKind.SILENCE)

        assert conversation.state == DialogueState.CONFIRMING
        assert conversation.draft.transaction_type == TransactionType.TRANSFER
        assert "phoneNumber" not in conversation.draft.fields


class TestConfirming:
    """Keyword precedence while confirming."""

    @pytest.mark.asyncio
    async def test_confirm_completes_and_resets(self):
        on_complete = AsyncMock()
        conv = Conversation("pay-conv", on_complete=on_complete)
        await conv.dispatch(Start())
        await confirming(conv)

        await conv.dispatch(Utterance("ya"))

        payload = {"type": "transfer", "amount": "100000", "bank": "BCA", "accountNumber": "1234567890"}
        on_complete.assert_awaited_once_with(payload)
        assert conv.payment == payload
        assert states(conv)[-2:] == [DialogueState.COMPLETE, DialogueState.LISTENING]
        assert conv.drain_outbox() == [COMPLETE_MESSAGE]
        assert conv.draft is None
        assert conv.context is None
        conv.close()

    @pytest.mark.asyncio
    async def test_correction_wins_over_confirmation(self, conversation):
        await confirming(conversation)

        await conversation.dispatch(Utterance("ya salah"))

        assert conversation.state == DialogueState.CORRECTING_FIELD_SELECT
        assert conversation.drain_outbox() == [
            "Yang mana yang salah? Bank, nomor rekening, atau nominal?"
        ]

    @pytest.mark.asyncio
    async def test_cancel(self, conversation):
        await confirming(conversation)

        await conversation.dispatch(Utterance("tidak, batal"))

        assert states(conversation)[-2:] == [DialogueState.CANCELLED, DialogueState.LISTENING]
        assert conversation.drain_outbox() == [CANCEL_MESSAGE]
        assert conversation.draft is None

    @pytest.mark.asyncio
    async def test_whole_word_matching(self, conversation):
        await confirming(conversation)

        await conversation.dispatch(Utterance("saya"))

        assert conversation.state == DialogueState.CONFIRMING
        assert conversation.drain_outbox() == []


class TestCorrectionFlow:
    """CONFIRMING -> field select -> field value -> CONFIRMING."""

    @pytest.mark.asyncio
    async def test_bank_correction(self, conversation):
        await confirming(conversation)

        await conversation.dispatch(Utterance("salah"))
        await conversation.dispatch(Utterance("banknya"))

        assert conversation.state == DialogueState.CORRECTING_FIELD_VALUE
        assert conversation.drain_outbox()[-1] == "Sekarang BCA. Bank yang baru?"

        await conversation.dispatch(Utterance("mandiri"))

        assert conversation.state == DialogueState.CONFIRMING
        assert conversation.draft.fields["bank"] == "Mandiri"
        assert "ke Mandiri" in conversation.drain_outbox()[-1]

    @pytest.mark.asyncio
    async def test_unrecognized_field_reprompts(self, conversation):
        await confirming(conversation)
        await conversation.dispatch(Utterance("salah"))
        conversation.drain_outbox()

        await conversation.dispatch(Utterance("hmm entah"))

        assert conversation.state == DialogueState.CORRECTING_FIELD_SELECT
        assert conversation.drain_outbox() == [
            "Yang mana yang salah? Bank, nomor rekening, atau nominal?"
        ]

    @pytest.mark.asyncio
    async def test_cancel_during_field_select(self, conversation):
        await confirming(conversation)
        await conversation.dispatch(Utterance("salah"))

        await conversation.dispatch(Utterance("batal"))

        assert DialogueState.CANCELLED in states(conversation)
        assert conversation.state == DialogueState.LISTENING

    @pytest.mark.asyncio
    async def test_confirm_during_field_select(self, conversation):
        await confirming(conversation)
        await conversation.dispatch(Utterance("salah"))

        await conversation.dispatch(Utterance("oke"))

        assert DialogueState.COMPLETE in states(conversation)

    @pytest.mark.asyncio
    async def test_invalid_value_reprompts_same_field(self, conversation):
        await confirming(conversation)
        await conversation.dispatch(Utterance("salah"))
        await conversation.dispatch(Utterance("nomor rekening"))
        conversation.drain_outbox()

        await conversation.dispatch(Utterance("12345"))

        assert conversation.state == DialogueState.CORRECTING_FIELD_VALUE
        assert conversation.correction.target_field == "accountNumber"
        assert conversation.drain_outbox() == ["Nomor rekening harus 10 sampai 16 digit."]

    @pytest.mark.asyncio
    async def test_confirm_wins_over_field_keyword(self, conversation):
        await confirming(conversation)
        await conversation.dispatch(Utterance("salah"))

        await conversation.dispatch(Utterance("ya nominalnya sudah benar"))

        assert DialogueState.COMPLETE in states(conversation)
        assert DialogueState.CORRECTING_FIELD_VALUE not in states(conversation)
        assert conversation.payment["amount"] == "100000"

    @pytest.mark.asyncio
    async def test_cancel_wins_over_value(self, conversation):
        await confirming(conversation)
        await conversation.dispatch(Utterance("salah"))
        await conversation.dispatch(Utterance("nominal"))

        await conversation.dispatch(Utterance("batal aja, 200 ribu"))

        assert states(conversation)[-2:] == [DialogueState.CANCELLED, DialogueState.LISTENING]
        assert conversation.draft is None

    @pytest.mark.asyncio
    async def test_confirm_during_field_value(self, conversation):
        await confirming(conversation)
        await conversation.dispatch(Utterance("salah"))
        await conversation.dispatch(Utterance("banknya"))

        await conversation.dispatch(Utterance("oke"))

        assert DialogueState.COMPLETE in states(conversation)
        assert conversation.state == DialogueState.LISTENING
        assert conversation.payment["bank"] == "BCA"

    @pytest.mark.asyncio
    async def test_phone_correction_updates_provider(self, conversation):
        await say(conversation, "beli pulsa 50 ribu ke 081234567890")
        assert conversation.state == DialogueState.CONFIRMING
        assert conversation.draft.fields["provider"] == "TELKOMSEL"

        await conversation.dispatch(Utterance("salah"))
        await conversation.dispatch(Utterance("nomor hp"))
        await conversation.dispatch(Utterance("081712345678"))

        assert conversation.state == DialogueState.CONFIRMING
        assert "pulsa XL" in conversation.drain_outbox()[-1]

        await conversation.dispatch(Utterance("ya"))

        assert conversation.payment == {
            "type": "pulsa",
            "amount": "50000",
            "provider": "XL",
            "phoneNumber": "081712345678",
        }


class TestErrors:
    """Extraction errors and recovery."""

    @pytest.mark.asyncio
    async def test_unclassifiable(self, conversation):
        await say(conversation, "halo apa kabar")

        assert conversation.state == DialogueState.ERROR
        assert isinstance(conversation.error, UnclassifiableError)
        assert conversation.error.retryable

    @pytest.mark.asyncio
    async def test_disabled_type(self, conversation):
        await say(conversation, "beli emas 2 gram")

        assert conversation.state == DialogueState.ERROR
        assert isinstance(conversation.error, DisabledTypeError)
        assert conversation.drain_outbox() == ["Maaf, transaksi gold sedang tidak tersedia."]

    @pytest.mark.asyncio
    async def test_retry_returns_to_listening(self, conversation):
        await say(conversation, "halo apa kabar")

        await conversation.dispatch(Retry())

        assert conversation.state == DialogueState.LISTENING
        assert conversation.error is None

    @pytest.mark.asyncio
    async def test_speech_error(self, conversation):
        await conversation.dispatch(SpeechError("aborted"))
        assert conversation.state == DialogueState.LISTENING

        await conversation.dispatch(SpeechError("no-speech"))

        assert conversation.state == DialogueState.NO_RESPONSE
        assert conversation.error.kind == ErrorKind.NO_SPEECH_DETECTED


class TestUserClosed:
    """Explicit microphone close."""

    @pytest.mark.asyncio
    async def test_close_with_transcript_extracts(self, conversation):
        await conversation.dispatch(Utterance(TRANSFER_COMMAND))

        await conversation.dispatch(UserClosed())

        assert DialogueState.USER_CLOSED in states(conversation)
        assert conversation.state == DialogueState.CONFIRMING

    @pytest.mark.asyncio
    async def test_close_without_speech_goes_idle(self, conversation):
        await conversation.dispatch(UserClosed())

        assert states(conversation)[-2:] == [DialogueState.USER_CLOSED, DialogueState.IDLE]


class TestSerialization:
    """Events wait behind an in-flight semantic extraction."""

    @pytest.mark.asyncio
    async def test_utterance_waits_for_extraction(self):
        gate = asyncio.Event()

        class SlowExtractor:
            async def extract(self, text, context):
                await gate.wait()
                draft = build_draft(
                    TransactionType.TRANSFER,
                    {"amount": "100000", "bank": "BCA", "accountNumber": "1234567890"},
                )
                return Classified(draft=draft, llm_used=True, llm_model="gpt-4o-mini", confidence="MEDIUM")

        conv = Conversation("slow-conv", semantic_extractor=SlowExtractor())
        await conv.dispatch(Start())
        await conv.dispatch(Utterance("bayarin temanku seratus ribu"))

        extraction = asyncio.create_task(fire(conv, TimerKind.SILENCE))
        for _ in range(5):
            await asyncio.sleep(0)
        confirmation = asyncio.create_task(conv.dispatch(Utterance("ya")))
        for _ in range(5):
            await asyncio.sleep(0)

        assert conv.state == DialogueState.EXTRACTING

        gate.set()
        await extraction
        await confirmation

        assert conv.last_llm_used is True
        assert conv.last_llm_model == "gpt-4o-mini"
        assert DialogueState.COMPLETE in states(conv)
        conv.close()


class TestRunLoop:
    """Real timers through the queue consumer."""

    @pytest.mark.asyncio
    async def test_silence_timer_fires(self):
        conv = Conversation("loop-conv", settings=DialogueSettings(silence_timeout=0.01))
        runner = asyncio.create_task(conv.run())

        conv.post(Start())
        conv.post(Utterance(TRANSFER_COMMAND))
        await asyncio.sleep(0.2)

        assert conv.state == DialogueState.CONFIRMING

        conv.close()
        await asyncio.wait_for(runner, timeout=1)


class TestSpeechDelay:
    """Prompt playback heuristic."""

    def test_default_rate(self):
        assert speech_delay("a" * 100) == pytest.approx(4.0)

    def test_accessibility_rate(self):
        assert speech_delay("a" * 100, accessibility_mode=True) == pytest.approx(6.5)
