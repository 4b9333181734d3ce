"""
Tests for the Field Extractor.

These tests verify that:
1. Type keywords classify utterances deterministically
2. Amount phrases are parsed with half-up rounding and a fixed priority
3. Identifiers are extracted only for the type that needs them
4. Continuation answers are gated to the context's type and missing fields
5. The semantic extractor is consulted only when the rules cannot classify
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from engine.draft import Classified, ConversationContext, Unclassified
from engine.errors import ExtractorUnavailableError, NoSpeechDetectedError
from engine.extract import (
    build_draft,
    classify_type,
    estimate_grams,
    extract_account_number,
    extract_fields,
    extract_phone_number,
    extract_transaction,
    parse_amount,
    sanitize_utterance,
)
from transactions.specs import TransactionType


class TestSanitizeUtterance:
    """Input cleanup before any extraction."""

    def test_strips_markup_characters(self):
        assert sanitize_utterance("transfer {100} ribu $") == "transfer 100 ribu"

    def test_strips_code_fences(self):
        assert sanitize_utterance("```json transfer 100 ribu```") == "transfer 100 ribu"

    def test_caps_length(self):
        assert len(sanitize_utterance("a" * 600)) == 500

    def test_empty_input(self):
        assert sanitize_utterance(None) == ""
        assert sanitize_utterance("  <> ") == ""


class TestClassifyType:
    """Keyword classification, first rule wins."""

    def test_transfer_keywords(self):
        assert classify_type("transfer 100 ribu ke BCA") == TransactionType.TRANSFER
        assert classify_type("kirim uang ke mandiri") == TransactionType.TRANSFER

    def test_ewallet_needs_verb_and_wallet(self):
        assert classify_type("top up gopay 50 ribu") == TransactionType.EWALLET
        assert classify_type("isi ovo 20 ribu") == TransactionType.EWALLET
        assert classify_type("top up") is None

    def test_pulsa_gold_token(self):
        assert classify_type("beli pulsa 20000") == TransactionType.PULSA
        assert classify_type("beli emas 2 gram") == TransactionType.GOLD
        assert classify_type("bayar token listrik") == TransactionType.TOKEN

    def test_transfer_wins_over_later_rules(self):
        assert classify_type("transfer buat beli pulsa") == TransactionType.TRANSFER

    def test_no_keyword(self):
        assert classify_type("halo apa kabar") is None


class TestParseAmount:
    """Amount parsing priority and rounding."""

    def test_ribu_suffixes(self):
        assert parse_amount("100 ribu") == "100000"
        assert parse_amount("100rb") == "100000"
        assert parse_amount("50k") == "50000"
        assert parse_amount("2,5 rb") == "2500"

    def test_juta_suffixes(self):
        assert parse_amount("1,5 juta") == "1500000"
        assert parse_amount("2.5jt") == "2500000"

    def test_compound_juta_ribu(self):
        assert parse_amount("1 juta 500 ribu") == "1500000"

    def test_plain_digits(self):
        assert parse_amount("beli pulsa 20000") == "20000"
        assert parse_amount("bayar 1.500.000") == "1500000"

    def test_short_digit_runs_are_not_amounts(self):
        assert parse_amount("nomor 500") is None

    def test_spoken_words(self):
        assert parse_amount("seratus ribu") == "100000"
        assert parse_amount("seratus lima puluh ribu") == "150000"

    def test_claimed_identifier_is_skipped(self):
        text = "transfer ke BCA 1234567890"
        assert parse_amount(text) == "1234567890"
        assert parse_amount(text, exclude=["1234567890"]) is None


class TestIdentifiers:
    """Phone, account and gram extraction."""

    def test_phone_country_code_normalized(self):
        assert extract_phone_number("6281234567890") == "081234567890"
        assert extract_phone_number("+6281234567890") == "081234567890"

    def test_phone_spoken_in_groups(self):
        assert extract_phone_number("ke 0812 3456 7890") == "081234567890"

    def test_phone_followed_by_unit_is_an_amount(self):
        assert extract_phone_number("1000000000 ribu") is None

    def test_account_number_length(self):
        assert extract_account_number("rekening 1234567890123") == "1234567890123"
        assert extract_account_number("rekening 12345") is None

    def test_gram_estimate_rounds_half_up(self):
        assert estimate_grams("1500000") == "2"
        assert estimate_grams("2500000") == "3"
        assert estimate_grams("400000") == "0"


class TestExtractFields:
    """Single-utterance extraction into a draft."""

    def test_complete_transfer(self):
        result = extract_fields("transfer 100 ribu ke BCA 1234567890")

        assert isinstance(result, Classified)
        assert result.draft.complete
        assert result.draft.fields == {
            "bank": "BCA",
            "accountNumber": "1234567890",
            "amount": "100000",
        }
        assert result.llm_used is False

    def test_transfer_with_only_amount(self):
        result = extract_fields("transfer 50 ribu")

        assert isinstance(result, Classified)
        assert result.draft.missing_fields == ["bank", "accountNumber"]

    def test_pulsa_without_phone(self):
        result = extract_fields("beli pulsa 20000")

        assert result.draft.transaction_type == TransactionType.PULSA
        assert result.draft.fields == {"amount": "20000"}
        assert result.draft.missing_fields == ["phoneNumber"]

    def test_pulsa_provider_from_prefix(self):
        result = extract_fields("beli pulsa 50 ribu ke 082354614676")

        assert result.draft.complete
        assert result.draft.fields["provider"] == "TELKOMSEL"
        assert result.draft.fields["phoneNumber"] == "082354614676"

    def test_pulsa_spoken_provider_when_prefix_unknown(self):
        result = extract_fields("beli pulsa indosat 20 ribu ke 089012345678")

        assert result.draft.fields["provider"] == "INDOSAT"

    def test_ewallet_grouped_phone_not_read_as_amount(self):
        result = extract_fields("top up gopay 100 ribu ke 0812 3456 7890")

        assert result.draft.fields == {
            "ewallet": "GOPAY",
            "phoneNumber": "081234567890",
            "amount": "100000",
        }

    def test_token_meter_number(self):
        result = extract_fields("beli token listrik 100 ribu meter 12345678901")

        assert result.draft.complete
        assert result.draft.fields["meterNumber"] == "12345678901"

    def test_gold_grams_only_is_complete(self):
        result = extract_fields("beli emas 2 gram")

        assert result.draft.complete
        assert result.draft.fields == {"grams": "2"}

    def test_gold_amount_estimates_grams(self):
        result = extract_fields("beli emas 1,5 juta")

        assert result.draft.fields == {"amount": "1500000", "grams": "2"}

    def test_unclassified(self):
        result = extract_fields("halo apa kabar")

        assert isinstance(result, Unclassified)
        assert result.reason == "no_type_keyword"


class TestExtractTransaction:
    """Tiered extraction: rules, continuation, semantic."""

    @pytest.mark.asyncio
    async def test_empty_utterance_is_no_speech(self):
        with pytest.raises(NoSpeechDetectedError):
            await extract_transaction("   ")

    @pytest.mark.asyncio
    async def test_rules_win_without_semantic_call(self):
        semantic = MagicMock()
        semantic.extract = AsyncMock()

        result = await extract_transaction("beli pulsa 20000", semantic_extractor=semantic)

        assert isinstance(result, Classified)
        semantic.extract.assert_not_called()

    @pytest.mark.asyncio
    async def test_continuation_answers_missing_field(self):
        prior = build_draft(TransactionType.PULSA, {"amount": "20000"})
        context = ConversationContext(draft=prior, last_prompt="Ke nomor HP berapa?")

        result = await extract_transaction("081234567890", context=context)

        assert isinstance(result, Classified)
        assert result.draft.transaction_type == TransactionType.PULSA
        assert result.draft.fields == {"phoneNumber": "081234567890"}

    @pytest.mark.asyncio
    async def test_continuation_ignores_fields_not_missing(self):
        prior = build_draft(TransactionType.TRANSFER, {"amount": "100000", "bank": "BCA"})
        context = ConversationContext(draft=prior)

        result = await extract_transaction("mandiri 1234567890", context=context)

        assert result.draft.fields == {"accountNumber": "1234567890"}

    @pytest.mark.asyncio
    async def test_unclassified_without_semantic_extractor(self):
        result = await extract_transaction("halo apa kabar")

        assert isinstance(result, Unclassified)

    @pytest.mark.asyncio
    async def test_semantic_extractor_used_when_rules_fail(self):
        draft = build_draft(TransactionType.TRANSFER, {"amount": "100000"})
        semantic = MagicMock()
        semantic.extract = AsyncMock(return_value=Classified(draft=draft, llm_used=True))

        result = await extract_transaction("tolong kirimkan seratus ribu", semantic_extractor=semantic)

        # "kirim" is a transfer keyword, so the rules answer first
        assert result.llm_used is False

        result = await extract_transaction("bayarin temanku seratus ribu", semantic_extractor=semantic)

        assert result.llm_used is True
        semantic.extract.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_semantic_failure_is_extractor_unavailable(self):
        semantic = MagicMock()
        semantic.extract = AsyncMock(side_effect=RuntimeError("connection reset"))

        with pytest.raises(ExtractorUnavailableError):
            await extract_transaction("bayarin temanku", semantic_extractor=semantic)
