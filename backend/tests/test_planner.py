"""
Tests for the Completeness Validator, format rules and confirmation planning.
"""
import pytest

from engine.draft import TransactionDraft
from engine.extract import build_draft
from engine.planner import (
    build_confirmation_text,
    build_payment_payload,
    find_invalid_fields,
    get_missing_fields,
    is_valid_phone_number,
    select_prompt,
    validate_completeness,
)
from engine.spoken import amount_to_words, number_to_words, spell_digits
from transactions.specs import TransactionType


class TestMissingFields:
    """Missing fields in schema order."""

    def test_transfer_with_only_amount(self):
        missing = get_missing_fields(TransactionType.TRANSFER, {"amount": "100000"})
        assert missing == ["bank", "accountNumber"]

    def test_blank_values_count_as_missing(self):
        missing = get_missing_fields(TransactionType.PULSA, {"amount": "20000", "phoneNumber": "  "})
        assert missing == ["phoneNumber"]

    def test_gold_needs_any_one_field(self):
        assert get_missing_fields(TransactionType.GOLD, {}) == ["amount", "grams"]
        assert get_missing_fields(TransactionType.GOLD, {"grams": "1"}) == []


class TestPromptSelection:
    """Ordered prompt rules per type."""

    def test_transfer_joint_prompt(self):
        result = validate_completeness(TransactionType.TRANSFER, {"amount": "100000"})

        assert not result.complete
        assert result.prompt == "Ke bank apa dan nomor rekening berapa?"

    def test_transfer_amount_first(self):
        result = validate_completeness(TransactionType.TRANSFER, {"bank": "BCA"})
        assert result.prompt == "Nominalnya berapa?"

    def test_transfer_single_gaps(self):
        assert select_prompt(TransactionType.TRANSFER, ["accountNumber"]) == "Nomor rekeningnya berapa?"
        assert select_prompt(TransactionType.TRANSFER, ["bank"]) == "Ke bank apa?"

    def test_pulsa_phone_prompt(self):
        result = validate_completeness(TransactionType.PULSA, {"amount": "20000"})

        assert result.missing_fields == ["phoneNumber"]
        assert result.prompt == "Ke nomor HP berapa?"

    def test_ewallet_joint_rule_is_exact(self):
        assert (
            select_prompt(TransactionType.EWALLET, ["amount", "phoneNumber"])
            == "Nominal berapa dan ke nomor HP berapa?"
        )
        assert select_prompt(TransactionType.EWALLET, ["amount", "ewallet", "phoneNumber"]) == "Nominal berapa?"

    def test_complete_has_no_prompt(self):
        result = validate_completeness(
            TransactionType.TOKEN, {"amount": "100000", "meterNumber": "12345678901"}
        )
        assert result.complete
        assert result.prompt is None


class TestFormatRules:
    """Field format checks on completed drafts."""

    @pytest.mark.parametrize("phone", ["081234567890", "6281234567890", "+6281234567890", "0812-3456-7890"])
    def test_valid_phone_numbers(self, phone):
        assert is_valid_phone_number(phone)

    @pytest.mark.parametrize("phone", ["0212345678", "0812", "08012345678"])
    def test_invalid_phone_numbers(self, phone):
        assert not is_valid_phone_number(phone)

    def test_short_account_number_is_invalid(self):
        fields = {"amount": "100000", "bank": "BCA", "accountNumber": "12345"}
        assert find_invalid_fields(TransactionType.TRANSFER, fields) == ["accountNumber"]

    def test_zero_gram_estimate_is_valid(self):
        fields = {"amount": "400000", "grams": "0"}
        assert find_invalid_fields(TransactionType.GOLD, fields) == []


class TestConfirmation:
    """Spoken confirmation and payment payload."""

    def test_transfer_confirmation(self):
        draft = build_draft(
            TransactionType.TRANSFER,
            {"amount": "100000", "bank": "BCA", "accountNumber": "1234567890"},
        )

        assert build_confirmation_text(draft) == (
            "Transfer seratus ribu rupiah ke BCA, nomor rekening "
            "satu dua tiga. empat lima enam. tujuh delapan sembilan. nol. Sudah benar?"
        )

    def test_untyped_draft(self):
        assert build_confirmation_text(TransactionDraft()) == "Sudah benar?"

    def test_pulsa_payload(self):
        draft = build_draft(TransactionType.PULSA, {"amount": "20000", "phoneNumber": "081234567890"})

        assert build_payment_payload(draft) == {
            "type": "pulsa",
            "amount": "20000",
            "provider": "TELKOMSEL",
            "phoneNumber": "081234567890",
        }

    def test_payload_requires_type(self):
        with pytest.raises(ValueError):
            build_payment_payload(TransactionDraft())


class TestSpokenNumbers:
    """Indonesian number words and digit spelling."""

    @pytest.mark.parametrize("number,words", [
        (0, "nol"),
        (11, "sebelas"),
        (21, "dua puluh satu"),
        (100, "seratus"),
        (1000, "seribu"),
        (1500000, "satu juta lima ratus ribu"),
        (1250000000, "satu miliar dua ratus lima puluh juta"),
    ])
    def test_number_to_words(self, number, words):
        assert number_to_words(number) == words

    def test_amount_to_words_empty(self):
        assert amount_to_words("") == "nol"
        assert amount_to_words("20000") == "dua puluh ribu"

    def test_spell_digits_groups_of_three(self):
        assert spell_digits("0812") == "nol delapan satu. dua"
