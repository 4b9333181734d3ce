"""
Post-confirmation correction flow.

After the user rejects a confirmation, correction runs in two steps:
1. Field selection: match the utterance against the type's keyword table
2. Value capture: parse the next utterance with the selected field's grammar

Neither step guesses. An unmatched field or an unparseable value re-prompts
the same step and keeps the session alive.
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from transactions.lexicon import find_bank, find_ewallet, find_provider
from transactions.specs import (
    ACCOUNT_NUMBER,
    AMOUNT,
    BANK,
    EWALLET,
    FIELDS,
    GRAMS,
    METER_NUMBER,
    PHONE_NUMBER,
    PROVIDER,
    TransactionType,
    get_transaction_spec,
)
from .draft import TransactionDraft
from .extract import collapse_phone_groups, derive_fields, parse_amount
from .planner import is_valid_field
from .spoken import amount_to_words, spell_digits

logger = logging.getLogger(__name__)


class CorrectionStatus(str, Enum):
    """Outcome of feeding one utterance to the correction resolver."""
    FIELD_SELECTED = "FIELD_SELECTED"
    VALUE_APPLIED = "VALUE_APPLIED"
    UNRESOLVED = "UNRESOLVED"


@dataclass
class CorrectionSession:
    """Transient sub-dialogue; `target_field` is None while asking which field."""
    target_field: Optional[str] = None

    @property
    def awaiting_value(self) -> bool:
        return self.target_field is not None


@dataclass
class CorrectionOutcome:
    """Result of one correction step."""
    status: CorrectionStatus
    session: CorrectionSession
    draft: TransactionDraft
    prompt: Optional[str] = None


# =============================================================================
# FIELD SELECTION
# =============================================================================

def _mentions(text: str, keyword: str) -> bool:
    # Left word boundary only so "rekeningnya" and "nominalnya" still count
    return re.search(r"(?<![a-z0-9])" + re.escape(keyword), text.lower()) is not None


def select_correction_field(transaction_type: TransactionType, text: str) -> Optional[str]:
    """
    Match an utterance against the per-type keyword table.

    The table is ordered; the first field with a matching keyword wins.
    Returns None rather than guessing.
    """
    spec = get_transaction_spec(transaction_type)
    for field_name, keywords in spec.correction_keywords:
        if any(_mentions(text, keyword) for keyword in keywords):
            return field_name
    return None


def get_correction_prompt(transaction_type: Optional[TransactionType]) -> str:
    """The "which field is wrong" prompt for a type."""
    if transaction_type is None:
        return "Yang mana yang salah?"
    return get_transaction_spec(transaction_type).correction_prompt


def build_value_prompt(field_name: str, draft: Optional[TransactionDraft] = None) -> str:
    """
    Ask for the replacement value, reading back the current one.

    Falls back to a plain prompt when there is no current value.
    """
    field_spec = FIELDS.get(field_name)
    if field_spec is None:
        return "Yang benar apa?"

    current = draft.fields.get(field_name) if draft is not None else None
    if not current:
        return field_spec.fallback_prompt

    if field_name == AMOUNT:
        spoken = amount_to_words(current)
    elif field_name in (ACCOUNT_NUMBER, PHONE_NUMBER, METER_NUMBER):
        spoken = spell_digits(current)
    else:
        spoken = current
    return field_spec.value_prompt.format(current=spoken)


# =============================================================================
# VALUE CAPTURE
# =============================================================================

_LEADING_DECIMAL = re.compile(r"(\d+(?:[.,]\d+)?)")


def _parse_digits(text: str) -> Optional[str]:
    digits = re.sub(r"\D", "", collapse_phone_groups(text))
    return digits or None


def _parse_phone(text: str) -> Optional[str]:
    digits = _parse_digits(text)
    if not digits:
        return None
    if digits.startswith("62"):
        digits = "0" + digits[2:]
    elif not digits.startswith("0"):
        digits = "0" + digits
    return digits


def parse_correction_value(field_name: str, text: str) -> Optional[str]:
    """
    Parse a replacement value with the field-specific grammar.

    Args:
        field_name: The field being corrected
        text: The user's utterance

    Returns:
        The parsed value, or None if nothing usable was found
    """
    if field_name == BANK:
        return find_bank(text)
    if field_name == EWALLET:
        return find_ewallet(text)
    if field_name == PROVIDER:
        return find_provider(text)
    if field_name == AMOUNT:
        return parse_amount(text)
    if field_name == PHONE_NUMBER:
        return _parse_phone(text)
    if field_name in (ACCOUNT_NUMBER, METER_NUMBER):
        return _parse_digits(text)
    if field_name == GRAMS:
        match = _LEADING_DECIMAL.search(text)
        return match.group(1).replace(",", ".") if match else None
    return None


def apply_correction(draft: TransactionDraft, field_name: str, value: str) -> TransactionDraft:
    """Overwrite one field and keep everything else except what was derived from it."""
    corrected = draft.copy()
    corrected.fields[field_name] = value
    if draft.transaction_type == TransactionType.PULSA and field_name == PHONE_NUMBER:
        # Provider follows the phone number it was derived from
        corrected.fields.pop(PROVIDER, None)
        corrected.fields = derive_fields(draft.transaction_type, corrected.fields, finalize=True)
    return corrected


# =============================================================================
# RESOLVER
# =============================================================================

def resolve_correction(
    session: CorrectionSession,
    draft: TransactionDraft,
    text: str,
) -> CorrectionOutcome:
    """
    Feed one utterance into the correction session.

    In field-selection mode a matched keyword moves to value mode and returns
    the value prompt. In value mode a parsed, well-formed value is applied to
    the draft. Anything else is UNRESOLVED with a re-prompt for the same step.
    """
    if draft.transaction_type is None:
        raise ValueError("Correction requires a typed draft")

    if not session.awaiting_value:
        field_name = select_correction_field(draft.transaction_type, text)
        if field_name is None:
            logger.info("Correction field not recognized, re-prompting")
            return CorrectionOutcome(
                status=CorrectionStatus.UNRESOLVED,
                session=session,
                draft=draft,
                prompt=get_correction_prompt(draft.transaction_type),
            )
        logger.info(f"Correction field selected: {field_name}")
        return CorrectionOutcome(
            status=CorrectionStatus.FIELD_SELECTED,
            session=CorrectionSession(target_field=field_name),
            draft=draft,
            prompt=build_value_prompt(field_name, draft),
        )

    field_name = session.target_field
    value = parse_correction_value(field_name, text)
    if value is None:
        logger.info(f"Correction value for {field_name} not parsed, re-prompting")
        return CorrectionOutcome(
            status=CorrectionStatus.UNRESOLVED,
            session=session,
            draft=draft,
            prompt=build_value_prompt(field_name, draft),
        )

    if not is_valid_field(field_name, value):
        logger.info(f"Correction value for {field_name} failed format check")
        return CorrectionOutcome(
            status=CorrectionStatus.UNRESOLVED,
            session=session,
            draft=draft,
            prompt=FIELDS[field_name].invalid_message,
        )

    corrected = apply_correction(draft, field_name, value)
    logger.info(f"Correction applied: {field_name}")
    return CorrectionOutcome(
        status=CorrectionStatus.VALUE_APPLIED,
        session=CorrectionSession(),
        draft=corrected,
    )
