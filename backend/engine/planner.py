"""
Deterministic completeness validation and confirmation planning.

This module is the single source of truth for "what is still missing" and
"what do we say next". It reads the TransactionSpec for the draft's type to
determine:
- Which required fields are missing (schema order)
- Which follow-up prompt to issue
- Whether present values pass their format rule
- The confirmation utterance and the payment handoff payload

NO LLM calls are made in this module. All logic is deterministic.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern

from transactions.specs import (
    ACCOUNT_NUMBER,
    AMOUNT,
    FIELDS,
    GRAMS,
    METER_NUMBER,
    PHONE_NUMBER,
    TransactionType,
    get_transaction_spec,
)
from .draft import TransactionDraft
from .spoken import amount_to_words, spell_digits

logger = logging.getLogger(__name__)


@dataclass
class CompletenessResult:
    """Missing fields in schema order plus the prompt to ask for them."""
    missing_fields: List[str] = field(default_factory=list)
    prompt: Optional[str] = None

    @property
    def complete(self) -> bool:
        return not self.missing_fields


# =============================================================================
# FIELD VALUE CHECKING
# =============================================================================

def is_field_filled(fields: Dict[str, str], name: str) -> bool:
    """A field is filled when present and not blank."""
    value = fields.get(name)
    if value is None:
        return False
    return str(value).strip() != ""


def get_missing_fields(transaction_type: TransactionType, fields: Dict[str, str]) -> List[str]:
    """
    Get the required fields that are missing, in schema order.

    For types with `require_any` (gold) a single filled field satisfies the
    schema; otherwise every required field must be filled.
    """
    spec = get_transaction_spec(transaction_type)
    missing = [name for name in spec.required_fields if not is_field_filled(fields, name)]
    if spec.require_any and len(missing) < len(spec.required_fields):
        return []
    return missing


def select_prompt(transaction_type: TransactionType, missing_fields: List[str]) -> Optional[str]:
    """
    Pick the follow-up prompt for the given gaps.

    Returns None when nothing is missing.
    """
    if not missing_fields:
        return None

    spec = get_transaction_spec(transaction_type)
    for rule in spec.prompt_rules:
        if rule.matches(missing_fields):
            return rule.prompt

    return FIELDS[missing_fields[0]].fallback_prompt


def validate_completeness(transaction_type: TransactionType, fields: Dict[str, str]) -> CompletenessResult:
    """
    Compute missing fields and the prompt for a (type, fields) pair.

    Args:
        transaction_type: The draft's type
        fields: Currently known field values

    Returns:
        CompletenessResult; prompt is None iff nothing is missing
    """
    missing = get_missing_fields(transaction_type, fields)
    return CompletenessResult(missing_fields=missing, prompt=select_prompt(transaction_type, missing))


# =============================================================================
# FORMAT RULES
# =============================================================================

PHONE_PATTERN = re.compile(r"^(\+62|62|0)8[1-9][0-9]{7,10}$")

FORMAT_RULES: Dict[str, Pattern] = {
    AMOUNT: re.compile(r"^[1-9][0-9]*$"),
    ACCOUNT_NUMBER: re.compile(r"^[0-9]{10,16}$"),
    PHONE_NUMBER: PHONE_PATTERN,
    METER_NUMBER: re.compile(r"^[0-9]{11,12}$"),
    GRAMS: re.compile(r"^[0-9]+(\.[0-9]+)?$"),
}


def is_valid_phone_number(phone: str) -> bool:
    """Indonesian mobile shape: 08.., 628.. or +628.. followed by 8-11 more digits."""
    cleaned = re.sub(r"[\s\-]", "", phone)
    return PHONE_PATTERN.match(cleaned) is not None


def is_valid_field(name: str, value: str) -> bool:
    """Check a single value against its format rule. Name fields have none."""
    if name == PHONE_NUMBER:
        return is_valid_phone_number(value)
    pattern = FORMAT_RULES.get(name)
    if pattern is None:
        return True
    return pattern.match(str(value).strip()) is not None


def find_invalid_fields(transaction_type: TransactionType, fields: Dict[str, str]) -> List[str]:
    """Return the names of present fields that fail their format rule, in schema order."""
    spec = get_transaction_spec(transaction_type)
    names = list(dict.fromkeys(spec.required_fields + spec.payment_fields))
    return [
        name for name in names
        if is_field_filled(fields, name) and not is_valid_field(name, fields[name])
    ]


# =============================================================================
# CONFIRMATION / PAYMENT
# =============================================================================

_SPELLED_FIELDS = (ACCOUNT_NUMBER, PHONE_NUMBER, METER_NUMBER)


def build_confirmation_text(draft: TransactionDraft) -> str:
    """
    Generate the spoken confirmation for a complete draft.

    Amounts are read as number words and identifiers spelled in groups of
    three digits so the speech output reads them unambiguously.
    """
    if draft.transaction_type is None:
        return "Sudah benar?"

    spec = get_transaction_spec(draft.transaction_type)
    values: Dict[str, str] = {name: "" for name in FIELDS}
    for name, value in draft.fields.items():
        if name == AMOUNT:
            values[name] = amount_to_words(value)
        elif name in _SPELLED_FIELDS:
            values[name] = spell_digits(value)
        else:
            values[name] = value
    if not values[AMOUNT]:
        values[AMOUNT] = "nol"

    return spec.confirm_template.format(**values)


def build_payment_payload(draft: TransactionDraft) -> Dict[str, str]:
    """
    Public fields handed to the payment boundary on completion.

    Only type, amount and the type-specific fields are included; missing
    fields and other bookkeeping never leave the engine.
    """
    if draft.transaction_type is None:
        raise ValueError("Cannot build a payment payload without a transaction type")

    spec = get_transaction_spec(draft.transaction_type)
    payload: Dict[str, str] = {"type": draft.transaction_type.value}
    for name in [AMOUNT] + spec.payment_fields:
        if is_field_filled(draft.fields, name):
            payload[name] = draft.fields[name]
    return payload
