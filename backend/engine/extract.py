"""
Field extraction logic.

This module turns a raw utterance into a typed partial transaction.
It uses a tiered approach:
1. Tier A (Deterministic): keyword type classification plus pattern matching
   for amounts, identifiers and names
2. Tier A' (Continuation): when a context exists and the utterance names no
   type, re-run Tier A gated to the context's type and its missing fields
3. Tier B (Semantic): the LLM extractor, only when Tier A cannot classify

The LLM is ONLY used as a parser, never for prompting or flow decisions.
"""
import logging
import math
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from transactions.lexicon import (
    DEFAULT_PROVIDER,
    contains_word,
    detect_provider,
    find_bank,
    find_ewallet,
    find_provider,
)
from transactions.specs import (
    ACCOUNT_NUMBER,
    AMOUNT,
    BANK,
    EWALLET,
    GRAMS,
    METER_NUMBER,
    PHONE_NUMBER,
    PROVIDER,
    TransactionType,
)
from .draft import (
    Classified,
    ConversationContext,
    ExtractionResult,
    TransactionDraft,
    Unclassified,
)
from .errors import DialogueError, ExtractorUnavailableError, NoSpeechDetectedError
from .planner import is_field_filled, validate_completeness

logger = logging.getLogger(__name__)

DEFAULT_GOLD_PRICE_PER_GRAM = 1_000_000
MAX_UTTERANCE_LENGTH = 500


# =============================================================================
# SANITIZATION
# =============================================================================

_CODE_FENCE = re.compile(r"```[a-zA-Z]*")
_UNSAFE_CHARS = re.compile(r"[<>{}\[\]\\$]")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def sanitize_utterance(text: Optional[str], max_length: int = MAX_UTTERANCE_LENGTH) -> str:
    """
    Strip markup and control characters and cap the length.

    Returns an empty string for missing or whitespace-only input.
    """
    if not text:
        return ""
    cleaned = _CODE_FENCE.sub(" ", text)
    cleaned = _UNSAFE_CHARS.sub("", cleaned)
    cleaned = _CONTROL_CHARS.sub(" ", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned)
    return cleaned[:max_length].strip()


# =============================================================================
# TYPE CLASSIFICATION
# =============================================================================

def _is_ewallet_command(lower: str) -> bool:
    has_verb = "top up" in lower or "topup" in lower or contains_word(lower, "isi")
    return has_verb and find_ewallet(lower) is not None


# Ordered, first match wins
TYPE_RULES: List[Tuple[TransactionType, Callable[[str], bool]]] = [
    (TransactionType.TRANSFER, lambda lower: "transfer" in lower or "kirim" in lower),
    (TransactionType.EWALLET, _is_ewallet_command),
    (TransactionType.PULSA, lambda lower: "pulsa" in lower or "paket data" in lower),
    (TransactionType.GOLD, lambda lower: "emas" in lower or "gold" in lower),
    (TransactionType.TOKEN, lambda lower: "token" in lower or "listrik" in lower or "pln" in lower),
]


def classify_type(text: str) -> Optional[TransactionType]:
    """Keyword-based type classification. Returns None when no keyword matches."""
    lower = text.lower()
    for transaction_type, matches in TYPE_RULES:
        if matches(lower):
            return transaction_type
    return None


# =============================================================================
# AMOUNT PARSING
# =============================================================================

_NUMERAL = r"(\d+(?:[.,]\d+)?)"
_RIBU = r"(?:ribu|rb|k)\b"
_JUTA = r"(?:juta|jt)\b"

_COMPOUND_PATTERN = re.compile(_NUMERAL + r"\s*" + _JUTA + r"\s*" + _NUMERAL + r"\s*" + _RIBU, re.IGNORECASE)
_RIBU_PATTERN = re.compile(_NUMERAL + r"\s*" + _RIBU, re.IGNORECASE)
_JUTA_PATTERN = re.compile(_NUMERAL + r"\s*" + _JUTA, re.IGNORECASE)
_DIGIT_TOKEN = re.compile(r"\d+(?:[.,]\d+)*")
_GROUPED_THOUSANDS = re.compile(r"^\d{1,3}(?:[.,]\d{3})+$")
_UNIT_AFTER = re.compile(r"^\s*(?:gram|gr|ribu|rb|k|juta|jt)\b", re.IGNORECASE)

# Spoken amounts, longest phrases first so "seratus lima puluh ribu" wins over "lima puluh ribu"
WORD_AMOUNTS: List[Tuple[str, int]] = [
    ("seratus lima puluh ribu", 150_000),
    ("dua ratus lima puluh ribu", 250_000),
    ("seratus ribu", 100_000),
    ("dua ratus ribu", 200_000),
    ("tiga ratus ribu", 300_000),
    ("empat ratus ribu", 400_000),
    ("lima ratus ribu", 500_000),
    ("enam ratus ribu", 600_000),
    ("tujuh ratus ribu", 700_000),
    ("delapan ratus ribu", 800_000),
    ("sembilan ratus ribu", 900_000),
    ("dua puluh lima ribu", 25_000),
    ("dua puluh ribu", 20_000),
    ("lima puluh ribu", 50_000),
    ("sepuluh ribu", 10_000),
    ("satu juta", 1_000_000),
    ("sejuta", 1_000_000),
    ("dua juta", 2_000_000),
    ("lima juta", 5_000_000),
]
_WORD_AMOUNT_PATTERNS = [
    (re.compile(r"\b" + phrase.replace(" ", r"\s*") + r"\b", re.IGNORECASE), value)
    for phrase, value in sorted(WORD_AMOUNTS, key=lambda item: len(item[0]), reverse=True)
]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _to_number(numeral: str) -> float:
    return float(numeral.replace(",", "."))


def _canonical_digits(digits: str) -> str:
    # 6281.. and 081.. and 81.. are the same number for exclusion purposes
    if digits.startswith("62") and len(digits) > 10:
        digits = digits[2:]
    return digits.lstrip("0")


def parse_amount(text: str, exclude: Iterable[Optional[str]] = ()) -> Optional[str]:
    """
    Parse an amount in rupiah from free text.

    Priority:
    1. "<n> juta <m> ribu" compound
    2. "<n> ribu|rb|k" (x1,000)
    3. "<n> juta|jt" (x1,000,000)
    4. A plain digit run of 4+ digits, "." and "," read as thousands separators
    5. A closed table of spoken-word amounts

    Args:
        text: Utterance text
        exclude: Digit strings already claimed as identifiers; skipped by rule 4

    Returns:
        Amount as a digit string, or None
    """
    match = _COMPOUND_PATTERN.search(text)
    if match:
        value = _to_number(match.group(1)) * 1_000_000 + _to_number(match.group(2)) * 1_000
        return str(_round_half_up(value))

    match = _RIBU_PATTERN.search(text)
    if match:
        return str(_round_half_up(_to_number(match.group(1)) * 1_000))

    match = _JUTA_PATTERN.search(text)
    if match:
        return str(_round_half_up(_to_number(match.group(1)) * 1_000_000))

    claimed = {_canonical_digits(e) for e in exclude if e}
    for token in _DIGIT_TOKEN.finditer(text):
        raw = token.group(0)
        if any(sep in raw for sep in ".,"):
            if not _GROUPED_THOUSANDS.match(raw):
                continue
            digits = re.sub(r"[.,]", "", raw)
        elif len(raw) >= 4:
            digits = raw
        else:
            continue
        if _canonical_digits(digits) in claimed:
            continue
        if _UNIT_AFTER.match(text[token.end():]):
            continue
        return digits

    for pattern, value in _WORD_AMOUNT_PATTERNS:
        if pattern.search(text):
            return str(value)

    return None


# =============================================================================
# ENTITY EXTRACTION
# =============================================================================

_NOT_AMOUNT = r"(?!\s*(?:ribu|rb|k|juta|jt)\b)"
_COUNTRY_CODE_PHONE = re.compile(r"(?<!\d)\+?62(8\d{8,11})(?!\d)" + _NOT_AMOUNT, re.IGNORECASE)
_PHONE = re.compile(r"(?<!\d)(0\d{9,12}|\d{9,12})(?!\d)" + _NOT_AMOUNT, re.IGNORECASE)
_ACCOUNT = re.compile(r"(?<!\d)(\d{10,16})(?!\d)" + _NOT_AMOUNT, re.IGNORECASE)
_METER = re.compile(r"(?<!\d)(\d{11,12})(?!\d)" + _NOT_AMOUNT, re.IGNORECASE)
# "0812 3456 7890" / "0812-3456-7890" as spoken by speech-to-text
_GROUPED_PHONE = re.compile(r"(?<!\d)(0\d{2,4}(?:[ \-]\d{3,4}){1,2})(?!\d)")
_GRAMS = re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:gram|gr)\b", re.IGNORECASE)


def collapse_phone_groups(text: str) -> str:
    """Join a 0-prefixed number spoken in groups ("0812 3456 7890") into one digit run."""
    return _GROUPED_PHONE.sub(lambda m: re.sub(r"[ \-]", "", m.group(1)), text)


def extract_phone_number(text: str) -> Optional[str]:
    """
    Extract a phone number (9-12 digits), normalized to a leading 0.

    Accepts 62/+62 country-code forms and digit groups separated by spaces or dashes.
    """
    text = collapse_phone_groups(text)

    match = _COUNTRY_CODE_PHONE.search(text)
    if match:
        return "0" + match.group(1)

    match = _PHONE.search(text)
    if match:
        phone = match.group(1)
        if not phone.startswith("0"):
            phone = "0" + phone
        return phone
    return None


def extract_account_number(text: str) -> Optional[str]:
    """Extract a bank account number (10-16 digits)."""
    match = _ACCOUNT.search(text)
    return match.group(1) if match else None


def extract_meter_number(text: str) -> Optional[str]:
    """Extract a PLN meter number (11-12 digits)."""
    match = _METER.search(text)
    return match.group(1) if match else None


def extract_grams(text: str) -> Optional[str]:
    """Extract "<n> gram|gr" as a decimal string with a point separator."""
    match = _GRAMS.search(text)
    if not match:
        return None
    return match.group(1).replace(",", ".")


def estimate_grams(amount: str, price_per_gram: int = DEFAULT_GOLD_PRICE_PER_GRAM) -> str:
    """Rough gram estimate for a gold purchase given only an amount."""
    return str(_round_half_up(int(amount) / price_per_gram))


# =============================================================================
# TYPE-GATED ASSEMBLY
# =============================================================================

def derive_fields(
    transaction_type: TransactionType,
    fields: Dict[str, str],
    gold_price_per_gram: int = DEFAULT_GOLD_PRICE_PER_GRAM,
    finalize: bool = False,
) -> Dict[str, str]:
    """
    Fill fields that are never asked for explicitly.

    - pulsa: provider from the phone prefix; TELKOMSEL only when finalizing
    - gold: grams estimated from the amount when no grams were stated

    Returns a new dict; the input is not modified.
    """
    derived = dict(fields)

    if transaction_type == TransactionType.PULSA and is_field_filled(derived, PHONE_NUMBER):
        if not is_field_filled(derived, PROVIDER):
            provider = detect_provider(derived[PHONE_NUMBER])
            if provider:
                derived[PROVIDER] = provider
            elif finalize:
                derived[PROVIDER] = DEFAULT_PROVIDER

    if transaction_type == TransactionType.GOLD:
        if is_field_filled(derived, AMOUNT) and not is_field_filled(derived, GRAMS):
            if derived[AMOUNT].isdigit():
                derived[GRAMS] = estimate_grams(derived[AMOUNT], gold_price_per_gram)

    return derived


def build_draft(
    transaction_type: TransactionType,
    fields: Dict[str, str],
    gold_price_per_gram: int = DEFAULT_GOLD_PRICE_PER_GRAM,
) -> TransactionDraft:
    """Derive implicit fields, compute what is missing and return a fresh draft."""
    derived = derive_fields(transaction_type, fields, gold_price_per_gram)
    completeness = validate_completeness(transaction_type, derived)
    if completeness.complete:
        derived = derive_fields(transaction_type, derived, gold_price_per_gram, finalize=True)
    return TransactionDraft(
        transaction_type=transaction_type,
        fields=derived,
        missing_fields=completeness.missing_fields,
    )


def extract_fields_for_type(
    text: str,
    transaction_type: TransactionType,
    only_fields: Optional[Iterable[str]] = None,
) -> Dict[str, str]:
    """
    Extract the fields relevant to one transaction type.

    Overlapping digit patterns (account/phone/meter) are disambiguated here by
    type: only the identifier the type needs is looked for.

    Args:
        text: Sanitized utterance
        transaction_type: The type to extract for
        only_fields: If given, keep only these field names

    Returns:
        Mapping of found field names to values (no derived fields)
    """
    fields: Dict[str, Optional[str]] = {}
    identifier: Optional[str] = None

    if transaction_type in (TransactionType.EWALLET, TransactionType.PULSA):
        text = collapse_phone_groups(text)

    if transaction_type == TransactionType.TRANSFER:
        fields[BANK] = find_bank(text)
        identifier = fields[ACCOUNT_NUMBER] = extract_account_number(text)
    elif transaction_type == TransactionType.EWALLET:
        fields[EWALLET] = find_ewallet(text)
        identifier = fields[PHONE_NUMBER] = extract_phone_number(text)
    elif transaction_type == TransactionType.PULSA:
        identifier = fields[PHONE_NUMBER] = extract_phone_number(text)
        spoken_provider = find_provider(text)
        if identifier:
            fields[PROVIDER] = detect_provider(identifier) or spoken_provider
        else:
            fields[PROVIDER] = spoken_provider
    elif transaction_type == TransactionType.TOKEN:
        identifier = fields[METER_NUMBER] = extract_meter_number(text)
    elif transaction_type == TransactionType.GOLD:
        fields[GRAMS] = extract_grams(text)

    fields[AMOUNT] = parse_amount(text, exclude=[identifier])

    found = {name: value for name, value in fields.items() if value}
    if only_fields is not None:
        wanted = set(only_fields)
        found = {name: value for name, value in found.items() if name in wanted}
    return found


def extract_fields(
    text: str,
    gold_price_per_gram: int = DEFAULT_GOLD_PRICE_PER_GRAM,
) -> ExtractionResult:
    """
    Tier A: classify and extract from a single utterance.

    Returns:
        Classified with a draft (possibly incomplete), or Unclassified when no
        type keyword is present
    """
    transaction_type = classify_type(text)
    if transaction_type is None:
        return Unclassified(reason="no_type_keyword")

    fields = extract_fields_for_type(text, transaction_type)
    draft = build_draft(transaction_type, fields, gold_price_per_gram)
    logger.info(
        f"Deterministic extraction: type={transaction_type.value} "
        f"fields={sorted(draft.fields)} missing={draft.missing_fields}"
    )
    return Classified(draft=draft)


def extract_continuation(
    text: str,
    context: ConversationContext,
    gold_price_per_gram: int = DEFAULT_GOLD_PRICE_PER_GRAM,
) -> Optional[Classified]:
    """
    Tier A': answer to a follow-up prompt, e.g. a bare "081234567890".

    The context's type gates extraction and only its missing fields are taken.
    The returned draft holds the new fields only; merging is the caller's job.
    """
    prior = context.draft
    if prior.transaction_type is None or not prior.missing_fields:
        return None

    fields = extract_fields_for_type(text, prior.transaction_type, only_fields=prior.missing_fields)
    if not fields:
        return None

    logger.info(f"Continuation extraction: type={prior.transaction_type.value} fields={sorted(fields)}")
    draft = TransactionDraft(transaction_type=prior.transaction_type, fields=fields)
    return Classified(draft=draft)


# =============================================================================
# MAIN EXTRACTION FUNCTION
# =============================================================================

async def extract_transaction(
    text: str,
    context: Optional[ConversationContext] = None,
    semantic_extractor: Any = None,
    gold_price_per_gram: int = DEFAULT_GOLD_PRICE_PER_GRAM,
) -> ExtractionResult:
    """
    Extract a transaction from an utterance.

    Uses tiered extraction:
    1. Deterministic classification and field extraction
    2. Continuation of the context's transaction when no type keyword is present
    3. The semantic extractor, when configured

    Args:
        text: Raw utterance text (sanitized here)
        context: Prior ConversationContext, if any
        semantic_extractor: Object with an async extract(text, context) method
        gold_price_per_gram: Divisor for the gram estimate

    Returns:
        Classified or Unclassified

    Raises:
        NoSpeechDetectedError: If the utterance is empty after sanitization
        ExtractorUnavailableError: If the semantic extractor fails
    """
    sanitized = sanitize_utterance(text)
    if not sanitized:
        raise NoSpeechDetectedError("empty utterance")

    result = extract_fields(sanitized, gold_price_per_gram)
    if isinstance(result, Classified):
        return result

    if context is not None:
        continued = extract_continuation(sanitized, context, gold_price_per_gram)
        if continued is not None:
            return continued

    if semantic_extractor is None:
        return result

    try:
        return await semantic_extractor.extract(sanitized, context)
    except DialogueError:
        raise
    except Exception as e:
        logger.error(f"Semantic extraction error: {e}")
        raise ExtractorUnavailableError(str(e))
