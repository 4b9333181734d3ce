"""
TransactionSpec and FieldSpec definitions.

This module defines the declarative specification for each transaction type.
The extractor, the completeness validator and the correction resolver read
these specs instead of branching per type.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class TransactionType(str, Enum):
    """Closed set of transaction types the engine can assemble."""
    TRANSFER = "transfer"
    EWALLET = "ewallet"
    PULSA = "pulsa"
    GOLD = "gold"
    TOKEN = "token"


# Field names are the wire names used by the extractor endpoint and the payment handoff
AMOUNT = "amount"
BANK = "bank"
ACCOUNT_NUMBER = "accountNumber"
EWALLET = "ewallet"
PHONE_NUMBER = "phoneNumber"
PROVIDER = "provider"
GRAMS = "grams"
METER_NUMBER = "meterNumber"

FIELD_NAMES: Tuple[str, ...] = (
    AMOUNT, BANK, ACCOUNT_NUMBER, EWALLET, PHONE_NUMBER, PROVIDER, GRAMS, METER_NUMBER,
)


@dataclass
class FieldSpec:
    """
    Specification for a single transaction field.

    Attributes:
        name: The field key (e.g., "amount", "accountNumber")
        value_prompt: Prompt used in correction value mode; may reference {current}
        fallback_prompt: Prompt used when there is no current value to read back
        invalid_message: User-facing message when the value fails its format rule
    """
    name: str
    value_prompt: str
    fallback_prompt: str
    invalid_message: str


FIELDS: Dict[str, FieldSpec] = {
    AMOUNT: FieldSpec(
        name=AMOUNT,
        value_prompt="Sekarang {current} rupiah. Nominal yang baru?",
        fallback_prompt="Nominalnya berapa?",
        invalid_message="Nominalnya belum valid. Coba sebutkan lagi ya.",
    ),
    BANK: FieldSpec(
        name=BANK,
        value_prompt="Sekarang {current}. Bank yang baru?",
        fallback_prompt="Nama banknya?",
        invalid_message="Nama banknya belum dikenali. Coba sebutkan lagi ya.",
    ),
    ACCOUNT_NUMBER: FieldSpec(
        name=ACCOUNT_NUMBER,
        value_prompt="Sekarang {current}. Nomor rekening yang baru?",
        fallback_prompt="Nomor rekeningnya?",
        invalid_message="Nomor rekening harus 10 sampai 16 digit.",
    ),
    EWALLET: FieldSpec(
        name=EWALLET,
        value_prompt="Sekarang {current}. E-wallet yang baru?",
        fallback_prompt="Nama e-walletnya?",
        invalid_message="Nama e-walletnya belum dikenali. Coba sebutkan lagi ya.",
    ),
    PHONE_NUMBER: FieldSpec(
        name=PHONE_NUMBER,
        value_prompt="Sekarang {current}. Nomor HP yang baru?",
        fallback_prompt="Nomor HPnya?",
        invalid_message="Nomor HP harus nomor Indonesia yang valid (contoh: 08123456789)",
    ),
    PROVIDER: FieldSpec(
        name=PROVIDER,
        value_prompt="Sekarang {current}. Provider yang baru?",
        fallback_prompt="Nama providernya?",
        invalid_message="Nama providernya belum dikenali. Coba sebutkan lagi ya.",
    ),
    GRAMS: FieldSpec(
        name=GRAMS,
        value_prompt="Sekarang {current} gram. Berapa gram yang baru?",
        fallback_prompt="Berapa gram?",
        invalid_message="Jumlah gramnya belum valid. Coba sebutkan lagi ya.",
    ),
    METER_NUMBER: FieldSpec(
        name=METER_NUMBER,
        value_prompt="Sekarang {current}. Nomor meter yang baru?",
        fallback_prompt="Nomor meternya?",
        invalid_message="Nomor meter PLN harus 11 atau 12 digit.",
    ),
}


@dataclass
class PromptRule:
    """Ask `prompt` when every field in `when_missing` is missing (and nothing else, if exact)."""
    when_missing: FrozenSet[str]
    prompt: str
    exact: bool = False

    def matches(self, missing: Iterable[str]) -> bool:
        missing_set = set(missing)
        if self.exact:
            return missing_set == set(self.when_missing)
        return self.when_missing <= missing_set


@dataclass
class TransactionSpec:
    """
    Complete specification for a transaction type.

    Drives missing-field computation, follow-up prompts, correction targeting,
    the confirmation utterance and the payment handoff payload.
    """
    transaction_type: TransactionType

    # Required fields in prompt/report order
    required_fields: List[str]
    # When True, any one of required_fields satisfies the schema (gold)
    require_any: bool = False

    # Ordered: first rule whose fields are all missing wins
    prompt_rules: List[PromptRule] = field(default_factory=list)

    # Correction: ordered (field, keywords) table and the "which field" prompt
    correction_keywords: List[Tuple[str, Tuple[str, ...]]] = field(default_factory=list)
    correction_prompt: str = "Yang mana yang salah?"

    # Confirmation utterance template; placeholders are filled by the planner
    confirm_template: str = "Sudah benar?"

    # Fields forwarded to the payment boundary besides type and amount
    payment_fields: List[str] = field(default_factory=list)

    def get_correctable_fields(self) -> List[str]:
        return [name for name, _ in self.correction_keywords]


# =============================================================================
# TRANSACTION REGISTRY
# =============================================================================

TRANSFER_SPEC = TransactionSpec(
    transaction_type=TransactionType.TRANSFER,
    required_fields=[AMOUNT, BANK, ACCOUNT_NUMBER],
    prompt_rules=[
        PromptRule(frozenset({AMOUNT}), "Nominalnya berapa?"),
        PromptRule(frozenset({BANK, ACCOUNT_NUMBER}), "Ke bank apa dan nomor rekening berapa?"),
        PromptRule(frozenset({BANK}), "Ke bank apa?"),
        PromptRule(frozenset({ACCOUNT_NUMBER}), "Nomor rekeningnya berapa?"),
    ],
    correction_keywords=[
        (BANK, ("bank",)),
        (ACCOUNT_NUMBER, ("rekening", "nomor")),
        (AMOUNT, ("nominal", "jumlah")),
    ],
    correction_prompt="Yang mana yang salah? Bank, nomor rekening, atau nominal?",
    confirm_template="Transfer {amount} rupiah ke {bank}, nomor rekening {accountNumber}. Sudah benar?",
    payment_fields=[BANK, ACCOUNT_NUMBER],
)

EWALLET_SPEC = TransactionSpec(
    transaction_type=TransactionType.EWALLET,
    required_fields=[AMOUNT, EWALLET, PHONE_NUMBER],
    prompt_rules=[
        PromptRule(frozenset({AMOUNT, PHONE_NUMBER}), "Nominal berapa dan ke nomor HP berapa?", exact=True),
        PromptRule(frozenset({AMOUNT}), "Nominal berapa?"),
        PromptRule(frozenset({PHONE_NUMBER}), "Ke nomor HP berapa?"),
        PromptRule(frozenset({EWALLET}), "E-wallet apa?"),
    ],
    correction_keywords=[
        (EWALLET, ("wallet", "ewallet", "e-wallet")),
        (PHONE_NUMBER, ("hp", "nomor", "telepon")),
        (AMOUNT, ("nominal", "jumlah")),
    ],
    correction_prompt="Yang mana yang salah? E-wallet, nomor HP, atau nominal?",
    confirm_template="Top up {ewallet} {amount} rupiah ke nomor {phoneNumber}. Sudah benar?",
    payment_fields=[EWALLET, PHONE_NUMBER],
)

PULSA_SPEC = TransactionSpec(
    transaction_type=TransactionType.PULSA,
    required_fields=[AMOUNT, PHONE_NUMBER],
    prompt_rules=[
        PromptRule(frozenset({PHONE_NUMBER}), "Ke nomor HP berapa?"),
        PromptRule(frozenset({AMOUNT}), "Nominal berapa?"),
    ],
    correction_keywords=[
        (PROVIDER, ("provider",)),
        (PHONE_NUMBER, ("hp", "nomor", "telepon")),
        (AMOUNT, ("nominal", "jumlah")),
    ],
    correction_prompt="Yang mana yang salah? Provider, nomor HP, atau nominal?",
    confirm_template="Beli pulsa {provider} {amount} rupiah ke nomor {phoneNumber}. Sudah benar?",
    payment_fields=[PROVIDER, PHONE_NUMBER],
)

GOLD_SPEC = TransactionSpec(
    transaction_type=TransactionType.GOLD,
    required_fields=[AMOUNT, GRAMS],
    require_any=True,
    prompt_rules=[
        PromptRule(frozenset({AMOUNT}), "Nominal berapa?"),
        PromptRule(frozenset({GRAMS}), "Berapa gram?"),
    ],
    correction_keywords=[
        (GRAMS, ("gram",)),
        (AMOUNT, ("nominal", "jumlah")),
    ],
    correction_prompt="Yang mana yang salah? Jumlah gram atau nominal?",
    confirm_template="Beli emas {grams} gram senilai {amount} rupiah. Sudah benar?",
    payment_fields=[GRAMS],
)

TOKEN_SPEC = TransactionSpec(
    transaction_type=TransactionType.TOKEN,
    required_fields=[AMOUNT, METER_NUMBER],
    prompt_rules=[
        PromptRule(frozenset({METER_NUMBER}), "Nomor meter PLN-nya berapa?"),
        PromptRule(frozenset({AMOUNT}), "Nominal berapa?"),
    ],
    correction_keywords=[
        (METER_NUMBER, ("meter",)),
        (AMOUNT, ("nominal", "jumlah")),
    ],
    correction_prompt="Yang mana yang salah? Nomor meter atau nominal?",
    confirm_template="Token listrik {amount} rupiah untuk meter {meterNumber}. Sudah benar?",
    payment_fields=[METER_NUMBER],
)

TRANSACTIONS: Dict[TransactionType, TransactionSpec] = {
    TransactionType.TRANSFER: TRANSFER_SPEC,
    TransactionType.EWALLET: EWALLET_SPEC,
    TransactionType.PULSA: PULSA_SPEC,
    TransactionType.GOLD: GOLD_SPEC,
    TransactionType.TOKEN: TOKEN_SPEC,
}


def get_transaction_spec(transaction_type) -> TransactionSpec:
    """
    Get the TransactionSpec for a transaction type.

    Args:
        transaction_type: TransactionType or its string value

    Returns:
        The TransactionSpec

    Raises:
        ValueError: If the type is unknown
    """
    try:
        key = TransactionType(transaction_type)
    except ValueError:
        raise ValueError(f"Unknown transaction type: {transaction_type}")
    return TRANSACTIONS[key]


# =============================================================================
# TYPE ENABLEMENT
# =============================================================================

# Types the product knows about; sedekah has no spec and stays gated off
DEFAULT_ENABLED_TYPES: Dict[str, bool] = {
    "transfer": True,
    "ewallet": True,
    "pulsa": True,
    "token": True,
    "gold": False,
    "sedekah": False,
}


class TypeEnablement:
    """Static predicate deciding which transaction types may be completed."""

    def __init__(self, enabled: Optional[Iterable[str]] = None):
        if enabled is None:
            self._config = dict(DEFAULT_ENABLED_TYPES)
        else:
            wanted = {t.strip().lower() for t in enabled if t and t.strip()}
            self._config = {t: t in wanted for t in set(DEFAULT_ENABLED_TYPES) | wanted}

    def is_enabled(self, transaction_type: str) -> bool:
        return self._config.get(str(transaction_type).lower(), False)

    def is_known(self, transaction_type: str) -> bool:
        return str(transaction_type).lower() in self._config

    def enabled_types(self) -> List[str]:
        return [t for t, on in self._config.items() if on]
