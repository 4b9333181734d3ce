"""
Closed vocabularies used by the extractor, the correction resolver and the
dialogue state machine.

Every list here is a static lookup table so it can be unit tested on its own
and localized without touching control flow.
"""
import re
from typing import Dict, FrozenSet, List, Optional, Tuple


# =============================================================================
# BANKS / E-WALLETS / MOBILE PROVIDERS
# =============================================================================

# Uppercase match key -> canonical display name
BANKS: Dict[str, str] = {
    "BCA": "BCA",
    "MANDIRI": "Mandiri",
    "BNI": "BNI",
    "BRI": "BRI",
    "CIMB": "CIMB",
    "CIMB NIAGA": "CIMB Niaga",
    "PERMATA": "Permata",
    "DANAMON": "Danamon",
    "MEGA": "Mega",
    "BTN": "BTN",
    "BTPN": "BTPN",
    "JENIUS": "Jenius",
    "OCBC": "OCBC",
    "OCBC NISP": "OCBC NISP",
    "HSBC": "HSBC",
    "MAYBANK": "Maybank",
    "UOB": "UOB",
    "PANIN": "Panin",
    "BUKOPIN": "Bukopin",
    "SINARMAS": "Sinarmas",
    "BSI": "BSI",
    "MUAMALAT": "Muamalat",
    "COMMONWEALTH": "Commonwealth",
    "CITIBANK": "Citibank",
    "STANDARD CHARTERED": "Standard Chartered",
    "DBS": "DBS",
    "BANK JAGO": "Bank Jago",
    "SEABANK": "SeaBank",
    "NEO COMMERCE": "Neo Commerce",
    "NOBU": "Nobu",
    "ALLO BANK": "Allo Bank",
    "SUPERBANK": "Superbank",
    "LINE BANK": "LINE Bank",
    "MOTION BANKING": "Motion Banking",
    "BNC": "BNC",
    "DIGIBANK": "Digibank",
}

EWALLETS: Dict[str, str] = {
    "GOPAY": "GOPAY",
    "GOPAYLATER": "GOPAYLATER",
    "OVO": "OVO",
    "DANA": "DANA",
    "SHOPEEPAY": "SHOPEEPAY",
    "LINKAJA": "LINKAJA",
    "ISAKU": "ISAKU",
    "SAKUKU": "SAKUKU",
    "DOKU": "DOKU",
    "PAYPRO": "PAYPRO",
    "KREDIVO": "KREDIVO",
    "AKULAKU": "AKULAKU",
    "BLUEPAY": "BLUEPAY",
    "TRUEMONEY": "TRUEMONEY",
    "YUKK": "YUKK",
    "ASTRAPAY": "ASTRAPAY",
}

# Spoken/two-word variants collapsed before lookup
EWALLET_ALIASES: Dict[str, str] = {
    "GO PAY": "GOPAY",
    "GO-PAY": "GOPAY",
    "SHOPEE PAY": "SHOPEEPAY",
    "SHOPEE": "SHOPEEPAY",
    "LINK AJA": "LINKAJA",
    "I SAKU": "ISAKU",
    "ASTRA PAY": "ASTRAPAY",
}

PROVIDERS: Dict[str, str] = {
    "TELKOMSEL": "TELKOMSEL",
    "SIMPATI": "TELKOMSEL",
    "INDOSAT": "INDOSAT",
    "IM3": "INDOSAT",
    "XL": "XL",
    "AXIS": "AXIS",
    "TRI": "TRI",
    "THREE": "TRI",
    "SMARTFREN": "SMARTFREN",
}

PROVIDER_PREFIXES: Dict[str, List[str]] = {
    "TELKOMSEL": ["0811", "0812", "0813", "0821", "0822", "0823", "0851", "0852", "0853"],
    "INDOSAT": ["0814", "0815", "0816", "0855", "0856", "0857", "0858"],
    "XL": ["0817", "0818", "0819", "0859", "0877", "0878"],
    "AXIS": ["0831", "0832", "0833", "0838"],
    "TRI": ["0895", "0896", "0897", "0898", "0899"],
    "SMARTFREN": ["0881", "0882", "0883", "0884", "0885", "0886", "0887", "0888", "0889"],
}

DEFAULT_PROVIDER = "TELKOMSEL"


# =============================================================================
# DIALOGUE KEYWORD SETS
# =============================================================================

CONFIRM_WORDS: FrozenSet[str] = frozenset({
    "konfirmasi", "confirm", "ya", "iya", "oke", "ok", "lanjut", "benar", "betul",
})

CANCEL_WORDS: FrozenSet[str] = frozenset({
    "batal", "ulangi", "cancel", "tidak",
})

CORRECTION_WORDS: FrozenSet[str] = frozenset({
    "salah", "koreksi", "ganti", "ubah",
})


# =============================================================================
# MATCHING HELPERS
# =============================================================================

def contains_word(text: str, word: str) -> bool:
    """Whole-word, case-insensitive containment ("ya" does not match "saya")."""
    pattern = r"(?<![a-z0-9])" + re.escape(word.lower()) + r"(?![a-z0-9])"
    return re.search(pattern, text.lower()) is not None


def contains_any_word(text: str, words) -> bool:
    return any(contains_word(text, w) for w in words)


def _contains_name(upper_text: str, name: str) -> bool:
    # Letter boundaries only, so "BCA1234" still matches but "DANAMON" does not match "DANA"
    pattern = r"(?<![A-Z])" + re.escape(name) + r"(?![A-Z])"
    return re.search(pattern, upper_text) is not None


def _longest_first(names: Dict[str, str]) -> List[Tuple[str, str]]:
    return sorted(names.items(), key=lambda item: len(item[0]), reverse=True)


def _normalize_aliases(upper_text: str, aliases: Dict[str, str]) -> str:
    for alias, canonical in _longest_first(aliases):
        if _contains_name(upper_text, alias):
            upper_text = re.sub(
                r"(?<![A-Z])" + re.escape(alias) + r"(?![A-Z])", canonical, upper_text
            )
    return upper_text


def find_bank(text: str) -> Optional[str]:
    """Return the canonical bank name mentioned in text, if any."""
    upper = text.upper()
    for key, display in _longest_first(BANKS):
        if _contains_name(upper, key):
            return display
    return None


def find_ewallet(text: str) -> Optional[str]:
    """Return the canonical e-wallet name mentioned in text, if any."""
    upper = _normalize_aliases(text.upper(), EWALLET_ALIASES)
    for key, display in _longest_first(EWALLETS):
        if _contains_name(upper, key):
            return display
    return None


def find_provider(text: str) -> Optional[str]:
    """Return the mobile provider named in text, if any."""
    upper = text.upper()
    for key, display in _longest_first(PROVIDERS):
        if _contains_name(upper, key):
            return display
    return None


def detect_provider(phone: str) -> Optional[str]:
    """Map a 0-prefixed phone number to its provider via the 4-digit prefix table."""
    prefix = phone[:4]
    for provider, prefixes in PROVIDER_PREFIXES.items():
        if prefix in prefixes:
            return provider
    return None
