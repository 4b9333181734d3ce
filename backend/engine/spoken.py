"""
Spoken-form rendering of numbers for the speech output.

Amounts are read as Indonesian number words; identifiers (account, phone and
meter numbers) are spelled digit by digit in groups of three so the speech
engine does not read them as one huge number.
"""
import re
from typing import List, Optional, Union

_ONES = ["", "satu", "dua", "tiga", "empat", "lima", "enam", "tujuh", "delapan", "sembilan"]
_TEENS = [
    "sepuluh", "sebelas", "dua belas", "tiga belas", "empat belas",
    "lima belas", "enam belas", "tujuh belas", "delapan belas", "sembilan belas",
]
_DIGITS = ["nol", "satu", "dua", "tiga", "empat", "lima", "enam", "tujuh", "delapan", "sembilan"]


def _convert(n: int) -> str:
    if n == 0:
        return ""
    if n < 10:
        return _ONES[n]
    if n < 20:
        return _TEENS[n - 10]
    if n < 100:
        tens, rest = divmod(n, 10)
        head = "sepuluh" if tens == 1 else f"{_ONES[tens]} puluh"
        return f"{head} {_ONES[rest]}" if rest else head
    if n < 1000:
        hundreds, rest = divmod(n, 100)
        head = "seratus" if hundreds == 1 else f"{_ONES[hundreds]} ratus"
        return f"{head} {_convert(rest)}" if rest else head
    if n < 1_000_000:
        thousands, rest = divmod(n, 1000)
        head = "seribu" if thousands == 1 else f"{_convert(thousands)} ribu"
        return f"{head} {_convert(rest)}" if rest else head
    if n < 1_000_000_000:
        millions, rest = divmod(n, 1_000_000)
        head = f"{_convert(millions)} juta"
        return f"{head} {_convert(rest)}" if rest else head
    if n < 1_000_000_000_000:
        billions, rest = divmod(n, 1_000_000_000)
        head = f"{_convert(billions)} miliar"
        return f"{head} {_convert(rest)}" if rest else head
    return str(n)


def number_to_words(num: int) -> str:
    """
    Convert a non-negative integer to Indonesian words.

    >>> number_to_words(1500000)
    'satu juta lima ratus ribu'
    """
    if num == 0:
        return "nol"
    return _convert(num)


def amount_to_words(amount: Optional[Union[str, int]]) -> str:
    """Read an amount field (digit string) as words; empty amounts read as 'nol'."""
    if not amount:
        return "nol"
    if isinstance(amount, int):
        return number_to_words(amount)
    digits = re.sub(r"\D", "", amount)
    return number_to_words(int(digits)) if digits else "nol"


def spell_digits(value: Optional[str]) -> str:
    """Spell each digit, grouped by three with a full stop between groups."""
    if not value:
        return ""
    words = [_DIGITS[int(d)] for d in re.sub(r"\D", "", value)]
    groups: List[str] = [" ".join(words[i:i + 3]) for i in range(0, len(words), 3)]
    return ". ".join(groups)
