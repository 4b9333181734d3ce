"""
User-facing error kinds raised at the extraction boundary.

Every error carries a short Indonesian message for the speech output and a
retryable flag. None of them is fatal: the dialogue state machine turns them
into ERROR / NO_RESPONSE states that return to LISTENING on retry.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    UNCLASSIFIABLE = "UNCLASSIFIABLE"
    DISABLED_TYPE = "DISABLED_TYPE"
    INVALID_FORMAT = "INVALID_FORMAT"
    EXTRACTOR_UNAVAILABLE = "EXTRACTOR_UNAVAILABLE"
    NO_SPEECH_DETECTED = "NO_SPEECH_DETECTED"


UNCLASSIFIABLE_MESSAGE = (
    'Hmm, aku belum paham maksudnya. Coba bilang lagi ya, '
    'misalnya "transfer 100 ribu ke BCA 1234567890"'
)
DISABLED_TYPE_MESSAGE = "Maaf, transaksi {type} sedang tidak tersedia."
EXTRACTOR_UNAVAILABLE_MESSAGE = "Waduh, aku lagi gangguan nih. Coba lagi sebentar ya!"
NO_SPEECH_MESSAGE = "Ups, aku tidak mendengar suaramu. Coba bicara lebih jelas ya!"


class DialogueError(Exception):
    """Base class for errors surfaced to the user."""
    kind: ErrorKind = ErrorKind.UNCLASSIFIABLE
    retryable: bool = True

    def __init__(self, user_message: str, detail: Optional[str] = None):
        super().__init__(detail or user_message)
        self.user_message = user_message
        self.detail = detail


class UnclassifiableError(DialogueError):
    kind = ErrorKind.UNCLASSIFIABLE

    def __init__(self, detail: Optional[str] = None):
        super().__init__(UNCLASSIFIABLE_MESSAGE, detail)


class DisabledTypeError(DialogueError):
    kind = ErrorKind.DISABLED_TYPE
    # Re-speaking the same command cannot succeed
    retryable = False

    def __init__(self, transaction_type: str):
        super().__init__(DISABLED_TYPE_MESSAGE.format(type=transaction_type))
        self.transaction_type = transaction_type


class InvalidFormatError(DialogueError):
    kind = ErrorKind.INVALID_FORMAT

    def __init__(self, field_name: str, user_message: str):
        super().__init__(user_message, f"invalid {field_name}")
        self.field_name = field_name


class ExtractorUnavailableError(DialogueError):
    kind = ErrorKind.EXTRACTOR_UNAVAILABLE

    def __init__(self, detail: Optional[str] = None):
        super().__init__(EXTRACTOR_UNAVAILABLE_MESSAGE, detail)


class NoSpeechDetectedError(DialogueError):
    kind = ErrorKind.NO_SPEECH_DETECTED

    def __init__(self, detail: Optional[str] = None):
        super().__init__(NO_SPEECH_MESSAGE, detail)
