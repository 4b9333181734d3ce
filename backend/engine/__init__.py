"""
Slot-filling engine - extractor, validator, merger, correction and dialogue.
"""
from .draft import (
    Classified,
    ConversationContext,
    ExtractionResult,
    TransactionDraft,
    Unclassified,
)
from .extract import (
    extract_fields,
    extract_transaction,
    parse_amount,
)
from .planner import (
    CompletenessResult,
    validate_completeness,
)
from .merge import accept_extraction, merge_context
from .correction import (
    CorrectionSession,
    CorrectionStatus,
    resolve_correction,
)
from .dialogue import (
    Conversation,
    DialogueSettings,
    DialogueState,
)

__all__ = [
    "Classified",
    "ConversationContext",
    "ExtractionResult",
    "TransactionDraft",
    "Unclassified",
    "extract_fields",
    "extract_transaction",
    "parse_amount",
    "CompletenessResult",
    "validate_completeness",
    "merge_context",
    "accept_extraction",
    "CorrectionSession",
    "CorrectionStatus",
    "resolve_correction",
    "Conversation",
    "DialogueSettings",
    "DialogueState",
]
