"""
Core data carried through a conversation: the draft, the cross-turn context,
and the tagged extraction result.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from transactions.specs import FIELD_NAMES, TransactionType


@dataclass
class TransactionDraft:
    """The in-progress transaction assembled across turns."""
    transaction_type: Optional[TransactionType] = None
    fields: Dict[str, str] = field(default_factory=dict)
    missing_fields: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.transaction_type is not None and not self.missing_fields

    def copy(self) -> "TransactionDraft":
        return TransactionDraft(
            transaction_type=self.transaction_type,
            fields=dict(self.fields),
            missing_fields=list(self.missing_fields),
        )

    def public_fields(self) -> Dict[str, str]:
        """Type plus populated fields, without bookkeeping."""
        data: Dict[str, str] = {}
        if self.transaction_type is not None:
            data["type"] = self.transaction_type.value
        for name in FIELD_NAMES:
            if self.fields.get(name):
                data[name] = self.fields[name]
        return data


@dataclass
class ConversationContext:
    """Partial draft plus the last prompt issued, kept between turns."""
    draft: TransactionDraft
    last_prompt: Optional[str] = None

    @property
    def transaction_type(self) -> Optional[TransactionType]:
        return self.draft.transaction_type

    @property
    def partial_data(self) -> Dict[str, str]:
        return self.draft.fields


@dataclass
class Classified:
    """Extraction determined a transaction type."""
    draft: TransactionDraft
    llm_used: bool = False
    llm_model: Optional[str] = None
    confidence: str = "HIGH"  # HIGH for deterministic, MEDIUM for LLM


@dataclass
class Unclassified:
    """No extractor could determine a supported transaction type."""
    reason: str = "no_type_keyword"
    # Type string reported by the semantic extractor when it is not a supported type
    raw_type: Optional[str] = None
    llm_used: bool = False


ExtractionResult = Union[Classified, Unclassified]
