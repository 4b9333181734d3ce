"""
Cross-turn merge of partial transaction data.

A follow-up answer for the same transaction type overlays the prior partial
data (newest value wins per field). A different type starts over: the prior
context is discarded, never mixed into the new draft.
"""
import logging
from typing import Optional

from transactions.specs import FIELDS, PHONE_NUMBER, PROVIDER, TypeEnablement
from .draft import Classified, ConversationContext, ExtractionResult, TransactionDraft
from .errors import DisabledTypeError, InvalidFormatError, UnclassifiableError
from .extract import DEFAULT_GOLD_PRICE_PER_GRAM, build_draft
from .planner import find_invalid_fields

logger = logging.getLogger(__name__)


def merge_context(
    prior: Optional[ConversationContext],
    extraction: TransactionDraft,
    gold_price_per_gram: int = DEFAULT_GOLD_PRICE_PER_GRAM,
) -> TransactionDraft:
    """
    Merge a new extraction into the prior context.

    Args:
        prior: Context from earlier turns, or None
        extraction: Draft produced from the latest utterance
        gold_price_per_gram: Divisor for the gold gram estimate

    Returns:
        A new TransactionDraft; neither input is modified
    """
    if prior is None or prior.draft.transaction_type is None:
        return extraction.copy()

    prior_type = prior.draft.transaction_type
    new_type = extraction.transaction_type

    if new_type is not None and new_type != prior_type:
        logger.info(f"Type switch {prior_type.value} -> {new_type.value}, discarding prior context")
        return extraction.copy()

    if not extraction.fields:
        return prior.draft.copy()

    fields = dict(prior.draft.fields)
    # Provider follows the phone number it was derived from
    if PHONE_NUMBER in extraction.fields and PROVIDER not in extraction.fields:
        fields.pop(PROVIDER, None)
    fields.update({name: value for name, value in extraction.fields.items() if value})
    merged = build_draft(prior_type, fields, gold_price_per_gram)
    logger.info(
        f"Merged {sorted(extraction.fields)} into {prior_type.value} draft, "
        f"missing={merged.missing_fields}"
    )
    return merged


def accept_extraction(
    result: ExtractionResult,
    prior: Optional[ConversationContext],
    enablement: TypeEnablement,
    gold_price_per_gram: int = DEFAULT_GOLD_PRICE_PER_GRAM,
) -> TransactionDraft:
    """
    Gate an extraction result and merge it into the prior context.

    Raises:
        UnclassifiableError: No supported type was found
        DisabledTypeError: The type is known but switched off
        InvalidFormatError: The merged draft is complete but a field is malformed

    The prior context is never modified; on error the caller keeps it as is.
    """
    if not isinstance(result, Classified):
        if result.raw_type and enablement.is_known(result.raw_type):
            raise DisabledTypeError(result.raw_type)
        raise UnclassifiableError(result.reason)

    transaction_type = result.draft.transaction_type
    if not enablement.is_enabled(transaction_type.value):
        logger.warning(f"METRIC disabled_type type={transaction_type.value}")
        raise DisabledTypeError(transaction_type.value)

    merged = merge_context(prior, result.draft, gold_price_per_gram)
    if merged.complete:
        invalid = find_invalid_fields(transaction_type, merged.fields)
        if invalid:
            logger.info(f"METRIC invalid_format field={invalid[0]} type={transaction_type.value}")
            raise InvalidFormatError(invalid[0], FIELDS[invalid[0]].invalid_message)
    return merged
