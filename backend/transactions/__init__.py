"""
Transaction specifications, vocabularies and type enablement.
"""
from .specs import (
    TransactionType,
    FieldSpec,
    PromptRule,
    TransactionSpec,
    TRANSACTIONS,
    FIELDS,
    FIELD_NAMES,
    TypeEnablement,
    get_transaction_spec,
)

__all__ = [
    "TransactionType",
    "FieldSpec",
    "PromptRule",
    "TransactionSpec",
    "TRANSACTIONS",
    "FIELDS",
    "FIELD_NAMES",
    "TypeEnablement",
    "get_transaction_spec",
]
