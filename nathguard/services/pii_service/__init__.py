"""PII Service - redacts Brazilian personal data from text and payloads.

Every inbound message and every audit metadata payload passes through
PIIRedactor before it is stored or logged.
"""
from .config import PIIRedactorConfig, PIIRule, REPLACEMENTS
from .redactor import PIIRedactor, mask_partial
from .validators import is_valid_cpf

__all__ = [
    "PIIRedactor",
    "PIIRedactorConfig",
    "PIIRule",
    "REPLACEMENTS",
    "mask_partial",
    "is_valid_cpf",
]
