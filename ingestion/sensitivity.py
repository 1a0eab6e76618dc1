# Toolsmith/ingestion/sensitivity.py
import re
from typing import Dict, Optional

# Column-name patterns for common PII types, matched on underscore-separated tokens. First match wins.
SENSITIVE_NAME_PATTERNS: Dict[str, str] = {
    "EMAIL": r"(^|_)e?_?mail(_address)?($|_)",
    "PHONE": r"(^|_)(phone|mobile|cell|fax)(_number)?($|_)",
    "NAME": r"(^|_)(first|last|full|middle|given|family|display|legal)_name($|_)",
    "NETWORK": r"(^|_)ip_address($|_)",
    "ADDRESS": r"(^|_)(address|street|postcode|postal_code|zip_code|zipcode)($|_)",
    "IDENTITY": r"(^|_)(ssn|national_id|passport(_number)?|tax_id|dob|date_of_birth|birth_?date)($|_)",
    "SECRET": r"(^|_)(password|passwd|password_hash|secret|api_key|token|access_token|refresh_token)($|_)",
}

# Explicit markers a schema author may put in a column comment.
SENSITIVE_COMMENT_PATTERN = r"\b(pii|sensitive|confidential|gdpr)\b"


def classify_column(column_name: str) -> Optional[str]:
    """Returns the PII type a column name suggests, or None."""
    lowered = column_name.lower()
    for pii_type, pattern in SENSITIVE_NAME_PATTERNS.items():
        if re.search(pattern, lowered):
            return pii_type
    return None


def is_sensitive_column(column_name: str, comment: Optional[str] = None) -> bool:
    """Flags a column by naming pattern or explicit comment marker; never by content."""
    if classify_column(column_name):
        return True
    return bool(comment and re.search(SENSITIVE_COMMENT_PATTERN, comment, re.IGNORECASE))
