"""
Security utilities for the CLG MCP Server.
This module provides data masking used to keep credentials out of log output.
"""

import re
from typing import Any, List, Optional

MASK = "********"

DEFAULT_SENSITIVE_KEYS = [r"password", r"api_key", r"secret", r"token", r"authorization", r"credential"]

# Matches the credential part of "Bearer <token>" anywhere in a string
_BEARER_RE = re.compile(r"(Bearer\s+)\S+", re.IGNORECASE)
# Matches key=value / key: value pairs whose key looks sensitive
_INLINE_SECRET_RE = re.compile(
    r"((?:password|api_key|secret|token|tokens)\s*[=:]\s*)([^\s,;'\"]+)",
    re.IGNORECASE,
)


def mask_sensitive_data(data: Any, patterns: Optional[List[str]] = None) -> Any:
    """
    Mask sensitive data in a data structure.

    Dict values whose key matches one of `patterns` are replaced entirely.
    Strings have bearer credentials and inline `key=value` secrets masked.

    Args:
        data: Data to mask
        patterns: List of regex patterns for sensitive keys

    Returns:
        The masked copy of `data`
    """
    if patterns is None:
        patterns = DEFAULT_SENSITIVE_KEYS

    if isinstance(data, dict):
        return {
            k: (
                MASK
                if isinstance(k, str) and any(re.search(p, k, re.I) for p in patterns)
                else mask_sensitive_data(v, patterns)
            )
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return type(data)(mask_sensitive_data(item, patterns) for item in data)
    elif isinstance(data, str):
        masked = _BEARER_RE.sub(lambda m: m.group(1) + MASK, data)
        return _INLINE_SECRET_RE.sub(lambda m: m.group(1) + MASK, masked)
    else:
        return data
