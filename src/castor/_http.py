"""Small HTTP-related constants shared across Castor.

This module is intentionally tiny to avoid circular imports and drift.
"""

from __future__ import annotations

# Status codes with a fixed meaning for provider error classification.
NOT_FOUND_STATUS_CODES: frozenset[int] = frozenset({404})
RATE_LIMIT_STATUS_CODES: frozenset[int] = frozenset({429})
AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})
