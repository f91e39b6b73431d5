"""Shared utilities for provider implementations."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from castor.catalog import ProviderCatalog
    from castor.types import ProviderDescriptor

_CONNECT_TIMEOUT_S = 10.0


def client_timeout(timeout_s: float) -> httpx.Timeout:
    """Call-level timeout for SDK clients built on httpx."""
    return httpx.Timeout(timeout_s, connect=min(_CONNECT_TIMEOUT_S, timeout_s))


def documented_fallback(
    catalog: ProviderCatalog, failing: ProviderDescriptor
) -> ProviderDescriptor | None:
    """Catalog fallback, then default, then fastest; never the failing model."""
    for candidate in (catalog.fallback, catalog.default):
        if candidate is not None and candidate.model_id != failing.model_id:
            return candidate
    return catalog.fastest(exclude=failing.model_id)


def fastest_alternative(
    catalog: ProviderCatalog, failing: ProviderDescriptor
) -> ProviderDescriptor | None:
    """Fastest model other than the failing one; the same model if it is the only one."""
    return catalog.fastest(exclude=failing.model_id) or catalog.fastest()


def join_text(chunks: list[str]) -> str:
    return "".join(chunks).strip()
