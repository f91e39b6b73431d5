"""Castor: multi-provider content generation with graceful degradation.

Public API:
    - GenerationService: route, cache, and fall back across providers
    - resolve_config(): build a validated Config from files, env, overrides
    - TaskKind / ContextHints / GenerationRequest: request inputs
    - TerminalFailure: raised when nothing (not even the template) produced text
"""

from __future__ import annotations

import logging

from castor.cache import CacheStats, GenerationCache
from castor.config import Config, ProviderStatus, resolve_config
from castor.errors import (
    AuthError,
    CastorError,
    ConfigurationError,
    ErrorKind,
    InternalError,
    ModelNotFoundError,
    ProviderError,
    RateLimitError,
    TerminalFailure,
    TransientError,
)
from castor.invoker import ResilientInvoker
from castor.metrics import UsageMetricsRecorder, UsageSnapshot
from castor.selector import ModelSelector
from castor.service import GenerationService, build_providers
from castor.types import (
    Attempt,
    ContextHints,
    GenerationRequest,
    GenerationResult,
    ProviderDescriptor,
    TaskKind,
)

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("castor-llm")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("castor").addHandler(logging.NullHandler())

__all__ = [
    "Attempt",
    "AuthError",
    "CacheStats",
    "CastorError",
    "Config",
    "ConfigurationError",
    "ContextHints",
    "ErrorKind",
    "GenerationCache",
    "GenerationRequest",
    "GenerationResult",
    "GenerationService",
    "InternalError",
    "ModelNotFoundError",
    "ModelSelector",
    "ProviderDescriptor",
    "ProviderError",
    "ProviderStatus",
    "RateLimitError",
    "ResilientInvoker",
    "TaskKind",
    "TerminalFailure",
    "TransientError",
    "UsageMetricsRecorder",
    "UsageSnapshot",
    "build_providers",
    "resolve_config",
]
