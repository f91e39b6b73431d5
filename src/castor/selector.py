"""Model/provider selection: ranked candidates for a task.

Routing is a pure function of configuration, task kind, and hints. The first
candidate is the preferred provider for the task's routing class; the rest are
the remaining available providers in declaration order, with the local
generator (when enabled) always last.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from castor.config.utils import LOCAL_PROVIDER_ID, resolve_provider
from castor.errors import ConfigurationError
from castor.types import ContextHints, RoutingClass, TaskKind

if TYPE_CHECKING:
    from collections.abc import Iterable

    from castor.catalog import ProviderCatalog
    from castor.config import Config
    from castor.types import ProviderDescriptor

logger = logging.getLogger(__name__)

LONG_FORM_TASKS: frozenset[TaskKind] = frozenset(
    {
        TaskKind.PROFILE_CONTENT,
        TaskKind.WARM_FOLLOWUP,
        TaskKind.MESSAGE_RESPONSE,
    }
)


class ModelSelector:
    """Rank provider/model candidates for a task.

    Args:
        config: Resolved configuration (catalogs, routing preferences).
        available: Provider ids that may serve requests. Defaults to the
            enabled providers in ``config``.
        local_descriptor: Descriptor of the local generator, when one is
            running. It is appended to every non-override candidate list.
    """

    def __init__(
        self,
        config: Config,
        *,
        available: Iterable[str] | None = None,
        local_descriptor: ProviderDescriptor | None = None,
    ) -> None:
        self._config = config
        self._catalogs: dict[str, ProviderCatalog] = config.catalogs
        self._order: tuple[str, ...] = tuple(self._catalogs)
        ids = config.enabled_providers if available is None else available
        self._available = frozenset(ids)
        self._local = local_descriptor

    def routing_class(self, task_kind: TaskKind, content_length: int = 0) -> RoutingClass:
        if task_kind in LONG_FORM_TASKS or self.is_escalated(content_length):
            return RoutingClass.LONG_FORM
        return RoutingClass.STRUCTURED

    def is_escalated(self, content_length: int) -> bool:
        """Whether content is long enough to force the long-form provider."""
        return content_length > self._config.long_form_threshold_chars

    def task_tags(self, task_kind: TaskKind, content_length: int = 0) -> frozenset[str]:
        """Suitability tags used to pick a model inside a provider."""
        if self.is_escalated(content_length):
            return frozenset({"complex"})
        if task_kind is TaskKind.MESSAGE_ANALYSIS:
            return frozenset({"fast"})
        return frozenset()

    def select_candidates(
        self,
        task_kind: TaskKind | str,
        hints: ContextHints | None = None,
    ) -> list[ProviderDescriptor]:
        """Return candidates in the order they should be tried.

        An empty list means nothing can serve the request and the caller's
        template is the only option.

        Raises:
            ConfigurationError: An override names an unknown provider, or a
                model whose provider cannot be determined.
        """
        task = TaskKind.coerce(task_kind)
        hints = hints or ContextHints()
        length = hints.content_length or 0
        tags = self.task_tags(task, length)

        if hints.has_override:
            return self._select_override(hints, tags)

        routing = self.routing_class(task, length)
        preferred = (
            self._config.long_form_provider
            if routing is RoutingClass.LONG_FORM
            else self._config.structured_provider
        )
        order = [preferred, *(p for p in self._order if p != preferred)]

        candidates = [
            self._catalogs[p].prefer(tags)
            for p in order
            if p in self._available and p in self._catalogs
        ]
        if preferred not in self._available:
            logger.debug("Preferred provider %s unavailable for %s", preferred, task.value)
        if self._local is not None:
            candidates.append(self._local)

        logger.debug(
            "Candidates for %s (%s): %s",
            task.value,
            routing.value,
            [f"{c.provider_id}/{c.model_id}" for c in candidates],
        )
        return candidates

    def _select_override(
        self, hints: ContextHints, tags: frozenset[str]
    ) -> list[ProviderDescriptor]:
        provider_id = hints.provider
        model = hints.model

        if provider_id is None and model is not None:
            provider_id = self._owner_of(model)

        if provider_id == LOCAL_PROVIDER_ID:
            if self._local is None:
                logger.warning("Override names the local generator, which is disabled")
                return []
            return [self._local]

        if provider_id not in self._catalogs:
            raise ConfigurationError(
                f"Unknown provider override: {provider_id!r}",
                hint=f"Use one of: {', '.join(self._order)}",
            )
        if provider_id not in self._available:
            logger.warning(
                "Override names provider %s, which is not enabled; using template",
                provider_id,
            )
            return []

        catalog = self._catalogs[provider_id]
        descriptor = catalog.resolve(model) if model else catalog.prefer(tags)
        return [descriptor]

    def _owner_of(self, model: str) -> str:
        for provider_id in self._order:
            if self._catalogs[provider_id].get(model) is not None:
                return provider_id
        inferred = resolve_provider(model)
        if inferred is None:
            raise ConfigurationError(
                f"Cannot determine the provider for model {model!r}",
                hint="Pass a provider override along with the model.",
            )
        return inferred
