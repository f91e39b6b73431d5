"""Offline generator backed by a Hugging Face text-generation pipeline.

Last resort before the caller's template: small model, short prompt, no
network. Requires the ``local`` extra (``pip install castor-llm[local]``).
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from castor.config.utils import LOCAL_PROVIDER_ID
from castor.errors import TransientError
from castor.types import ProviderDescriptor

if TYPE_CHECKING:
    from collections.abc import Callable

    from castor.config import LocalConfig

logger = logging.getLogger(__name__)

_PROMPT_LINES = 10
_TRUNCATION_NOTE = "\n...\n[Prompt truncated for local model]\n\nGenerate response:"


def shorten_prompt(prompt: str, max_lines: int = _PROMPT_LINES) -> str:
    """Keep the first *max_lines* lines; small models lose the thread on long input."""
    head = "\n".join(prompt.split("\n")[:max_lines])
    return head + _TRUNCATION_NOTE


def _default_pipeline_factory(model: str) -> Any:
    try:
        from transformers import pipeline
    except ImportError as e:
        raise TransientError(
            "transformers package not installed",
            hint="pip install 'castor-llm[local]'",
            provider=LOCAL_PROVIDER_ID,
            model=model,
        ) from e
    return pipeline("text-generation", model=model)


class LocalProvider:
    """Local text-generation provider.

    The pipeline is loaded once, on first use, in a worker thread. Every
    failure (missing extra, load error, timeout, inference error) surfaces as
    ``TransientError``. There is no in-provider fallback.
    """

    def __init__(
        self,
        config: LocalConfig,
        *,
        pipeline_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self.config = config
        self.min_output_chars = config.min_output_chars
        self._pipeline_factory = pipeline_factory or _default_pipeline_factory
        self._generator: Any = None
        self._load_lock = asyncio.Lock()

    @property
    def provider_id(self) -> str:
        return LOCAL_PROVIDER_ID

    @property
    def descriptor(self) -> ProviderDescriptor:
        """The single model this provider serves."""
        return ProviderDescriptor(
            provider_id=LOCAL_PROVIDER_ID,
            model_id=self.config.model,
            max_output_tokens=self.config.max_new_tokens,
            temperature=0.7,
            suitability_tags=frozenset({"local", "fast"}),
            description="Offline text-generation pipeline",
        )

    async def _get_generator(self) -> Any:
        if self._generator is not None:
            return self._generator
        async with self._load_lock:
            if self._generator is None:
                logger.info("Loading local model %s", self.config.model)
                self._generator = await asyncio.to_thread(
                    self._pipeline_factory, self.config.model
                )
        return self._generator

    async def invoke(
        self,
        prompt: str,
        descriptor: ProviderDescriptor,
        system_prompt: str | None = None,  # noqa: ARG002
    ) -> str:
        """Generate from a shortened prompt in a worker thread."""
        model = descriptor.model_id
        short_prompt = shorten_prompt(prompt)
        try:
            generator = await asyncio.wait_for(
                self._get_generator(), timeout=self.config.timeout_s
            )
            result = await asyncio.wait_for(
                asyncio.to_thread(
                    generator,
                    short_prompt,
                    max_new_tokens=descriptor.max_output_tokens,
                    num_return_sequences=1,
                    do_sample=True,
                    temperature=descriptor.temperature,
                    top_k=50,
                    top_p=0.9,
                    return_full_text=False,
                ),
                timeout=self.config.timeout_s,
            )
        except asyncio.CancelledError:
            raise
        except TransientError:
            raise
        except Exception as e:
            raise TransientError(
                f"Local generation failed: {e}",
                provider=LOCAL_PROVIDER_ID,
                model=model,
            ) from e
        return _parse_output(result, short_prompt)

    def fallback_model(self, descriptor: ProviderDescriptor) -> ProviderDescriptor | None:  # noqa: ARG002
        return None

    def rate_limit_model(
        self, descriptor: ProviderDescriptor  # noqa: ARG002
    ) -> ProviderDescriptor | None:
        return None

    async def aclose(self) -> None:
        self._generator = None


def _parse_output(result: Any, prompt: str) -> str:
    """Pull ``generated_text`` out of pipeline output, minus any echoed prompt."""
    if isinstance(result, list) and result:
        result = result[0]
    text = result.get("generated_text", "") if isinstance(result, dict) else ""
    if not isinstance(text, str):
        return ""
    return text.replace(prompt, "").strip()
