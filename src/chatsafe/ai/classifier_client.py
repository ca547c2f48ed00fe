"""Content classification through the OpenAI moderation endpoint.

The client never raises for a business-level result: it returns a
:class:`Verdict` or, when the service call itself fails, a
:class:`ServiceError`. Without an API key it runs in degraded mode and
answers every call with an *unchecked* clean verdict, so message flow keeps
going while moderation is unavailable.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping

from openai import AsyncOpenAI

from chatsafe.datatypes.moderation_datatypes import (
    ClassificationResult,
    ClassifierMode,
    ServiceError,
    Verdict,
)
from chatsafe.util.logger import get_logger

logger = get_logger("classifier_client")

EMPTY_CONTENT_REASON = "empty content"
UNAVAILABLE_REASON = "classifier unavailable"
GENERAL_VIOLATION_REASON = "General policy violation"


def flagged_category_names(categories: Mapping[str, Any] | None) -> list[str]:
    """Return the sorted names of categories the service marked ``True``."""
    if not categories:
        return []
    return sorted(name for name, value in categories.items() if value is True)


def build_reason(categories: Mapping[str, Any] | None) -> str:
    """Join flagged category names, or fall back to a general reason."""
    names = flagged_category_names(categories)
    return ", ".join(names) if names else GENERAL_VIOLATION_REASON


def _categories_as_dict(raw: Any) -> Dict[str, Any]:
    """Normalize the SDK's category model (or a plain mapping) into a dict keyed by API names."""
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if hasattr(raw, "model_dump"):
        return raw.model_dump(by_alias=True)
    return dict(vars(raw))


class ClassifierClient:
    """
    Classify message text via ``moderations.create``.

    Args:
        api_key: OpenAI API key. ``None`` or empty puts the client in degraded mode.
        model: Moderation model name.
        timeout: Per-request timeout handed to the SDK, in seconds.
        client: Pre-built AsyncOpenAI-compatible client (mainly for tests).
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        model: str = "omni-moderation-latest",
        timeout: float = 10.0,
        client: Any | None = None,
    ) -> None:
        self._model = model
        self._client: Any | None = client

        if self._client is None and api_key:
            try:
                # Retries belong to the pipeline, not the transport
                self._client = AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
            except Exception as exc:
                logger.error("[CLASSIFIER] Failed to initialize OpenAI client: %s", exc)
                self._client = None

        if self._client is None:
            logger.warning(
                "[CLASSIFIER] No usable classification credential; running in DEGRADED mode. "
                "Messages will pass through unchecked."
            )
        else:
            logger.info("[CLASSIFIER] Initialized with model=%s", self._model)

    @property
    def mode(self) -> ClassifierMode:
        return ClassifierMode.ACTIVE if self._client is not None else ClassifierMode.DEGRADED

    @property
    def degraded(self) -> bool:
        return self._client is None

    async def classify(self, content: str) -> ClassificationResult:
        """Classify ``content`` and return a Verdict or ServiceError.

        Empty or whitespace-only content short-circuits to a clean verdict
        without calling the service.
        """
        if not content or not content.strip():
            return Verdict(flagged=False, reason=EMPTY_CONTENT_REASON)

        if self._client is None:
            return Verdict.unchecked(UNAVAILABLE_REASON)

        try:
            response = await self._client.moderations.create(model=self._model, input=content)
            result = response.results[0]
        except Exception as exc:
            logger.error("[CLASSIFIER] Moderation request failed: %s", exc)
            return ServiceError(message=str(exc) or type(exc).__name__)

        categories = _categories_as_dict(getattr(result, "categories", None))
        marked = frozenset(flagged_category_names(categories))

        if not result.flagged:
            return Verdict.clean(categories=marked)

        return Verdict(flagged=True, reason=build_reason(categories), categories=marked)

    async def close(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()
