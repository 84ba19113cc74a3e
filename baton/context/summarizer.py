"""Token-budget driven summarization of shared context."""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, Optional

from ..constants import RECENT_STEP_OUTPUTS_KEPT, SUMMARY_STRING_LIMIT
from ..contracts import SharedContext

logger = logging.getLogger(__name__)


def estimate_tokens(content: Optional[str]) -> int:
    """Approximate token count using four characters per token."""
    if not content or not content.strip():
        return 0
    return math.ceil(len(content) / 4)


class ContextSummarizer:
    """Shrink a :class:`SharedContext` so it fits a token budget.

    Decision history, user preferences and artifact references are never
    reduced. The most recent step outputs are kept verbatim and older
    object-shaped outputs are condensed field by field.
    """

    def __init__(
        self,
        recent_outputs_kept: int = RECENT_STEP_OUTPUTS_KEPT,
        string_limit: int = SUMMARY_STRING_LIMIT,
    ) -> None:
        self.recent_outputs_kept = recent_outputs_kept
        self.string_limit = string_limit

    def estimate_tokens(self, content: Optional[str]) -> int:
        return estimate_tokens(content)

    def summarize_if_needed(
        self, context: SharedContext, token_limit: int
    ) -> SharedContext:
        tokens = estimate_tokens(context.model_dump_json())
        if tokens <= token_limit:
            return context

        logger.info(
            f"Shared context needs summarization ({tokens} tokens, limit {token_limit})"
        )
        summary = context.model_copy(deep=True)
        keys = list(summary.step_outputs)
        older = keys[: max(len(keys) - self.recent_outputs_kept, 0)]
        for step_id in older:
            summary.step_outputs[step_id] = self._summarize_output(
                summary.step_outputs[step_id]
            )

        logger.info(
            f"Summarized shared context to {estimate_tokens(summary.model_dump_json())} tokens"
        )
        return summary

    def _summarize_output(self, output: Any) -> Any:
        if not isinstance(output, dict):
            return output
        summary: Dict[str, Any] = {}
        for key, value in output.items():
            if key.startswith("_") or key.lower() == "id":
                summary[key] = value
            elif isinstance(value, str):
                summary[key] = (
                    value[: self.string_limit] + "..."
                    if len(value) > self.string_limit
                    else value
                )
            elif isinstance(value, list):
                summary[key] = f"[Array with {len(value)} items]"
            else:
                summary[key] = json.dumps(value, sort_keys=True, default=str)
        return summary
