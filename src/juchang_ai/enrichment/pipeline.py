"""
Message enrichment pipeline.

Runs the enrichers over every user-authored message in a fixed order,
each step consuming the previous step's text. Injection blocks from all
steps are de-duplicated and merged into one ``<enrichment_hints>`` block
for the system prompt.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import replace
from typing import Callable, Optional

from juchang_ai.config import settings
from juchang_ai.enrichment.enrichers.draft import enrich_draft_context
from juchang_ai.enrichment.enrichers.location import enrich_location_context
from juchang_ai.enrichment.enrichers.preference import enrich_user_preference
from juchang_ai.enrichment.enrichers.pronoun import resolve_pronouns
from juchang_ai.enrichment.enrichers.time_expression import enrich_time_expressions
from juchang_ai.models.runtime import (
    ChatTurn,
    EnricherOutput,
    EnrichmentContext,
    EnrichmentResult,
    EnrichmentTrace,
)

logger = logging.getLogger(__name__)

Enricher = Callable[[str, EnrichmentContext], EnricherOutput]

# Order matters: later steps read earlier steps' output text.
ENRICHERS: list[tuple[str, Enricher]] = [
    ("draft_context", enrich_draft_context),
    ("time_expression", enrich_time_expressions),
    ("location_context", enrich_location_context),
    ("pronoun", resolve_pronouns),
    ("user_preference", enrich_user_preference),
]

CONTEXT_MARKER = "# Context"
HINTS_OPEN = "<enrichment_hints>"
HINTS_CLOSE = "</enrichment_hints>"


class EnrichmentPipeline:
    """Applies the enricher table to a request's messages."""

    def __init__(
        self,
        enrichers: Optional[list[tuple[str, Enricher]]] = None,
        lookup_timeout_ms: Optional[int] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.enrichers = enrichers if enrichers is not None else ENRICHERS
        self.lookup_timeout = (
            lookup_timeout_ms
            if lookup_timeout_ms is not None
            else settings.preference_lookup_timeout_ms
        ) / 1000
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="enrichment-lookup"
        )

    def enrich(
        self, messages: list[ChatTurn], context: EnrichmentContext
    ) -> EnrichmentResult:
        """
        Enrich user messages.

        Args:
            messages: Messages as sent by the client
            context: Request facts the enrichers may read

        Returns:
            Enriched messages, the merged injection block (empty string when
            nothing fired) and one trace entry per touched message
        """
        context = self._with_bounded_lookup(context)
        blocks: list[str] = []
        trace: list[EnrichmentTrace] = []
        enriched: list[ChatTurn] = []

        for message in messages:
            if message.role != "user":
                enriched.append(message)
                continue

            original = message.content
            current = original
            applied: list[str] = []

            for name, enricher in self.enrichers:
                try:
                    output = enricher(current, context)
                except Exception as e:
                    logger.warning(f"Enricher {name} failed, skipping: {e}")
                    continue
                current = output.text
                applied.extend(output.applied)
                if output.injection:
                    blocks.append(output.injection)

            if applied or current != original:
                trace.append(
                    EnrichmentTrace(original=original, enriched=current, applied=applied)
                )
                enriched.append(ChatTurn(role=message.role, content=current))
            else:
                enriched.append(message)

        return EnrichmentResult(
            messages=enriched,
            context_block=merge_blocks(blocks),
            trace=trace,
        )

    def _with_bounded_lookup(self, context: EnrichmentContext) -> EnrichmentContext:
        """Wrap the preference lookup with a hard timeout that degrades to None."""
        lookup = context.preference_lookup
        if lookup is None:
            return context

        timeout = self.lookup_timeout
        executor = self._executor

        def bounded(user_id: uuid.UUID) -> Optional[str]:
            future = executor.submit(lookup, user_id)
            try:
                return future.result(timeout=timeout)
            except FutureTimeoutError:
                future.cancel()
                logger.info(f"Preference lookup timed out after {timeout * 1000:.0f}ms")
                return None
            except Exception as e:
                logger.warning(f"Preference lookup failed: {e}")
                return None

        return replace(context, preference_lookup=bounded)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def merge_blocks(blocks: list[str]) -> str:
    """De-duplicate blocks (first occurrence wins) and wrap them."""
    unique = list(dict.fromkeys(blocks))
    if not unique:
        return ""
    return f"{HINTS_OPEN}\n" + "\n".join(unique) + f"\n{HINTS_CLOSE}"


def inject_context(system_prompt: str, context_block: str) -> str:
    """
    Insert the hints block at the end of the ``# Context`` section.

    The section ends at the next line starting with ``#``; without a
    marker the block is appended.
    """
    if not context_block:
        return system_prompt

    marker_index = system_prompt.find(CONTEXT_MARKER)
    if marker_index == -1:
        return f"{system_prompt}\n\n{context_block}"

    next_section = system_prompt.find("\n#", marker_index + len(CONTEXT_MARKER))
    insert_at = len(system_prompt) if next_section == -1 else next_section
    return (
        system_prompt[:insert_at]
        + "\n\n"
        + context_block
        + "\n"
        + system_prompt[insert_at:]
    )
