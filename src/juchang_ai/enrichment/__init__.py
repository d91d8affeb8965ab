"""Message enrichment: machine-resolved facts added without changing what the user sees."""

from juchang_ai.enrichment.pipeline import (
    ENRICHERS,
    EnrichmentPipeline,
    inject_context,
    merge_blocks,
)

__all__ = ["ENRICHERS", "EnrichmentPipeline", "inject_context", "merge_blocks"]
