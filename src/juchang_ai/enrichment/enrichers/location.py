"""Location-context enricher: attach caller coordinates to proximity phrases."""

from html import escape

from juchang_ai.models.runtime import EnricherOutput, EnrichmentContext
from juchang_ai.utils.geo import location_label

PROXIMITY_KEYWORDS = ["附近", "周边", "周围", "旁边", "身边", "离我近", "这边"]


def enrich_location_context(text: str, context: EnrichmentContext) -> EnricherOutput:
    location = context.location
    if location is None:
        return EnricherOutput(text=text)
    if not any(keyword in text for keyword in PROXIMITY_KEYWORDS):
        return EnricherOutput(text=text)

    label = location_label(location.lat, location.lng, location.name)
    block = (
        f'<user_location lat="{location.lat:.4f}" lng="{location.lng:.4f}" '
        f'name="{escape(label)}" />'
    )
    return EnricherOutput(text=text, applied=["location_context"], injection=block)
