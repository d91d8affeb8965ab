"""Draft-context enricher: snapshot the open draft when the user wants to change it."""

from html import escape

from juchang_ai.models.runtime import EnricherOutput, EnrichmentContext

MODIFY_KEYWORDS = ["改", "换", "调整", "修改", "加", "减", "人数", "时间", "地点", "标题"]

DRAFT_FIELDS = [
    ("title", "title"),
    ("location", "locationName"),
    ("start_at", "startAt"),
    ("max_participants", "maxParticipants"),
]


def enrich_draft_context(text: str, context: EnrichmentContext) -> EnricherOutput:
    draft = context.draft
    if draft is None or not draft.current_draft:
        return EnricherOutput(text=text)
    if not any(keyword in text for keyword in MODIFY_KEYWORDS):
        return EnricherOutput(text=text)

    lines = [f'<draft_context activity_id="{escape(str(draft.activity_id or ""))}">']
    for tag, key in DRAFT_FIELDS:
        value = draft.current_draft.get(key)
        if value is not None and value != "":
            lines.append(f"  <{tag}>{escape(str(value))}</{tag}>")
    lines.append("</draft_context>")

    return EnricherOutput(text=text, applied=["draft_context"], injection="\n".join(lines))
