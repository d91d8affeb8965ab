"""User-preference enricher: hint the user's usual category on vague requests."""

from html import escape

from juchang_ai.models.runtime import EnricherOutput, EnrichmentContext


RECOMMENDATION_KEYWORDS = ["推荐", "有什么", "找个", "想找", "看看", "随便", "都可以"]

TYPE_KEYWORDS = [
    "火锅",
    "吃饭",
    "聚餐",
    "烧烤",
    "电影",
    "KTV",
    "唱歌",
    "密室",
    "足球",
    "篮球",
    "羽毛球",
    "健身",
    "麻将",
    "桌游",
    "剧本杀",
    "狼人杀",
]

TYPE_LABELS = {
    "food": "美食",
    "entertainment": "娱乐",
    "sports": "运动",
    "boardgame": "桌游",
    "coffee": "咖啡",
    "other": "其他",
}


def wants_preference_hint(text: str) -> bool:
    """Recommendation phrasing with no concrete category named."""
    if not any(k in text for k in RECOMMENDATION_KEYWORDS):
        return False
    upper = text.upper()
    return not any(k.upper() in upper for k in TYPE_KEYWORDS)


def enrich_user_preference(text: str, context: EnrichmentContext) -> EnricherOutput:
    """
    Inject the user's most frequent category.

    ``context.preference_lookup`` is expected to already enforce the time
    bound (see EnrichmentPipeline); a None result means no injection.
    """
    if context.user_id is None or context.preference_lookup is None:
        return EnricherOutput(text=text)
    if not wants_preference_hint(text):
        return EnricherOutput(text=text)

    preferred = context.preference_lookup(context.user_id)
    if not preferred:
        return EnricherOutput(text=text)

    label = TYPE_LABELS.get(preferred, preferred)
    block = (
        "<user_preference>\n"
        f'  <preferred_type value="{escape(preferred)}">{escape(label)}</preferred_type>\n'
        f"  <note>用户历史上最常参与{escape(label)}类活动</note>\n"
        "</user_preference>"
    )
    return EnricherOutput(text=text, applied=["user_preference"], injection=block)
