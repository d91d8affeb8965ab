"""System prompt assembly."""

from juchang_ai.models.runtime import RuntimeContext
from juchang_ai.utils.geo import location_label
from juchang_ai.utils.timeutils import LOCAL_TZ, utcnow

WEEKDAYS = ["一", "二", "三", "四", "五", "六", "日"]

BASE_PROMPT = """你是聚场的 AI 组局助手小聚，帮用户在重庆找活动、组局、找搭子。

# Rules
- 回复简短口语化，一两句话，可以用 emoji
- 需要操作时调用工具，不要编造活动或数据
- 工具失败时如实告诉用户，并给出下一步建议
- 不讨论与组局无关的敏感话题"""

PERSONAS = {
    "explorer": "你现在负责帮用户发现附近的活动。先看位置，再推荐。",
    "creator": "你现在负责帮用户创建活动草稿，补全时间、地点、人数后再发布。",
    "partner": "你现在负责帮用户找搭子。已确认的信息不要重复问。",
    "manager": "你现在负责帮用户查看和管理自己的活动。",
    "chat": "你现在陪用户聊天，适时引导到组局。",
}


def build_system_prompt(ctx: RuntimeContext, agent: str) -> str:
    """
    Persona, rules and a ``# Context`` section with the current time,
    the caller's location and draft state.
    """
    now = (ctx.now or utcnow()).astimezone(LOCAL_TZ)
    lines = [
        f"当前时间: {now:%Y-%m-%d %H:%M} 周{WEEKDAYS[now.weekday()]}",
    ]
    if ctx.location is not None:
        label = location_label(ctx.location.lat, ctx.location.lng, ctx.location.name)
        lines.append(f"用户位置: {label} ({ctx.location.lat:.4f}, {ctx.location.lng:.4f})")
    else:
        lines.append("用户位置: 未知")
    lines.append("登录状态: " + ("已登录" if ctx.is_authenticated else "未登录"))
    if ctx.draft is not None and ctx.draft.activity_id:
        lines.append(f"当前草稿: {ctx.draft.activity_id}")

    return "\n\n".join(
        [
            BASE_PROMPT,
            f"# Persona\n{PERSONAS.get(agent, PERSONAS['chat'])}",
            "# Context\n" + "\n".join(lines),
        ]
    )
