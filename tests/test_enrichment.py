"""Tests for the message enrichment pipeline and its enrichers."""

import time
import uuid

from juchang_ai.enrichment import EnrichmentPipeline, inject_context, merge_blocks
from juchang_ai.enrichment.enrichers.draft import enrich_draft_context
from juchang_ai.enrichment.enrichers.location import enrich_location_context
from juchang_ai.enrichment.enrichers.preference import (
    enrich_user_preference,
    wants_preference_hint,
)
from juchang_ai.enrichment.enrichers.pronoun import resolve_pronouns
from juchang_ai.enrichment.enrichers.time_expression import find_time_expressions
from juchang_ai.models.runtime import (
    ChatTurn,
    DraftContext,
    EnrichmentContext,
    GeoLocation,
    HistoryItem,
)
from juchang_ai.utils.timeutils import format_local


def _context(now, **kwargs) -> EnrichmentContext:
    return EnrichmentContext(user_id=kwargs.pop("user_id", None), now=now, **kwargs)


class TestTimeExpressions:
    """``now`` is Wednesday 20:00 local time."""

    def test_tomorrow_evening(self, now):
        [(phrase, resolved)] = find_time_expressions("明晚一起吃饭", now)
        assert phrase == "明晚"
        assert format_local(resolved) == "2026-10-15 周四 19:00"

    def test_next_week_beats_this_week(self, now):
        [(phrase, resolved)] = find_time_expressions("下周三打球", now)
        assert phrase == "下周三"
        assert format_local(resolved) == "2026-10-21 周三 19:00"

    def test_same_weekday_means_next_week(self, now):
        [(_, resolved)] = find_time_expressions("周三打球", now)
        assert format_local(resolved) == "2026-10-21 周三 19:00"

    def test_weekend_is_next_saturday_afternoon(self, now):
        [(_, resolved)] = find_time_expressions("周末去哪", now)
        assert format_local(resolved) == "2026-10-17 周六 14:00"

    def test_multiple_phrases_in_text_order(self, now):
        found = find_time_expressions("今晚不行，明天中午可以", now)
        assert [phrase for phrase, _ in found] == ["今晚", "明天中午"]

    def test_shorter_phrase_found_past_a_claimed_span(self, now):
        found = find_time_expressions("下周五还是周五", now)
        assert [phrase for phrase, _ in found] == ["下周五", "周五"]
        assert format_local(found[1][1]) == "2026-10-16 周五 19:00"

    def test_phrase_inside_claimed_span_only_is_skipped(self, now):
        found = find_time_expressions("明天晚上见", now)
        assert [phrase for phrase, _ in found] == ["明天晚上"]

    def test_no_phrase(self, now):
        assert find_time_expressions("打羽毛球", now) == []


class TestEnrichers:
    def test_draft_context_needs_modify_keyword(self, now):
        draft = DraftContext(
            activity_id="a1", current_draft={"title": "火锅局", "locationName": "观音桥"}
        )
        ctx = _context(now, draft=draft)

        assert enrich_draft_context("好的", ctx).injection is None

        output = enrich_draft_context("地点换到解放碑", ctx)
        assert output.applied == ["draft_context"]
        assert '<draft_context activity_id="a1">' in output.injection
        assert "<location>观音桥</location>" in output.injection
        assert output.text == "地点换到解放碑"

    def test_location_context(self, now):
        ctx = _context(now, location=GeoLocation(lat=29.5630, lng=106.5516))
        output = enrich_location_context("附近有什么", ctx)

        assert output.applied == ["location_context"]
        assert 'name="观音桥"' in output.injection
        assert 'lat="29.5630"' in output.injection

    def test_location_context_without_location(self, now):
        assert enrich_location_context("附近有什么", _context(now)).applied == []

    def test_pronoun_resolves_recent_activity(self, now):
        history = [HistoryItem(role="assistant", text="为你找到「周五桌游局」")]
        output = resolve_pronouns("我想报名那个", _context(now, history=history))

        assert output.text == "我想报名「周五桌游局」"
        assert output.applied == ["pronoun_activity"]

    def test_pronoun_longest_first(self, now):
        history = [HistoryItem(role="assistant", text="", activity_title="羽毛球")]
        output = resolve_pronouns("上次那个活动还能参加吗", _context(now, history=history))
        assert output.text == "「羽毛球」活动还能参加吗"

    def test_pronoun_location(self, now):
        history = [HistoryItem(role="assistant", text="", location_name="解放碑")]
        output = resolve_pronouns("去那边吃什么", _context(now, history=history))
        assert output.text == "去解放碑吃什么"
        assert output.applied == ["pronoun_location"]

    def test_unresolvable_pronoun_left_alone(self, now):
        output = resolve_pronouns("那个是什么", _context(now))
        assert output.text == "那个是什么"
        assert output.applied == []

    def test_preference_hint_only_for_vague_requests(self):
        assert wants_preference_hint("推荐点好玩的")
        assert not wants_preference_hint("推荐个火锅")
        assert not wants_preference_hint("明天下午")

    def test_preference_injection(self, now):
        ctx = _context(now, user_id=uuid.uuid4(), preference_lookup=lambda _: "sports")
        output = enrich_user_preference("有什么推荐的", ctx)

        assert output.applied == ["user_preference"]
        assert 'value="sports"' in output.injection
        assert "运动" in output.injection

    def test_preference_lookup_none_means_no_injection(self, now):
        ctx = _context(now, user_id=uuid.uuid4(), preference_lookup=lambda _: None)
        assert enrich_user_preference("有什么推荐的", ctx).injection is None


class TestPipeline:
    def test_only_user_messages_enriched(self, now):
        messages = [
            ChatTurn("assistant", "明天想干嘛？"),
            ChatTurn("user", "明晚附近吃火锅"),
        ]
        ctx = _context(now, location=GeoLocation(lat=29.56, lng=106.55, name="观音桥"))
        result = EnrichmentPipeline().enrich(messages, ctx)

        assert result.messages[0].content == "明天想干嘛？"
        assert len(result.trace) == 1
        assert result.trace[0].applied == ["time_expression", "location_context"]
        assert result.context_block.startswith("<enrichment_hints>")
        assert result.context_block.endswith("</enrichment_hints>")
        assert "<time_resolved" in result.context_block

    def test_untouched_messages_produce_no_block(self, now):
        result = EnrichmentPipeline().enrich([ChatTurn("user", "你好")], _context(now))
        assert result.context_block == ""
        assert result.trace == []

    def test_failing_enricher_is_skipped(self, now):
        def broken(text, context):
            raise RuntimeError("boom")

        pipeline = EnrichmentPipeline(
            enrichers=[("broken", broken), ("location", enrich_location_context)]
        )
        ctx = _context(now, location=GeoLocation(lat=29.56, lng=106.55))
        result = pipeline.enrich([ChatTurn("user", "附近")], ctx)

        assert result.trace[0].applied == ["location_context"]

    def test_slow_preference_lookup_times_out(self, now):
        def slow(_):
            time.sleep(0.5)
            return "food"

        pipeline = EnrichmentPipeline(lookup_timeout_ms=20)
        ctx = _context(now, user_id=uuid.uuid4(), preference_lookup=slow)
        result = pipeline.enrich([ChatTurn("user", "有什么推荐")], ctx)

        assert "user_preference" not in result.context_block
        pipeline.shutdown()

    def test_duplicate_blocks_merged_once(self):
        block = merge_blocks(["<a />", "<b />", "<a />"])
        assert block == "<enrichment_hints>\n<a />\n<b />\n</enrichment_hints>"


class TestInjectContext:
    def test_inserted_at_end_of_context_section(self):
        prompt = "# Persona\nhi\n\n# Context\n时间\n# Rules\nbe nice"
        result = inject_context(prompt, "<hints />")

        assert result.index("<hints />") > result.index("# Context")
        assert result.index("<hints />") < result.index("# Rules")

    def test_appended_without_marker(self):
        assert inject_context("plain", "<hints />") == "plain\n\n<hints />"

    def test_empty_block_is_noop(self):
        assert inject_context("plain", "") == "plain"
