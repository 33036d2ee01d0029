"""
Usage ledger: per (user, feature, month) counters.
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import select, func

from heirloom.core.database import get_db_session, usage_records
from heirloom.core.errors import QuotaExceededError
from heirloom.features.usage.service import (
    PLAN_CHANGES_KEY,
    annotate_plan_change,
    feature_usage,
    get_period_usage,
    get_record,
    get_usage,
    get_usage_stats,
    record_usage,
    refund_usage,
)
from heirloom.models.plan import Feature, Plan
from heirloom.tests.mocks import seed_subscription


def _row_count() -> int:
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(usage_records)).scalar()


def test_first_use_creates_record():
    record = record_usage("user_alice", "voice_clones", {"clone_id": "c1"})
    assert record.count == 1
    assert record.meta == {"clone_id": "c1"}
    assert get_usage("user_alice", Feature.VOICE_CLONES) == 1


def test_increments_same_record():
    for _ in range(3):
        record_usage("user_alice", "avatar_generations")
    assert get_usage("user_alice", "avatar_generations") == 3
    assert _row_count() == 1


def test_metadata_is_merged():
    record_usage("user_alice", "multimedia_uploads", {"a": 1, "b": 1})
    record = record_usage("user_alice", "multimedia_uploads", {"b": 2})
    assert record.meta == {"a": 1, "b": 2}


def test_counts_are_per_feature_and_user():
    record_usage("user_alice", "voice_clones")
    record_usage("user_bob", "voice_clones")
    record_usage("user_alice", "interview_sessions")
    usage = get_period_usage("user_alice")
    assert usage[Feature.VOICE_CLONES] == 1
    assert usage[Feature.INTERVIEW_SESSIONS] == 1
    assert usage[Feature.AVATAR_GENERATIONS] == 0


def test_new_month_starts_from_zero():
    march = datetime(2026, 3, 31, 23, 59, tzinfo=timezone.utc)
    april = datetime(2026, 4, 1, 0, 0, tzinfo=timezone.utc)
    record_usage("user_alice", "voice_clones", now=march)
    record_usage("user_alice", "voice_clones", now=march)

    assert get_usage("user_alice", "voice_clones", now=march) == 2
    assert get_usage("user_alice", "voice_clones", now=april) == 0

    record = record_usage("user_alice", "voice_clones", now=april)
    assert record.count == 1
    assert record.period_start == april
    assert _row_count() == 2


def test_max_allowed_blocks_increment_at_limit():
    record_usage("user_alice", "voice_clones", max_allowed=2)
    record_usage("user_alice", "voice_clones", max_allowed=2)
    with pytest.raises(QuotaExceededError):
        record_usage("user_alice", "voice_clones", max_allowed=2)
    assert get_usage("user_alice", "voice_clones") == 2


def test_max_allowed_zero_never_creates_record():
    with pytest.raises(QuotaExceededError):
        record_usage("user_alice", "voice_clones", max_allowed=0)
    assert _row_count() == 0


def test_refund_decrements():
    record_usage("user_alice", "memory_graph_operations")
    record_usage("user_alice", "memory_graph_operations")
    record = refund_usage("user_alice", "memory_graph_operations")
    assert record.count == 1


def test_refund_clamps_at_zero():
    record_usage("user_alice", "multimedia_uploads")
    refund_usage("user_alice", "multimedia_uploads")
    record = refund_usage("user_alice", "multimedia_uploads")
    assert record.count == 0


def test_refund_never_creates_record():
    assert refund_usage("user_alice", "voice_clones") is None
    assert _row_count() == 0


def test_interview_sessions_are_not_refunded():
    record_usage("user_alice", "interview_sessions")
    assert refund_usage("user_alice", "interview_sessions") is None
    assert get_usage("user_alice", "interview_sessions") == 1


def test_annotate_plan_change_appends_entry():
    record_usage("user_alice", "voice_clones")
    record_usage("user_alice", "voice_clones")

    annotated = annotate_plan_change("user_alice", "premium", "ultimate", change_key="chg_1")
    assert annotated == 1

    record = get_record("user_alice", "voice_clones")
    assert record.count == 2
    trail = record.meta[PLAN_CHANGES_KEY]
    assert len(trail) == 1
    assert trail[0]["from"] == "premium"
    assert trail[0]["to"] == "ultimate"
    assert trail[0]["usage_at_change"] == 2
    assert trail[0]["new_limit"] == -1


def test_annotate_is_idempotent_by_change_key():
    record_usage("user_alice", "avatar_generations")
    annotate_plan_change("user_alice", "premium", "personal", change_key="chg_1")
    assert annotate_plan_change("user_alice", "premium", "personal", change_key="chg_1") == 0
    annotate_plan_change("user_alice", "personal", "premium", change_key="chg_2")

    trail = get_record("user_alice", "avatar_generations").meta[PLAN_CHANGES_KEY]
    assert [entry["change_key"] for entry in trail] == ["chg_1", "chg_2"]


def test_annotate_creates_no_records():
    assert annotate_plan_change("user_alice", "personal", "premium", change_key="chg_1") == 0
    assert _row_count() == 0


def test_record_metadata_cannot_clobber_plan_trail():
    record_usage("user_alice", "voice_clones")
    annotate_plan_change("user_alice", "personal", "premium", change_key="chg_1")
    record = record_usage("user_alice", "voice_clones", {PLAN_CHANGES_KEY: [], "x": 1})
    assert len(record.meta[PLAN_CHANGES_KEY]) == 1
    assert record.meta["x"] == 1


def test_feature_usage_shapes():
    unlimited = feature_usage(-1, 40)
    assert unlimited.remaining == "unlimited"
    assert unlimited.unlimited is True
    assert unlimited.percent == 0

    partial = feature_usage(20, 5)
    assert partial.remaining == 15
    assert partial.percent == 25

    over = feature_usage(1, 3)
    assert over.remaining == 0
    assert over.percent == 100

    blocked = feature_usage(0, 0)
    assert blocked.remaining == 0
    assert blocked.percent == 0

    # Half-way values round up
    assert feature_usage(200, 1).percent == 1
    assert feature_usage(8, 1).percent == 13
    assert feature_usage(3, 1).percent == 33


def test_usage_stats_reflect_plan():
    seed_subscription("user_alice", Plan.PREMIUM)
    record_usage("user_alice", "voice_clones")

    stats = get_usage_stats("user_alice")
    assert stats.plan == Plan.PREMIUM
    voice = stats.features["voice_clones"]
    assert voice.limit == 20
    assert voice.current_usage == 1
    assert voice.remaining == 19
    assert set(stats.features) == {f.value for f in Feature}


def test_usage_stats_for_free_user():
    stats = get_usage_stats("nobody")
    assert stats.plan == Plan.FREE
    assert all(f.limit == 0 and f.remaining == 0 for f in stats.features.values())
