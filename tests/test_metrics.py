from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from _fakes import FakeBackend, MemoryDocumentStore

from character_router.errors import GroupNotConfiguredError, MetricsNotFoundError, TurnTimeoutError
from character_router.models import Activity
from character_router.services.metrics import (
    CATEGORY_ORDER,
    MetricsEngine,
    clamp_category,
    conversation_activity,
    conversation_depth,
    primary_group,
    reflection_level,
)
from character_router.storage import SqliteDocumentStore


def test_primary_group_prefers_first_declared_on_ties() -> None:
    assert primary_group({"alpha": 3, "beta": 7, "gamma": 7}) == "beta"
    assert primary_group({category: 0.0 for category in CATEGORY_ORDER}) == "alpha"
    assert primary_group({"delta": 4, "epsilon": 4}) == "delta"


@pytest.mark.parametrize("magnitude", [-1000.0, -1.0, 0.0, 3.5, 25.0, 1e9, float("nan"), float("inf"), "nan", "-inf"])
def test_categories_are_clamped(magnitude: float | str) -> None:
    engine = MetricsEngine(MemoryDocumentStore(), FakeBackend())
    scores = engine.score(
        [
            {"type": "conversation", "depth": magnitude, "reflection": magnitude},
            {"type": "challenge", "persistence": magnitude, "creativity": magnitude},
            {"type": "sharing", "generosity": magnitude},
        ]
    )
    assert list(scores) == list(CATEGORY_ORDER)
    assert all(0.0 <= value <= 10.0 for value in scores.values())


def test_non_finite_signals_score_as_zero() -> None:
    engine = MetricsEngine(MemoryDocumentStore(), FakeBackend())
    scores = engine.score([Activity(kind="conversation", signals={"depth": float("nan"), "reflection": 10})])
    assert scores["beta"] == 0.0
    assert scores["delta"] == pytest.approx(7.0)
    assert clamp_category(float("nan")) == 0.0
    assert primary_group(scores) == "delta"


def test_scoring_rules_are_extensible() -> None:
    engine = MetricsEngine(MemoryDocumentStore(), FakeBackend())

    def _score_meditation(activity: Activity, scores: dict[str, float]) -> None:
        scores["delta"] += activity.signal("minutes") / 10

    engine.register_scoring_rule("meditation", _score_meditation)
    scores = engine.score([Activity(kind="meditation", signals={"minutes": 30}), {"type": "unknown", "x": 5}])
    assert scores["delta"] == pytest.approx(3.0)
    assert sum(scores.values()) == pytest.approx(3.0)


def test_calculate_user_metrics_replaces_snapshot_and_grows_history() -> None:
    async def scenario() -> None:
        docs = MemoryDocumentStore()
        engine = MetricsEngine(docs, FakeBackend())

        first = await engine.calculate_user_metrics("u1", [{"type": "challenge", "persistence": 5, "creativity": 1}])
        assert first.categories["alpha"] == pytest.approx(4.0)
        assert first.primary_group == "alpha"
        assert first.history == []

        second = await engine.calculate_user_metrics("u1", [{"type": "sharing", "generosity": 10}])
        assert second.categories["alpha"] == 0.0
        assert second.categories["epsilon"] == pytest.approx(9.0)
        assert second.primary_group == "epsilon"
        assert len(second.history) == 1
        assert second.history[0]["primary_group"] == "alpha"

        third = await engine.calculate_user_metrics("u1", [])
        assert [item["primary_group"] for item in third.history] == ["alpha", "epsilon"]

        stored = docs.collections["user_metrics"]["u1"]
        assert stored["primary_group"] == third.primary_group
        assert await engine.get_user_group("u1") == "alpha"
        assert await engine.get_user_group("nobody") is None

    asyncio.run(scenario())


def test_concurrent_metrics_updates_keep_every_snapshot(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = SqliteDocumentStore(tmp_path / "metrics.db")
        await store.init()
        try:
            engine = MetricsEngine(store, FakeBackend())
            await engine.calculate_user_metrics("u1", [{"type": "sharing", "generosity": 1}])
            await asyncio.gather(
                *(
                    engine.calculate_user_metrics("u1", [{"type": "challenge", "persistence": step}])
                    for step in range(5)
                )
            )
            metrics = await engine.get_user_metrics("u1")
            assert metrics is not None
            assert len(metrics.history) == 5
            assert metrics.history[0]["primary_group"] == "epsilon"
        finally:
            await store.close()

    asyncio.run(scenario())


def test_conversation_activity_heuristics() -> None:
    text = "I think about consciousness and I wonder how perception shapes everything"
    assert conversation_depth(text) == pytest.approx(min(10.0, 11 / 20 + 3 / 2))
    assert reflection_level(text) == pytest.approx(4.0)
    assert reflection_level("I feel, I think, I believe, I wonder, I reflect, I consider, I feel") == 10.0

    activity = conversation_activity(text)
    assert activity.kind == "conversation"
    assert activity.signal("reflection") == pytest.approx(4.0)


def test_generate_insight_uses_primary_group_and_is_queryable() -> None:
    async def scenario() -> None:
        docs = MemoryDocumentStore()
        backend = FakeBackend(reply_chunks=["Reflect ", "on this."])
        engine = MetricsEngine(docs, backend, insight_timeout=0.2)
        await engine.calculate_user_metrics("u1", [{"type": "conversation", "depth": 10, "reflection": 0}])

        insight = await engine.generate_insight("u1")
        assert insight.group_id == "beta"
        assert insight.character == "Azure"
        assert insight.text == "Reflect on this."
        assert insight.metrics["beta"] == pytest.approx(5.0)
        assert insight.key in docs.collections["insights"]

        instructions = backend.sessions[0].instructions
        assert "You are Azure" in instructions
        assert "beta: 5" in instructions
        assert backend.disconnects == 1

        docs.collections["insights"]["u1_1"] = {"user_id": "u1", "timestamp": 1, "text": "ancient"}
        latest = await engine.get_latest_insight("u1")
        assert latest is not None and latest.text == "Reflect on this."
        assert await engine.get_latest_insight("nobody") is None

    asyncio.run(scenario())


def test_generate_insight_failures() -> None:
    async def scenario() -> None:
        docs = MemoryDocumentStore()
        engine = MetricsEngine(docs, FakeBackend(mode="silent"), insight_timeout=0.05)
        with pytest.raises(MetricsNotFoundError):
            await engine.generate_insight("u1")

        await engine.calculate_user_metrics("u1", [{"type": "sharing", "generosity": 3}])
        with pytest.raises(TurnTimeoutError):
            await engine.generate_insight("u1")

        unconfigured = MetricsEngine(docs, FakeBackend(), groups={})
        with pytest.raises(GroupNotConfiguredError):
            await unconfigured.generate_insight("u1")

    asyncio.run(scenario())
