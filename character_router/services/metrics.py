from __future__ import annotations

import asyncio
import logging
import math
from collections import defaultdict
from typing import Any, Callable, Iterable, Mapping

from ..common import as_float, now_ms, truncate
from ..errors import GroupNotConfiguredError, MetricsNotFoundError, TurnTimeoutError
from ..models import Activity, Insight, UserMetrics
from ..prompts.insight import (
    GroupProfile,
    build_insight_instructions,
    build_insight_request,
    load_group_profiles,
)
from ..storage.base import DocumentStore
from .backend import ChatBackend, collect_turn

logger = logging.getLogger("character_router.metrics")

METRICS_COLLECTION = "user_metrics"
INSIGHTS_COLLECTION = "insights"

# Declaration order breaks ties when picking the primary group.
CATEGORY_ORDER = ("alpha", "beta", "gamma", "delta", "epsilon")
CATEGORY_MIN = 0.0
CATEGORY_MAX = 10.0

ScoringRule = Callable[[Activity, dict[str, float]], None]

_REFLECTIVE_STEMS = ("think", "feel", "believe", "wonder", "reflect", "consider")


def _score_conversation(activity: Activity, scores: dict[str, float]) -> None:
    scores["beta"] += activity.signal("depth") * 0.5
    scores["delta"] += activity.signal("reflection") * 0.7


def _score_challenge(activity: Activity, scores: dict[str, float]) -> None:
    scores["alpha"] += activity.signal("persistence") * 0.8
    scores["gamma"] += activity.signal("creativity") * 0.6


def _score_sharing(activity: Activity, scores: dict[str, float]) -> None:
    scores["epsilon"] += activity.signal("generosity") * 0.9


DEFAULT_SCORING_RULES: dict[str, ScoringRule] = {
    "conversation": _score_conversation,
    "challenge": _score_challenge,
    "sharing": _score_sharing,
}


def conversation_depth(text: str) -> float:
    words = text.split()
    long_words = [word for word in words if len(word) > 7]
    return min(10.0, len(words) / 20 + len(long_words) / 2)


def reflection_level(text: str) -> float:
    lowered = text.lower()
    return min(10.0, 2.0 * sum(1 for stem in _REFLECTIVE_STEMS if stem in lowered))


def conversation_activity(text: str) -> Activity:
    return Activity(
        kind="conversation",
        signals={"depth": conversation_depth(text), "reflection": reflection_level(text)},
        text=truncate(text, 500),
    )


def _coerce_activity(raw: Activity | Mapping[str, Any]) -> Activity:
    if isinstance(raw, Activity):
        return raw
    kind = str(raw.get("type") or raw.get("kind") or "").strip()
    signals = {
        str(key): as_float(value)
        for key, value in raw.items()
        if key not in {"type", "kind", "text", "timestamp"} and isinstance(value, (int, float, str))
    }
    return Activity(kind=kind, signals=signals, text=str(raw.get("text") or ""))


def clamp_category(value: float) -> float:
    if not math.isfinite(value):
        return CATEGORY_MIN
    return min(max(value, CATEGORY_MIN), CATEGORY_MAX)


def primary_group(categories: Mapping[str, float]) -> str:
    best = CATEGORY_ORDER[0]
    for category in CATEGORY_ORDER[1:]:
        if categories.get(category, 0.0) > categories.get(best, 0.0):
            best = category
    return best


class MetricsEngine:
    def __init__(
        self,
        documents: DocumentStore,
        backend: ChatBackend,
        *,
        insight_timeout: float = 30.0,
        groups: Mapping[str, GroupProfile] | None = None,
        rules: Mapping[str, ScoringRule] | None = None,
    ) -> None:
        self.documents = documents
        self.backend = backend
        self.insight_timeout = insight_timeout
        self._groups = dict(groups) if groups is not None else None
        self.rules: dict[str, ScoringRule] = dict(DEFAULT_SCORING_RULES if rules is None else rules)
        self._user_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def groups(self) -> dict[str, GroupProfile]:
        if self._groups is not None:
            return self._groups
        return load_group_profiles()

    def register_scoring_rule(self, activity_type: str, rule: ScoringRule) -> None:
        self.rules[activity_type] = rule

    def score(self, activities: Iterable[Activity | Mapping[str, Any]]) -> dict[str, float]:
        scores = {category: 0.0 for category in CATEGORY_ORDER}
        for raw in activities:
            activity = _coerce_activity(raw)
            rule = self.rules.get(activity.kind)
            if rule is None:
                logger.debug("No scoring rule for activity type %r", activity.kind)
                continue
            rule(activity, scores)
        return {category: clamp_category(scores[category]) for category in CATEGORY_ORDER}

    async def calculate_user_metrics(
        self,
        user_id: str,
        activities: Iterable[Activity | Mapping[str, Any]],
    ) -> UserMetrics:
        categories = self.score(activities)
        # Read, append and write one user's document under its lock so no snapshot is lost.
        async with self._user_locks[user_id]:
            previous = await self.get_user_metrics(user_id)
            history = [*previous.history, previous.snapshot()] if previous is not None else []
            metrics = UserMetrics(
                user_id=user_id,
                categories=categories,
                primary_group=primary_group(categories),
                history=history,
                timestamp=now_ms(),
            )
            await self.documents.set(METRICS_COLLECTION, user_id, metrics.to_document())
        logger.info("Metrics updated: user=%s primary_group=%s", user_id, metrics.primary_group)
        return metrics

    async def get_user_metrics(self, user_id: str) -> UserMetrics | None:
        doc = await self.documents.get(METRICS_COLLECTION, user_id)
        if doc is None:
            return None
        doc.setdefault("user_id", user_id)
        return UserMetrics.from_document(doc)

    async def get_user_group(self, user_id: str) -> str | None:
        metrics = await self.get_user_metrics(user_id)
        return metrics.primary_group if metrics is not None else None

    async def generate_insight(self, user_id: str) -> Insight:
        metrics = await self.get_user_metrics(user_id)
        if metrics is None:
            raise MetricsNotFoundError(user_id)

        profile = self.groups.get(metrics.primary_group)
        if profile is None:
            raise GroupNotConfiguredError(metrics.primary_group)

        session = self.backend.create_session(build_insight_instructions(profile, metrics.categories))
        try:
            await session.connect()
            await session.send(build_insight_request(metrics.categories))
            result = await collect_turn(session, self.insight_timeout)
        finally:
            try:
                await session.disconnect()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug("Insight session disconnect failed: %s", exc)

        if not result.text:
            raise TurnTimeoutError(f"Insight generation timed out for user {user_id}")
        if not result.complete:
            logger.warning("Insight for user %s is partial (%s chars)", user_id, len(result.text))

        insight = Insight(
            user_id=user_id,
            group_id=profile.id,
            character=profile.name,
            text=result.text,
            metrics=dict(metrics.categories),
            timestamp=now_ms(),
        )
        await self.documents.set(INSIGHTS_COLLECTION, insight.key, insight.to_document())
        logger.info("Insight stored: user=%s group=%s", user_id, profile.id)
        return insight

    async def get_latest_insight(self, user_id: str) -> Insight | None:
        docs = await self.documents.query(
            INSIGHTS_COLLECTION,
            "user_id",
            user_id,
            order_by="timestamp",
            descending=True,
            limit=1,
        )
        if not docs:
            return None
        return Insight.from_document(docs[0])
