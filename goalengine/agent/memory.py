"""
Memory — short-term (per-goal working memory) and long-term (knowledge base)

Working memory is scratch space scoped by goal id, last-writer-wins per key,
with TTL. The knowledge base is append-only; relevance feedback from the
learning loop is kept beside the facts, never inside them.
"""
from typing import Any, Callable, Dict, List, Optional
from collections import OrderedDict
from dataclasses import dataclass, field
import logging
import math
import time

from goalengine.agent.models import new_id
from goalengine.db import queries

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkingMemoryEntry:
    goal_id: str
    key: str
    value: Any
    expires_at: float
    written_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "goal_id": self.goal_id,
            "key": self.key,
            "value": self.value,
            "expires_at": self.expires_at,
            "written_at": self.written_at,
        }


class WorkingMemory:
    """
    Per-goal key/value scratch store.

    Sealing a goal drops its entries and rejects later writes, so nothing
    lands for a goal once it is terminal.
    """

    def __init__(self, default_ttl: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._scopes: Dict[str, "OrderedDict[str, WorkingMemoryEntry]"] = {}
        self._sealed: set = set()

    def put(self, goal_id: str, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        if goal_id in self._sealed:
            logger.debug(f"Dropped working-memory write {key} for sealed goal {goal_id}")
            return False
        now = self._clock()
        entry = WorkingMemoryEntry(
            goal_id=goal_id,
            key=key,
            value=value,
            expires_at=now + (ttl if ttl is not None else self.default_ttl),
            written_at=now,
        )
        scope = self._scopes.setdefault(goal_id, OrderedDict())
        self._drop_expired(scope, now)
        scope[key] = entry
        scope.move_to_end(key)
        return True

    def get(self, goal_id: str, key: str, default: Any = None) -> Any:
        entry = self._scopes.get(goal_id, {}).get(key)
        if entry is None or entry.expires_at <= self._clock():
            return default
        return entry.value

    def entries(self, goal_id: str) -> List[WorkingMemoryEntry]:
        now = self._clock()
        return [e for e in self._scopes.get(goal_id, {}).values() if e.expires_at > now]

    def recent(self, goal_id: str, limit: int) -> List[WorkingMemoryEntry]:
        """Most recently written live entries, oldest first"""
        live = self.entries(goal_id)
        return live[-limit:] if limit > 0 else []

    def snapshot(self, goal_id: str) -> Dict[str, Any]:
        return {e.key: e.value for e in self.entries(goal_id)}

    def seal(self, goal_id: str) -> None:
        self._sealed.add(goal_id)
        self._scopes.pop(goal_id, None)

    def is_sealed(self, goal_id: str) -> bool:
        return goal_id in self._sealed

    def forget(self, goal_id: str) -> None:
        """Drop every trace of a goal, including its sealed marker"""
        self._sealed.discard(goal_id)
        self._scopes.pop(goal_id, None)

    def purge_expired(self) -> int:
        now = self._clock()
        return sum(self._drop_expired(scope, now) for scope in self._scopes.values())

    @staticmethod
    def _drop_expired(scope: "OrderedDict[str, WorkingMemoryEntry]", now: float) -> int:
        expired = [k for k, e in scope.items() if e.expires_at <= now]
        for key in expired:
            del scope[key]
        return len(expired)


@dataclass(frozen=True)
class KnowledgeFact:
    id: str
    content: str
    source_goal_id: Optional[str]
    created_at: float
    category: str = "experience"
    importance: float = 0.5
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "source_goal_id": self.source_goal_id,
            "created_at": self.created_at,
            "category": self.category,
            "importance": self.importance,
            "metadata": dict(self.metadata),
        }


# (fact, feedback weight, now) -> relevance score
RelevanceScorer = Callable[[KnowledgeFact, float, float], float]


def recency_feedback_scorer(half_life_seconds: float) -> RelevanceScorer:
    """Exponential recency decay weighted by learning feedback and importance"""
    def score(fact: KnowledgeFact, feedback: float, now: float) -> float:
        age = max(0.0, now - fact.created_at)
        decay = math.pow(0.5, age / half_life_seconds) if half_life_seconds > 0 else 1.0
        return decay * feedback * (0.5 + fact.importance)
    return score


class KnowledgeBase:
    """Append-only long-term fact store"""

    def __init__(
        self,
        scorer: Optional[RelevanceScorer] = None,
        store=None,
        clock: Callable[[], float] = time.time,
        half_life_seconds: float = 86400.0,
    ):
        self.scorer = scorer or recency_feedback_scorer(half_life_seconds)
        self.store = store
        self._clock = clock
        self._facts: List[KnowledgeFact] = []
        self._feedback: Dict[str, float] = {}

    async def append(
        self,
        content: str,
        source_goal_id: Optional[str] = None,
        category: str = "experience",
        importance: float = 0.5,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> KnowledgeFact:
        fact = KnowledgeFact(
            id=new_id("fact"),
            content=content,
            source_goal_id=source_goal_id,
            created_at=self._clock(),
            category=category,
            importance=importance,
            metadata=dict(metadata or {}),
        )
        self._facts.append(fact)
        if self.store is not None:
            await queries.append_fact(self.store, fact)
        return fact

    def facts(self) -> List[KnowledgeFact]:
        return list(self._facts)

    def get(self, fact_id: str) -> Optional[KnowledgeFact]:
        return next((f for f in self._facts if f.id == fact_id), None)

    def feedback(self) -> Dict[str, float]:
        return dict(self._feedback)

    def feedback_for(self, fact_id: str) -> float:
        return self._feedback.get(fact_id, 1.0)

    def apply_feedback(self, weights: Dict[str, float]) -> None:
        """Install a whole new feedback mapping computed by the learning loop"""
        self._feedback = {**self._feedback, **weights}

    def top_k(self, limit: int) -> List[KnowledgeFact]:
        if limit <= 0:
            return []
        now = self._clock()
        ranked = sorted(
            self._facts,
            key=lambda f: (self.scorer(f, self.feedback_for(f.id), now), f.created_at),
            reverse=True,
        )
        return ranked[:limit]

    def __len__(self) -> int:
        return len(self._facts)
