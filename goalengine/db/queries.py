"""
Persistence query functions - append/read operations over a store
"""
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

GOALS = "goals"
KNOWLEDGE_FACTS = "knowledge_facts"
COST_RECORDS = "cost_records"


def _now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


# ===== Goal Queries =====

async def append_goal_snapshot(store, goal, steps) -> Dict[str, Any]:
    """Append the goal together with its plan as it stands now"""
    doc = goal.to_dict()
    doc["steps"] = [step.to_dict() for step in steps]
    doc["recorded_at"] = _now()
    await store.append(GOALS, doc)
    return doc


async def get_goal_history(store, goal_id: str) -> List[Dict[str, Any]]:
    """All snapshots recorded for a goal, oldest first"""
    return await store.read(GOALS, {"id": goal_id})


# ===== Knowledge Queries =====

async def append_fact(store, fact) -> Dict[str, Any]:
    doc = fact.to_dict()
    await store.append(KNOWLEDGE_FACTS, doc)
    return doc


async def list_facts(store, source_goal_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    filters = {"source_goal_id": source_goal_id} if source_goal_id else None
    return await store.read(KNOWLEDGE_FACTS, filters, limit)


# ===== Cost Queries =====

async def append_cost_record(store, record) -> Dict[str, Any]:
    doc = record.to_dict()
    await store.append(COST_RECORDS, doc)
    return doc


async def list_cost_records(store, provider_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    filters = {"provider_id": provider_id} if provider_id else None
    return await store.read(COST_RECORDS, filters, limit)
