"""
Cost ledger — append-only audit trail of served (non-cached) requests
"""
from typing import Any, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, asdict
import time


@dataclass(frozen=True)
class CostRecord:
    provider_id: str
    tokens_in: int
    tokens_out: int
    cost: float
    timestamp: float
    partial: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_cost(tokens_in: int, tokens_out: int, cost_per_token: float) -> float:
    return (tokens_in + tokens_out) * cost_per_token


class CostLedger:
    """Records are never edited or deleted"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._records: List[CostRecord] = []

    def append(
        self,
        provider_id: str,
        tokens_in: int,
        tokens_out: int,
        cost_per_token: float,
        partial: bool = False,
    ) -> CostRecord:
        record = CostRecord(
            provider_id=provider_id,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost=compute_cost(tokens_in, tokens_out, cost_per_token),
            timestamp=self._clock(),
            partial=partial,
        )
        self._records.append(record)
        return record

    def records(
        self,
        since: Optional[float] = None,
        until: Optional[float] = None,
        provider_id: Optional[str] = None,
    ) -> Tuple[CostRecord, ...]:
        return tuple(
            r for r in self._records
            if (since is None or r.timestamp >= since)
            and (until is None or r.timestamp <= until)
            and (provider_id is None or r.provider_id == provider_id)
        )

    def summary(
        self,
        since: Optional[float] = None,
        until: Optional[float] = None,
        provider_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Per-provider usage totals over a window"""
        providers: Dict[str, Dict[str, Any]] = {}
        for r in self.records(since, until, provider_id):
            row = providers.setdefault(
                r.provider_id, {"requests": 0, "tokens_in": 0, "tokens_out": 0, "cost": 0.0}
            )
            row["requests"] += 1
            row["tokens_in"] += r.tokens_in
            row["tokens_out"] += r.tokens_out
            row["cost"] += r.cost
        return {
            "providers": providers,
            "total_cost": sum(row["cost"] for row in providers.values()),
            "total_requests": sum(row["requests"] for row in providers.values()),
            "total_tokens": sum(row["tokens_in"] + row["tokens_out"] for row in providers.values()),
        }

    def __len__(self) -> int:
        return len(self._records)
