"""Quality gate verdicts and bypass audit records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from hexship.kernel.utils.timer import utcnow


class GateVerdict(StrEnum):
    """Outcome of evaluating a run's metrics against the gate conditions."""

    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass(frozen=True, slots=True)
class ConditionResult:
    """Evaluation of one threshold condition."""

    condition: str
    metric: str
    value: float | None
    verdict: GateVerdict


@dataclass(frozen=True, slots=True)
class BypassAuditEntry:
    """Immutable record of an authorized gate override.

    Only a digest of the bypass token is stored.
    """

    run_id: str
    actor: str
    token_digest: str
    reason: str
    waived_conditions: tuple[str, ...]
    verdict_before: GateVerdict | None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class GateDecision:
    """The gate outcome recorded for one run."""

    run_id: str
    verdict: GateVerdict
    conditions: list[ConditionResult] = field(default_factory=list)
    metrics: dict[str, float] = field(default_factory=dict)
    evaluated_at: datetime = field(default_factory=utcnow)
    bypass: BypassAuditEntry | None = None

    @property
    def overridden(self) -> bool:
        return self.bypass is not None

    @property
    def failed_conditions(self) -> list[str]:
        return [c.condition for c in self.conditions if c.verdict == GateVerdict.FAIL]

    @property
    def allows_promotion(self) -> bool:
        """``pass`` and ``warn`` allow promotion; ``fail`` only with a bypass."""
        return self.verdict != GateVerdict.FAIL or self.overridden


def bypass_to_storage(entry: BypassAuditEntry) -> dict[str, Any]:
    return {
        "run_id": entry.run_id,
        "actor": entry.actor,
        "token_digest": entry.token_digest,
        "reason": entry.reason,
        "waived_conditions": list(entry.waived_conditions),
        "verdict_before": str(entry.verdict_before) if entry.verdict_before else None,
        "timestamp": entry.timestamp.isoformat(),
    }


def bypass_from_storage(data: dict[str, Any]) -> BypassAuditEntry:
    verdict_before = data.get("verdict_before")
    return BypassAuditEntry(
        run_id=data["run_id"],
        actor=data["actor"],
        token_digest=data["token_digest"],
        reason=data.get("reason", ""),
        waived_conditions=tuple(data.get("waived_conditions") or ()),
        verdict_before=GateVerdict(verdict_before) if verdict_before else None,
        timestamp=datetime.fromisoformat(data["timestamp"]),
    )
