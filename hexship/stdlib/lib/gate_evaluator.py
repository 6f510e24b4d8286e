"""GateEvaluator lib - quality gate verdicts and audited bypasses.

The gate is evaluated once per run, when the analysis stage reports its
metrics payload. Each condition compares one metric to its threshold:

+----------+--------------------------------------------------------------+
| Verdict  | When                                                         |
+==========+==============================================================+
| ``fail`` | any condition fails its threshold, or its metric is missing |
| ``warn`` | no failure, but a value sits inside a condition's warn band |
| ``pass`` | otherwise                                                    |
+----------+--------------------------------------------------------------+

A ``fail`` blocks gated stages unless an authorized bypass token was
presented. Bypass tokens are configured as SHA-256 digests and only the
digest ever reaches storage.
"""

from __future__ import annotations

import hashlib
import hmac
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from hexship.kernel.domain.gate import (
    BypassAuditEntry,
    ConditionResult,
    GateDecision,
    GateVerdict,
    bypass_from_storage,
    bypass_to_storage,
)
from hexship.kernel.exceptions import GateOverrideError, ResourceNotFoundError
from hexship.kernel.logging import get_logger
from hexship.kernel.orchestration.events import GateBypassed, GateEvaluated
from hexship.kernel.utils.timer import utcnow
from hexship.stdlib.lib_base import HexShipLib

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from hexship.kernel.domain.pipeline import GateCondition
    from hexship.kernel.ports.data_store import SupportsCollectionStorage
    from hexship.kernel.ports.observer_manager import ObserverManager

logger = get_logger(__name__)

DECISIONS_COLLECTION = "gate_decisions"
BYPASS_COLLECTION = "gate_bypasses"


def token_digest(token: str) -> str:
    """SHA-256 hex digest of a bypass token.

    Examples
    --------
    >>> len(token_digest("s3cret"))
    64
    """
    return hashlib.sha256(token.encode()).hexdigest()


def evaluate_conditions(
    conditions: Sequence[GateCondition], metrics: Mapping[str, float]
) -> tuple[GateVerdict, list[ConditionResult]]:
    """Evaluate *conditions* against a metrics payload.

    Examples
    --------
    >>> from hexship.kernel.domain.pipeline import GateCondition
    >>> conditions = [
    ...     GateCondition(metric="bugs", comparator="<=", threshold=0),
    ...     GateCondition(metric="coverage", comparator=">=", threshold=80),
    ... ]
    >>> evaluate_conditions(conditions, {"bugs": 0, "coverage": 85})[0]
    <GateVerdict.PASS: 'pass'>
    >>> evaluate_conditions(conditions, {"bugs": 2, "coverage": 85})[0]
    <GateVerdict.FAIL: 'fail'>
    """
    results: list[ConditionResult] = []
    for condition in conditions:
        raw = metrics.get(condition.metric)
        value = float(raw) if raw is not None else None
        if value is None or not condition.comparator.compare(value, condition.threshold):
            verdict = GateVerdict.FAIL
        elif condition.warn_threshold is not None and not condition.comparator.compare(
            value, condition.warn_threshold
        ):
            verdict = GateVerdict.WARN
        else:
            verdict = GateVerdict.PASS
        results.append(
            ConditionResult(
                condition=condition.name, metric=condition.metric, value=value, verdict=verdict
            )
        )

    verdicts = {result.verdict for result in results}
    if GateVerdict.FAIL in verdicts:
        return GateVerdict.FAIL, results
    if GateVerdict.WARN in verdicts:
        return GateVerdict.WARN, results
    return GateVerdict.PASS, results


@dataclass(frozen=True, slots=True)
class _PendingBypass:
    actor: str
    token_digest: str
    reason: str
    requested_at: datetime


class GateEvaluator(HexShipLib):
    """Evaluates quality gates and records authorized bypasses.

    Parameters
    ----------
    storage : SupportsCollectionStorage
        Stores decisions and the append-only bypass audit log.
    observer_manager : ObserverManager
        Receives gate events.
    bypass_token_digests : Iterable[str]
        SHA-256 hex digests of tokens allowed to override a failing gate.
        With no digests configured every override is rejected.
    """

    def __init__(
        self,
        storage: SupportsCollectionStorage,
        observer_manager: ObserverManager,
        *,
        bypass_token_digests: Iterable[str] = (),
    ) -> None:
        self._storage = storage
        self._observers = observer_manager
        self._digests = tuple(d.strip().lower() for d in bypass_token_digests if d.strip())
        self._decisions: dict[str, GateDecision] = {}
        self._pending: dict[str, _PendingBypass] = {}

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def aevaluate(
        self,
        run_id: str,
        conditions: Sequence[GateCondition],
        metrics: Mapping[str, float],
    ) -> GateDecision:
        """Evaluate the gate for *run_id* once and record the decision.

        A second evaluation for the same run returns the stored decision.
        """
        if run_id in self._decisions:
            return self._decisions[run_id]

        verdict, results = evaluate_conditions(conditions, metrics)
        decision = GateDecision(
            run_id=run_id,
            verdict=verdict,
            conditions=results,
            metrics={key: float(value) for key, value in metrics.items()},
        )
        pending = self._pending.pop(run_id, None)
        if pending is not None:
            decision.bypass = await self._append_bypass(
                run_id,
                pending,
                waived=decision.failed_conditions,
                verdict_before=verdict,
            )

        self._decisions[run_id] = decision
        await self._save(decision)
        logger.info(
            "Gate for run {run_id}: {verdict} ({count} conditions)",
            run_id=run_id,
            verdict=str(verdict),
            count=len(results),
        )
        await self._observers.notify(
            GateEvaluated(
                run_id=run_id,
                verdict=str(verdict),
                failed_conditions=decision.failed_conditions,
                overridden=decision.overridden,
            )
        )
        return decision

    def blocks(self, run_id: str) -> bool:
        """Whether the run's current decision blocks gated stages."""
        decision = self._decisions.get(run_id)
        return decision is not None and not decision.allows_promotion

    def decision_for(self, run_id: str) -> GateDecision | None:
        return self._decisions.get(run_id)

    async def arestore(self, run_id: str) -> GateDecision | None:
        """Reload a persisted decision into memory (used when resuming a run)."""
        with suppress(ResourceNotFoundError):
            return await self.aget_decision(run_id)
        return None

    def forget(self, run_id: str) -> None:
        """Drop in-memory state for a finished run; storage is untouched."""
        self._decisions.pop(run_id, None)
        self._pending.pop(run_id, None)

    # ------------------------------------------------------------------
    # Bypass
    # ------------------------------------------------------------------

    async def aoverride(
        self, run_id: str, token: str, actor: str, reason: str = ""
    ) -> GateDecision | None:
        """Apply an authorized bypass to a run's gate.

        Before evaluation the bypass is held and applied when the verdict is
        produced; after evaluation the stored decision is updated in place.

        Returns
        -------
        GateDecision | None
            The updated decision, or None when the gate was not evaluated yet.

        Raises
        ------
        GateOverrideError
            If the token is not authorized or the gate was already overridden
        """
        digest = token_digest(token)
        if not any(hmac.compare_digest(digest, allowed) for allowed in self._digests):
            logger.warning(
                "Rejected gate override for run {run_id} by {actor}", run_id=run_id, actor=actor
            )
            raise GateOverrideError(f"Bypass token presented by '{actor}' is not authorized")

        pending = _PendingBypass(
            actor=actor, token_digest=digest, reason=reason, requested_at=utcnow()
        )
        decision = self._decisions.get(run_id)
        if decision is None:
            self._pending[run_id] = pending
            logger.info(
                "Gate override for run {run_id} by {actor} held until evaluation",
                run_id=run_id,
                actor=actor,
            )
            return None
        if decision.overridden:
            raise GateOverrideError(f"Gate for run '{run_id}' was already overridden")

        decision.bypass = await self._append_bypass(
            run_id, pending, waived=decision.failed_conditions, verdict_before=decision.verdict
        )
        await self._save(decision)
        return decision

    async def aget_decision(self, run_id: str) -> GateDecision:
        """Get the recorded decision for a run.

        Raises
        ------
        ResourceNotFoundError
            If the gate has not been evaluated for that run
        """
        decision = self._decisions.get(run_id)
        if decision is None:
            data = await self._storage.aload(DECISIONS_COLLECTION, run_id)
            if data is None:
                raise ResourceNotFoundError("gate decision", run_id)
            decision = _decision_from_storage(data)
            self._decisions[run_id] = decision
        return decision

    async def aaudit_log(self, run_id: str | None = None) -> list[BypassAuditEntry]:
        """Return bypass audit entries, oldest first."""
        docs = await self._storage.aquery(
            BYPASS_COLLECTION, {"run_id": run_id} if run_id else None
        )
        entries = [bypass_from_storage(doc) for doc in docs]
        entries.sort(key=lambda entry: entry.timestamp)
        return entries

    async def _append_bypass(
        self,
        run_id: str,
        pending: _PendingBypass,
        *,
        waived: list[str],
        verdict_before: GateVerdict,
    ) -> BypassAuditEntry:
        entry = BypassAuditEntry(
            run_id=run_id,
            actor=pending.actor,
            token_digest=pending.token_digest,
            reason=pending.reason,
            waived_conditions=tuple(waived),
            verdict_before=verdict_before,
            timestamp=pending.requested_at,
        )
        key = f"{run_id}:{entry.timestamp.isoformat()}"
        await self._storage.asave(BYPASS_COLLECTION, key, bypass_to_storage(entry))
        logger.warning(
            "Gate for run {run_id} bypassed by {actor}; waived: {waived}",
            run_id=run_id,
            actor=pending.actor,
            waived=", ".join(waived) or "nothing",
        )
        await self._observers.notify(
            GateBypassed(run_id=run_id, actor=pending.actor, waived_conditions=list(waived))
        )
        return entry

    async def _save(self, decision: GateDecision) -> None:
        await self._storage.asave(
            DECISIONS_COLLECTION, decision.run_id, _decision_to_storage(decision)
        )


def _decision_to_storage(decision: GateDecision) -> dict[str, Any]:
    return {
        "run_id": decision.run_id,
        "verdict": str(decision.verdict),
        "conditions": [
            {
                "condition": c.condition,
                "metric": c.metric,
                "value": c.value,
                "verdict": str(c.verdict),
            }
            for c in decision.conditions
        ],
        "metrics": decision.metrics,
        "evaluated_at": decision.evaluated_at.isoformat(),
        "bypass": bypass_to_storage(decision.bypass) if decision.bypass else None,
    }


def _decision_from_storage(data: dict[str, Any]) -> GateDecision:
    return GateDecision(
        run_id=data["run_id"],
        verdict=GateVerdict(data["verdict"]),
        conditions=[
            ConditionResult(
                condition=c["condition"],
                metric=c["metric"],
                value=c["value"],
                verdict=GateVerdict(c["verdict"]),
            )
            for c in data.get("conditions") or []
        ],
        metrics=dict(data.get("metrics") or {}),
        evaluated_at=datetime.fromisoformat(data["evaluated_at"]),
        bypass=bypass_from_storage(data["bypass"]) if data.get("bypass") else None,
    )
