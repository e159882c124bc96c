"""
Per-identity funnel step matcher.

The matcher is a pure fold over one identity's activity, ordered by timestamp
with arrival sequence as the tie-breaker. Replaying the same records always
yields the same progressions, so both the incremental path (late record ->
recompute the identity) and batch rebuilds go through ``match_identity``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models_funnels import ProgressionStatus, TERMINAL_STATUSES
from .rules import Activity, CompiledFunnel, step_exit_matches, step_matches


CONTEXT_FIELDS = ("source", "medium", "campaign", "device")


@dataclass
class ProgressionState:
    funnel_id: str
    version_id: str
    identity: str
    sequence: int
    entered_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    status: str = ProgressionStatus.ACTIVE
    current_step_index: int = 0
    completed_at: Optional[datetime] = None
    exited_at: Optional[datetime] = None
    exit_step_index: Optional[int] = None
    step_times: List[Tuple[int, datetime]] = field(default_factory=list)
    rejected_branches: List[Dict[str, Any]] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return progression_id(self.version_id, self.identity, self.sequence)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "funnel_id": self.funnel_id,
            "funnel_version_id": self.version_id,
            "identity": self.identity,
            "sequence": self.sequence,
            "status": self.status,
            "current_step_index": self.current_step_index,
            "entered_at": self.entered_at,
            "last_activity_at": self.last_activity_at,
            "expires_at": self.expires_at,
            "completed_at": self.completed_at,
            "exited_at": self.exited_at,
            "exit_step_index": self.exit_step_index,
            "step_times": [{"step_index": idx, "at": at} for idx, at in self.step_times],
            "rejected_branches": [dict(b) for b in self.rejected_branches],
            "context": dict(self.context),
        }


def progression_id(version_id: str, identity: str, sequence: int) -> str:
    """Stable id so replays upsert the same rows instead of duplicating them."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"funnel-progression:{version_id}:{identity}:{sequence}"))


def entry_context(record: Activity) -> Dict[str, Any]:
    ctx: Dict[str, Any] = {name: getattr(record, name) for name in CONTEXT_FIELDS}
    ctx["properties"] = dict(record.properties or {})
    return ctx


def _open(funnel: CompiledFunnel, record: Activity, sequence: int) -> ProgressionState:
    return ProgressionState(
        funnel_id=funnel.funnel_id,
        version_id=funnel.version_id,
        identity=record.identity,
        sequence=sequence,
        entered_at=record.timestamp,
        last_activity_at=record.timestamp,
        expires_at=record.timestamp + funnel.window,
        step_times=[(0, record.timestamp)],
        context=entry_context(record),
    )


def _advance(funnel: CompiledFunnel, state: ProgressionState, record: Activity) -> None:
    steps = funnel.steps
    k = state.current_step_index
    ts = record.timestamp

    nxt = k + 1
    if nxt < len(steps) and steps[nxt].kind == "decision" and step_exit_matches(steps[nxt], record):
        state.status = ProgressionStatus.EXITED
        state.exited_at = ts
        state.exit_step_index = k
        state.last_activity_at = ts
        return

    qualifying = [j for j in range(k + 1, len(steps)) if step_matches(steps[j], record)]
    if not qualifying:
        # Re-hitting an already-passed step counts as activity, never as progress.
        if any(step_matches(steps[j], record) for j in range(0, k + 1)):
            state.last_activity_at = ts
        return

    chosen = qualifying[0]
    # Later steps this record also satisfied are the alternatives not taken;
    # steps jumped over without a match are kept apart as skips.
    rejected = qualifying[1:]
    skipped = list(range(k + 1, chosen))
    if rejected or skipped:
        state.rejected_branches.append(
            {"from_step": k, "chosen_step": chosen, "rejected_steps": rejected, "skipped_steps": skipped, "at": ts}
        )
    state.current_step_index = chosen
    state.step_times.append((chosen, ts))
    state.last_activity_at = ts
    if steps[chosen].kind == "conversion":
        state.status = ProgressionStatus.COMPLETED
        state.completed_at = ts


def order_records(records: Iterable[Activity]) -> List[Activity]:
    return sorted(records, key=lambda r: (r.timestamp, r.seq))


def match_identity(
    funnel: CompiledFunnel,
    records: Iterable[Activity],
    *,
    now: Optional[datetime] = None,
) -> List[ProgressionState]:
    """
    Fold one identity's records into its progressions (oldest first).

    Every record is placed by timestamp, so a late-arriving record simply
    changes the input and the whole history is recomputed. When ``now`` is
    given, an open progression whose window has elapsed comes back expired.
    """
    results: List[ProgressionState] = []
    current: Optional[ProgressionState] = None
    sequence = 0
    for record in order_records(records):
        if current is not None and record.timestamp > current.expires_at:
            current.status = ProgressionStatus.EXPIRED
            results.append(current)
            current = None
        if current is None:
            if step_matches(funnel.steps[0], record):
                sequence += 1
                current = _open(funnel, record, sequence)
            continue
        _advance(funnel, current, record)
        if current.terminal:
            results.append(current)
            current = None
    if current is not None:
        if now is not None and current.expires_at < now:
            current.status = ProgressionStatus.EXPIRED
        results.append(current)
    return results
