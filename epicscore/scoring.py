"""Aggregation and completion engine.

Architecture
------------
Participants submit independent assessments; the engine decides when enough
of them are in and folds them into stored results.

- **Effort**: one integer estimate per participant per epic, tagged with the
  participant's role. Per role, the weighted mean ``Σ(value·w)/Σ(w)`` becomes
  a *role aggregate*; the epic's base score is the sum of its role aggregates.
- **Risk**: one probability and one impact (1..4 each) per participant per
  risk. The weighted mean of ``probability·impact`` is the risk's weighted
  score, which maps to a multiplier through a fixed coefficient table.
- **Final score**: base score times every risk coefficient, rounded half
  away from zero.

Completion
----------
A target completes once the number of distinct submitters reaches the size of
the owning team's roster (and at least one assessment exists). A risk
completing re-evaluates its epic; an epic completes only when effort quorum
is met *and* every risk is COMPLETE, otherwise the check returns without
writing anything.

Completion is at-most-once. Each check runs under a per-target lock, re-reads
the target's status inside it, and writes the result with a conditional
``UPDATE ... WHERE status = 'IN_PROGRESS'``. A write that matches no row means
someone else got there first: the attempt rolls back and reports
``ALREADY_COMPLETE``. The per-target lock is released before a risk cascades
into its epic, so the two locks are never held together.
"""
from __future__ import annotations

import logging
import threading
import uuid
import weakref
from dataclasses import dataclass
from enum import StrEnum
from typing import Iterable

from epicscore.errors import NotFoundError
from epicscore.models import Status
from epicscore.repository import Repository
from epicscore.utils import round_half_away

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Coefficient table
# ---------------------------------------------------------------------------

RISK_COEFFICIENTS: tuple[tuple[int, float], ...] = (
    (13, 1.30),
    (9, 1.20),
    (5, 1.10),
)
DEFAULT_RISK_COEFFICIENT = 1.05


class Outcome(StrEnum):
    COMPLETED = "completed"
    WAITING_FOR_SUBMISSIONS = "waiting_for_submissions"
    WAITING_FOR_RISKS = "waiting_for_risks"
    ALREADY_COMPLETE = "already_complete"
    NOT_IN_PROGRESS = "not_in_progress"


@dataclass
class Completion:
    """What a completion check did for one target."""

    outcome: Outcome
    target_id: uuid.UUID
    score: float | None = None
    cascade: Completion | None = None

    @property
    def completed(self) -> bool:
        return self.outcome is Outcome.COMPLETED


# ---------------------------------------------------------------------------
# Pure arithmetic
# ---------------------------------------------------------------------------


def weighted_average(pairs: Iterable[tuple[float, float]]) -> float:
    """``Σ(value·weight)/Σ(weight)`` over ``(value, weight)`` pairs; 0 when the weights sum to 0."""
    total = 0.0
    total_weight = 0.0
    for value, weight in pairs:
        total += value * weight
        total_weight += weight
    if total_weight == 0:
        return 0.0
    return total / total_weight


def risk_coefficient(weighted_score: float) -> float:
    rounded = round_half_away(weighted_score)
    for threshold, coefficient in RISK_COEFFICIENTS:
        if rounded >= threshold:
            return coefficient
    return DEFAULT_RISK_COEFFICIENT


def has_quorum(submitters: int, members: int) -> bool:
    return submitters > 0 and submitters >= members


# ---------------------------------------------------------------------------
# Repository-backed statistics
# ---------------------------------------------------------------------------


def calculate_role_average(repo: Repository, epic_id: uuid.UUID, role_id: uuid.UUID) -> float:
    return weighted_average(repo.weighted_effort_rows(epic_id, role_id))


def calculate_risk_score(repo: Repository, risk_id: uuid.UUID) -> float:
    return weighted_average(repo.weighted_risk_rows(risk_id))


# ---------------------------------------------------------------------------
# Per-target locks
# ---------------------------------------------------------------------------


class _TargetLock:
    """A plain lock that can live in a weak-value registry."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> _TargetLock:
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self._lock.release()


_registry_lock = threading.Lock()
# Entries vanish once no check holds or waits on them.
_target_locks: weakref.WeakValueDictionary[uuid.UUID, _TargetLock] = weakref.WeakValueDictionary()


def _lock_for(target_id: uuid.UUID) -> _TargetLock:
    with _registry_lock:
        lock = _target_locks.get(target_id)
        if lock is None:
            lock = _target_locks[target_id] = _TargetLock()
        return lock


# ---------------------------------------------------------------------------
# Completion checks
# ---------------------------------------------------------------------------


def try_complete_risk(repo: Repository, risk_id: uuid.UUID) -> Completion:
    """Complete the risk if its quorum is met, then re-evaluate its epic."""
    with _lock_for(risk_id):
        risk = repo.get_risk(risk_id, fresh=True)
        if risk is None:
            raise NotFoundError("Risk", risk_id)
        status = Status(risk.status)
        if status is Status.COMPLETE:
            return Completion(Outcome.ALREADY_COMPLETE, risk_id, risk.weighted_score)
        if status is not Status.IN_PROGRESS:
            return Completion(Outcome.NOT_IN_PROGRESS, risk_id)

        epic_id = risk.epic_id
        epic = repo.get_epic(epic_id)
        if epic is None:
            raise NotFoundError("Epic", epic_id)
        members = repo.member_count(epic.team_id)
        submitters = repo.count_risk_submitters(risk_id)
        if not has_quorum(submitters, members):
            log.debug("Risk %s waiting: %d of %d assessments", risk_id, submitters, members)
            return Completion(Outcome.WAITING_FOR_SUBMISSIONS, risk_id)

        score = calculate_risk_score(repo, risk_id)
        if not repo.set_risk_weighted_score(risk_id, score):
            repo.rollback()
            return Completion(Outcome.ALREADY_COMPLETE, risk_id)
        repo.commit()
        log.info("Risk %s complete: weighted score %.2f", risk_id, score)

    cascade = try_complete_epic(repo, epic_id)
    return Completion(Outcome.COMPLETED, risk_id, score, cascade)


def try_complete_epic(repo: Repository, epic_id: uuid.UUID) -> Completion:
    """Complete the epic if effort quorum is met and every risk is COMPLETE."""
    with _lock_for(epic_id):
        epic = repo.get_epic(epic_id, fresh=True)
        if epic is None:
            raise NotFoundError("Epic", epic_id)
        status = Status(epic.status)
        if status is Status.COMPLETE:
            return Completion(Outcome.ALREADY_COMPLETE, epic_id, epic.final_score)
        if status is not Status.IN_PROGRESS:
            return Completion(Outcome.NOT_IN_PROGRESS, epic_id)

        members = repo.member_count(epic.team_id)
        submitters = repo.count_effort_submitters(epic_id)
        if not has_quorum(submitters, members):
            log.debug("Epic %s waiting: %d of %d estimates", epic.number, submitters, members)
            return Completion(Outcome.WAITING_FOR_SUBMISSIONS, epic_id)

        risks = repo.list_risks(epic_id)
        pending = [r for r in risks if Status(r.status) is not Status.COMPLETE]
        if pending:
            log.debug("Epic %s waiting on %d risks", epic.number, len(pending))
            return Completion(Outcome.WAITING_FOR_RISKS, epic_id)

        base = 0.0
        for role_id in repo.roles_with_assessments(epic_id):
            avg = calculate_role_average(repo, epic_id, role_id)
            repo.upsert_role_aggregate(epic_id, role_id, avg)
            base += avg

        final = base
        for risk in risks:
            if risk.weighted_score is not None:
                final *= risk_coefficient(risk.weighted_score)
        final_score = float(round_half_away(final))

        if not repo.set_epic_final_score(epic_id, final_score):
            repo.rollback()
            return Completion(Outcome.ALREADY_COMPLETE, epic_id)
        repo.commit()
        log.info("Epic %s complete: base %.2f, final %d", epic.number, base, final_score)
        return Completion(Outcome.COMPLETED, epic_id, final_score)
