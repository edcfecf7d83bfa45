"""Persistence contract used by the engine, the services and the router.

``Repository`` wraps one SQLAlchemy ``Session`` (one unit of work). Every
SQLAlchemy failure is re-raised as :class:`PersistenceError` after the session
has been rolled back, so callers only ever deal with the domain taxonomy.

Sessions are created with ``autoflush=False``; each write method flushes so
that later reads inside the same unit of work observe it.
"""
from __future__ import annotations

import functools
import logging
import uuid
from typing import Callable, TypeVar

from sqlalchemy import exists, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from epicscore.errors import PersistenceError, ValidationError
from epicscore.models import (
    Epic, EpicRoleScore, EpicScore, Participant, Risk, RiskScore, Role, Status, Team,
    participant_roles, participant_teams,
)

log = logging.getLogger(__name__)

T = TypeVar("T")


def _guarded(fn: Callable[..., T]) -> Callable[..., T]:
    @functools.wraps(fn)
    def wrapper(self: Repository, *args, **kwargs) -> T:
        try:
            return fn(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            log.exception("Repository call %s failed", fn.__name__)
            self.session.rollback()
            raise PersistenceError(f"{fn.__name__} failed: {exc.__class__.__name__}") from exc
    return wrapper


def _advance(obj: Epic | Risk, status: Status) -> bool:
    """Move *obj* forward to *status*. False when it is already there."""
    current = Status(obj.status)
    if status.rank < current.rank:
        raise ValidationError(f"Status cannot move back from {current} to {status}")
    if status == current:
        return False
    obj.status = status
    return True


class Repository:
    def __init__(self, session: Session):
        self.session = session

    # ------------------------------------------------------------------
    # Transaction control
    # ------------------------------------------------------------------

    @_guarded
    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        try:
            self.session.rollback()
        except SQLAlchemyError as exc:
            raise PersistenceError("rollback failed") from exc

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    @_guarded
    def create_participant(self, handle: str, first_name: str, last_name: str, weight: int) -> Participant:
        participant = Participant(handle=handle, first_name=first_name, last_name=last_name, weight=weight)
        self.session.add(participant)
        self.session.flush()
        return participant

    @_guarded
    def find_participant_by_handle(self, handle: str) -> Participant | None:
        stmt = select(Participant).where(func.lower(Participant.handle) == handle.strip().lstrip("@").lower())
        return self.session.execute(stmt).scalars().first()

    @_guarded
    def get_participant(self, participant_id: uuid.UUID) -> Participant | None:
        return self.session.get(Participant, participant_id)

    @_guarded
    def list_participants(self) -> list[Participant]:
        stmt = select(Participant).order_by(Participant.last_name, Participant.first_name)
        return list(self.session.execute(stmt).scalars())

    @_guarded
    def list_team_members(self, team_id: uuid.UUID) -> list[Participant]:
        stmt = (
            select(Participant)
            .join(participant_teams, participant_teams.c.participant_id == Participant.id)
            .where(participant_teams.c.team_id == team_id)
            .order_by(Participant.last_name, Participant.first_name)
        )
        return list(self.session.execute(stmt).scalars())

    @_guarded
    def update_participant_weight(self, participant: Participant, weight: int) -> None:
        participant.weight = weight
        self.session.flush()

    @_guarded
    def update_participant_name(self, participant: Participant, first_name: str, last_name: str) -> None:
        participant.first_name = first_name
        participant.last_name = last_name
        self.session.flush()

    @_guarded
    def delete_participant(self, participant: Participant) -> None:
        self.session.delete(participant)
        self.session.flush()

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    @_guarded
    def list_roles(self) -> list[Role]:
        return list(self.session.execute(select(Role).order_by(Role.name)).scalars())

    @_guarded
    def get_role(self, role_id: uuid.UUID) -> Role | None:
        return self.session.get(Role, role_id)

    @_guarded
    def find_role_by_name(self, name: str) -> Role | None:
        stmt = select(Role).where(func.lower(Role.name) == name.strip().lower())
        return self.session.execute(stmt).scalars().first()

    @_guarded
    def roles_of(self, participant_id: uuid.UUID) -> list[Role]:
        stmt = (
            select(Role)
            .join(participant_roles, participant_roles.c.role_id == Role.id)
            .where(participant_roles.c.participant_id == participant_id)
            .order_by(Role.name)
        )
        return list(self.session.execute(stmt).scalars())

    def primary_role(self, participant_id: uuid.UUID) -> Role | None:
        roles = self.roles_of(participant_id)
        return roles[0] if roles else None

    @_guarded
    def assign_role(self, participant: Participant, role: Role) -> bool:
        if role in participant.roles:
            return False
        participant.roles.append(role)
        self.session.flush()
        return True

    @_guarded
    def unassign_role(self, participant: Participant, role: Role) -> bool:
        if role not in participant.roles:
            return False
        participant.roles.remove(role)
        self.session.flush()
        return True

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    @_guarded
    def create_team(self, name: str, description: str = "") -> Team:
        team = Team(name=name, description=description)
        self.session.add(team)
        self.session.flush()
        return team

    @_guarded
    def find_team_by_name(self, name: str) -> Team | None:
        stmt = select(Team).where(func.lower(Team.name) == name.strip().lower())
        return self.session.execute(stmt).scalars().first()

    @_guarded
    def get_team(self, team_id: uuid.UUID) -> Team | None:
        return self.session.get(Team, team_id)

    @_guarded
    def list_teams(self) -> list[Team]:
        return list(self.session.execute(select(Team).order_by(Team.name)).scalars())

    @_guarded
    def member_count(self, team_id: uuid.UUID) -> int:
        stmt = select(func.count()).select_from(participant_teams).where(participant_teams.c.team_id == team_id)
        return self.session.execute(stmt).scalar_one()

    @_guarded
    def teams_of(self, participant_id: uuid.UUID) -> list[Team]:
        stmt = (
            select(Team)
            .join(participant_teams, participant_teams.c.team_id == Team.id)
            .where(participant_teams.c.participant_id == participant_id)
            .order_by(Team.name)
        )
        return list(self.session.execute(stmt).scalars())

    @_guarded
    def is_member(self, team_id: uuid.UUID, participant_id: uuid.UUID) -> bool:
        stmt = select(exists().where(
            participant_teams.c.team_id == team_id,
            participant_teams.c.participant_id == participant_id,
        ))
        return bool(self.session.execute(stmt).scalar())

    @_guarded
    def add_member(self, team: Team, participant: Participant) -> bool:
        if participant in team.members:
            return False
        team.members.append(participant)
        self.session.flush()
        return True

    @_guarded
    def remove_member(self, team: Team, participant: Participant) -> bool:
        if participant not in team.members:
            return False
        team.members.remove(participant)
        self.session.flush()
        return True

    # ------------------------------------------------------------------
    # Epics
    # ------------------------------------------------------------------

    @_guarded
    def create_epic(self, number: str, name: str, description: str, team_id: uuid.UUID) -> Epic:
        epic = Epic(number=number, name=name, description=description, team_id=team_id, status=Status.NEW)
        self.session.add(epic)
        self.session.flush()
        return epic

    @_guarded
    def get_epic(self, epic_id: uuid.UUID, *, fresh: bool = False) -> Epic | None:
        return self.session.get(Epic, epic_id, populate_existing=fresh)

    @_guarded
    def find_epic_by_number(self, number: str) -> Epic | None:
        stmt = select(Epic).where(func.lower(Epic.number) == number.strip().lower())
        return self.session.execute(stmt).scalars().first()

    @_guarded
    def list_epics(self, status: Status | None = None, team_id: uuid.UUID | None = None) -> list[Epic]:
        stmt = select(Epic).options(selectinload(Epic.team)).order_by(Epic.created_at, Epic.number)
        if status is not None:
            stmt = stmt.where(Epic.status == status)
        if team_id is not None:
            stmt = stmt.where(Epic.team_id == team_id)
        return list(self.session.execute(stmt).scalars())

    @_guarded
    def update_epic_status(self, epic: Epic, status: Status) -> bool:
        changed = _advance(epic, status)
        self.session.flush()
        return changed

    @_guarded
    def set_epic_final_score(self, epic_id: uuid.UUID, score: float) -> bool:
        """Complete the epic with *score* unless something else already did."""
        stmt = (
            update(Epic)
            .where(Epic.id == epic_id, Epic.status == Status.IN_PROGRESS)
            .values(status=Status.COMPLETE, final_score=score)
            .execution_options(synchronize_session="evaluate")
        )
        return self.session.execute(stmt).rowcount == 1

    @_guarded
    def list_pending_epics_for(self, participant_id: uuid.UUID, team_id: uuid.UUID) -> list[Epic]:
        """IN_PROGRESS epics of the team still missing this participant's effort or a risk assessment."""
        has_effort = exists().where(EpicScore.epic_id == Epic.id, EpicScore.participant_id == participant_id)
        has_risk_score = exists().where(RiskScore.risk_id == Risk.id, RiskScore.participant_id == participant_id)
        open_risk = exists().where(
            Risk.epic_id == Epic.id,
            Risk.status == Status.IN_PROGRESS,
            ~has_risk_score,
        )
        stmt = (
            select(Epic)
            .where(Epic.team_id == team_id, Epic.status == Status.IN_PROGRESS)
            .where(~has_effort | open_risk)
            .order_by(Epic.created_at, Epic.number)
        )
        return list(self.session.execute(stmt).scalars())

    @_guarded
    def delete_epic(self, epic: Epic) -> None:
        self.session.delete(epic)
        self.session.flush()

    # ------------------------------------------------------------------
    # Risks
    # ------------------------------------------------------------------

    @_guarded
    def create_risk(self, epic_id: uuid.UUID, description: str, status: Status = Status.NEW) -> Risk:
        risk = Risk(epic_id=epic_id, description=description, status=status)
        self.session.add(risk)
        self.session.flush()
        return risk

    @_guarded
    def get_risk(self, risk_id: uuid.UUID, *, fresh: bool = False) -> Risk | None:
        return self.session.get(Risk, risk_id, populate_existing=fresh)

    @_guarded
    def list_risks(self, epic_id: uuid.UUID) -> list[Risk]:
        stmt = (
            select(Risk)
            .where(Risk.epic_id == epic_id)
            .order_by(Risk.created_at)
            .execution_options(populate_existing=True)
        )
        return list(self.session.execute(stmt).scalars())

    @_guarded
    def update_risk_status(self, risk: Risk, status: Status) -> bool:
        changed = _advance(risk, status)
        self.session.flush()
        return changed

    @_guarded
    def set_risk_weighted_score(self, risk_id: uuid.UUID, score: float) -> bool:
        stmt = (
            update(Risk)
            .where(Risk.id == risk_id, Risk.status == Status.IN_PROGRESS)
            .values(status=Status.COMPLETE, weighted_score=score)
            .execution_options(synchronize_session="evaluate")
        )
        return self.session.execute(stmt).rowcount == 1

    @_guarded
    def list_pending_risks_for(self, participant_id: uuid.UUID, epic_id: uuid.UUID) -> list[Risk]:
        scored = exists().where(RiskScore.risk_id == Risk.id, RiskScore.participant_id == participant_id)
        stmt = (
            select(Risk)
            .where(Risk.epic_id == epic_id, Risk.status == Status.IN_PROGRESS, ~scored)
            .order_by(Risk.created_at)
        )
        return list(self.session.execute(stmt).scalars())

    @_guarded
    def delete_risk(self, risk: Risk) -> None:
        self.session.delete(risk)
        self.session.flush()

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------

    @_guarded
    def upsert_effort(self, epic_id: uuid.UUID, participant_id: uuid.UUID, role_id: uuid.UUID, score: int) -> bool:
        """Store an effort estimate. True when it is the participant's first for this epic."""
        stmt = select(EpicScore).where(EpicScore.epic_id == epic_id, EpicScore.participant_id == participant_id)
        row = self.session.execute(stmt).scalars().first()
        created = row is None
        if row is None:
            row = EpicScore(epic_id=epic_id, participant_id=participant_id, role_id=role_id, score=score)
            self.session.add(row)
        else:
            row.role_id = role_id
            row.score = score
        self.session.flush()
        return created

    @_guarded
    def upsert_risk_score(self, risk_id: uuid.UUID, participant_id: uuid.UUID, probability: int, impact: int) -> bool:
        stmt = select(RiskScore).where(RiskScore.risk_id == risk_id, RiskScore.participant_id == participant_id)
        row = self.session.execute(stmt).scalars().first()
        created = row is None
        if row is None:
            row = RiskScore(risk_id=risk_id, participant_id=participant_id, probability=probability, impact=impact)
            self.session.add(row)
        else:
            row.probability = probability
            row.impact = impact
        self.session.flush()
        return created

    @_guarded
    def count_effort_submitters(self, epic_id: uuid.UUID) -> int:
        stmt = select(func.count(func.distinct(EpicScore.participant_id))).where(EpicScore.epic_id == epic_id)
        return self.session.execute(stmt).scalar_one()

    @_guarded
    def count_risk_submitters(self, risk_id: uuid.UUID) -> int:
        stmt = select(func.count(func.distinct(RiskScore.participant_id))).where(RiskScore.risk_id == risk_id)
        return self.session.execute(stmt).scalar_one()

    @_guarded
    def effort_submitters(self, epic_id: uuid.UUID) -> set[uuid.UUID]:
        stmt = select(EpicScore.participant_id).where(EpicScore.epic_id == epic_id)
        return set(self.session.execute(stmt).scalars())

    @_guarded
    def risk_submitters(self, risk_id: uuid.UUID) -> set[uuid.UUID]:
        stmt = select(RiskScore.participant_id).where(RiskScore.risk_id == risk_id)
        return set(self.session.execute(stmt).scalars())

    @_guarded
    def roles_with_assessments(self, epic_id: uuid.UUID) -> list[uuid.UUID]:
        stmt = select(EpicScore.role_id).where(EpicScore.epic_id == epic_id).distinct()
        return list(self.session.execute(stmt).scalars())

    @_guarded
    def weighted_effort_rows(self, epic_id: uuid.UUID, role_id: uuid.UUID) -> list[tuple[int, int]]:
        """(estimate, submitter weight) pairs for one role of an epic."""
        stmt = (
            select(EpicScore.score, Participant.weight)
            .join(Participant, Participant.id == EpicScore.participant_id)
            .where(EpicScore.epic_id == epic_id, EpicScore.role_id == role_id)
        )
        return [(score, weight) for score, weight in self.session.execute(stmt)]

    @_guarded
    def weighted_risk_rows(self, risk_id: uuid.UUID) -> list[tuple[int, int]]:
        """(probability * impact, submitter weight) pairs for one risk."""
        stmt = (
            select(RiskScore.probability, RiskScore.impact, Participant.weight)
            .join(Participant, Participant.id == RiskScore.participant_id)
            .where(RiskScore.risk_id == risk_id)
        )
        return [(p * i, weight) for p, i, weight in self.session.execute(stmt)]

    @_guarded
    def upsert_role_aggregate(self, epic_id: uuid.UUID, role_id: uuid.UUID, weighted_avg: float) -> None:
        stmt = select(EpicRoleScore).where(EpicRoleScore.epic_id == epic_id, EpicRoleScore.role_id == role_id)
        row = self.session.execute(stmt).scalars().first()
        if row is None:
            self.session.add(EpicRoleScore(epic_id=epic_id, role_id=role_id, weighted_avg=weighted_avg))
        else:
            row.weighted_avg = weighted_avg
        self.session.flush()

    @_guarded
    def list_role_aggregates(self, epic_id: uuid.UUID) -> list[EpicRoleScore]:
        stmt = (
            select(EpicRoleScore)
            .options(selectinload(EpicRoleScore.role))
            .join(Role, Role.id == EpicRoleScore.role_id)
            .where(EpicRoleScore.epic_id == epic_id)
            .order_by(Role.name)
        )
        return list(self.session.execute(stmt).scalars())

