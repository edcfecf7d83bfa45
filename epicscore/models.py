from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import (
    Column, DateTime, Float, ForeignKey, Integer, String, Table, Text, UniqueConstraint, Uuid, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Status(StrEnum):
    """Lifecycle of epics and risks. Only ever moves forward."""

    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {Status.NEW: 0, Status.IN_PROGRESS: 1, Status.COMPLETE: 2}


participant_teams = Table(
    "participant_teams",
    Base.metadata,
    Column("participant_id", Uuid, ForeignKey("participants.id", ondelete="CASCADE"), primary_key=True),
    Column("team_id", Uuid, ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True),
)

participant_roles = Table(
    "participant_roles",
    Base.metadata,
    Column("participant_id", Uuid, ForeignKey("participants.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Uuid, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)


class Team(Base):
    __tablename__ = "teams"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    members: Mapped[list[Participant]] = relationship(
        "Participant", secondary=participant_teams, back_populates="teams", order_by="Participant.last_name",
    )
    epics: Mapped[list[Epic]] = relationship("Epic", back_populates="team", cascade="all, delete-orphan", passive_deletes=True)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, default="")


class Participant(Base):
    __tablename__ = "participants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    handle: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)  # chat username, no "@"
    first_name: Mapped[str] = mapped_column(String(200), nullable=False)
    last_name: Mapped[str] = mapped_column(String(200), nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False, default=100)  # 0..100
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    teams: Mapped[list[Team]] = relationship(
        "Team", secondary=participant_teams, back_populates="members", order_by="Team.name",
    )
    roles: Mapped[list[Role]] = relationship("Role", secondary=participant_roles, order_by="Role.name")

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Epic(Base):
    __tablename__ = "epics"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    team_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=Status.NEW)
    final_score: Mapped[float | None] = mapped_column(Float, nullable=True)  # set once, on completion
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    team: Mapped[Team] = relationship("Team", back_populates="epics")
    risks: Mapped[list[Risk]] = relationship(
        "Risk", back_populates="epic", cascade="all, delete-orphan", passive_deletes=True, order_by="Risk.created_at",
    )
    scores: Mapped[list[EpicScore]] = relationship("EpicScore", cascade="all, delete-orphan", passive_deletes=True)
    role_scores: Mapped[list[EpicRoleScore]] = relationship("EpicRoleScore", cascade="all, delete-orphan", passive_deletes=True)


class Risk(Base):
    __tablename__ = "risks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    epic_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("epics.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=Status.NEW)
    weighted_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    epic: Mapped[Epic] = relationship("Epic", back_populates="risks")
    scores: Mapped[list[RiskScore]] = relationship("RiskScore", cascade="all, delete-orphan", passive_deletes=True)


class EpicScore(Base):
    """One effort estimate per (epic, participant); resubmission overwrites."""

    __tablename__ = "epic_scores"
    __table_args__ = (UniqueConstraint("epic_id", "participant_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    epic_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("epics.id", ondelete="CASCADE"), nullable=False)
    participant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("participants.id", ondelete="CASCADE"), nullable=False)
    role_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class EpicRoleScore(Base):
    """Weighted average of one role's estimates for an epic."""

    __tablename__ = "epic_role_scores"
    __table_args__ = (UniqueConstraint("epic_id", "role_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    epic_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("epics.id", ondelete="CASCADE"), nullable=False)
    role_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)
    weighted_avg: Mapped[float] = mapped_column(Float, nullable=False)

    role: Mapped[Role] = relationship("Role")


class RiskScore(Base):
    """One probability/impact assessment per (risk, participant)."""

    __tablename__ = "risk_scores"
    __table_args__ = (UniqueConstraint("risk_id", "participant_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    risk_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("risks.id", ondelete="CASCADE"), nullable=False)
    participant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("participants.id", ondelete="CASCADE"), nullable=False)
    probability: Mapped[int] = mapped_column(Integer, nullable=False)  # 1..4
    impact: Mapped[int] = mapped_column(Integer, nullable=False)  # 1..4
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
