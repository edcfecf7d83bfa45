"""Shared business logic for the conversation router, the HTTP API and the CLI."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from epicscore.errors import NotFoundError, ValidationError
from epicscore.models import Epic, Participant, Risk, Role, Status, Team
from epicscore.repository import Repository
from epicscore.scoring import Completion, risk_coefficient, try_complete_epic, try_complete_risk
from epicscore.utils import normalize_handle

log = logging.getLogger(__name__)

WEIGHT_MIN, WEIGHT_MAX = 0, 100
LEVEL_MIN, LEVEL_MAX = 1, 4

# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def require_participant(repo: Repository, participant_id: uuid.UUID) -> Participant:
    participant = repo.get_participant(participant_id)
    if participant is None:
        raise NotFoundError("Participant", participant_id)
    return participant


def require_participant_by_handle(repo: Repository, handle: str | None) -> Participant:
    if not handle or not normalize_handle(handle):
        raise ValidationError("A chat username is required; set one in your profile")
    participant = repo.find_participant_by_handle(handle)
    if participant is None:
        raise NotFoundError("Participant", f"@{normalize_handle(handle)}")
    return participant


def require_team(repo: Repository, team_id: uuid.UUID) -> Team:
    team = repo.get_team(team_id)
    if team is None:
        raise NotFoundError("Team", team_id)
    return team


def require_role(repo: Repository, role_id: uuid.UUID) -> Role:
    role = repo.get_role(role_id)
    if role is None:
        raise NotFoundError("Role", role_id)
    return role


def require_epic(repo: Repository, epic_id: uuid.UUID) -> Epic:
    epic = repo.get_epic(epic_id)
    if epic is None:
        raise NotFoundError("Epic", epic_id)
    return epic


def require_epic_by_number(repo: Repository, number: str) -> Epic:
    epic = repo.find_epic_by_number(number)
    if epic is None:
        raise NotFoundError("Epic", f"#{number}")
    return epic


def require_risk(repo: Repository, risk_id: uuid.UUID) -> Risk:
    risk = repo.get_risk(risk_id)
    if risk is None:
        raise NotFoundError("Risk", risk_id)
    return risk


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_weight(weight: int | None) -> int:
    if weight is None or not WEIGHT_MIN <= weight <= WEIGHT_MAX:
        raise ValidationError(f"Weight must be a number from {WEIGHT_MIN} to {WEIGHT_MAX}")
    return weight


def validate_level(value: int | None, label: str) -> int:
    if value is None or not LEVEL_MIN <= value <= LEVEL_MAX:
        raise ValidationError(f"{label} must be from {LEVEL_MIN} to {LEVEL_MAX}")
    return value


def validate_effort(value: int | None, effort_min: int, effort_max: int) -> int:
    if value is None or not effort_min <= value <= effort_max:
        raise ValidationError(f"Enter a whole number from {effort_min} to {effort_max}")
    return value


def validate_name(value: str, label: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{label} cannot be empty")
    return value


def ensure_epic_number_free(repo: Repository, number: str) -> str:
    number = validate_name(number, "Epic number")
    if repo.find_epic_by_number(number) is not None:
        raise ValidationError(f"Epic #{number} already exists")
    return number


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def participant_summary(repo: Repository, participant: Participant) -> dict:
    return {
        "id": participant.id,
        "handle": participant.handle,
        "first_name": participant.first_name,
        "last_name": participant.last_name,
        "weight": participant.weight,
        "roles": [r.name for r in repo.roles_of(participant.id)],
        "teams": [t.name for t in repo.teams_of(participant.id)],
    }


def team_summary(repo: Repository, team: Team) -> dict:
    return {
        "id": team.id,
        "name": team.name,
        "description": team.description,
        "member_count": repo.member_count(team.id),
    }


def risk_summary(risk: Risk) -> dict:
    return {
        "id": risk.id,
        "epic_id": risk.epic_id,
        "description": risk.description,
        "status": risk.status,
        "weighted_score": risk.weighted_score,
        "coefficient": risk_coefficient(risk.weighted_score) if risk.weighted_score is not None else None,
    }


def epic_summary(epic: Epic) -> dict:
    return {
        "id": epic.id,
        "number": epic.number,
        "name": epic.name,
        "description": epic.description,
        "team_id": epic.team_id,
        "team": epic.team.name if epic.team else None,
        "status": epic.status,
        "final_score": epic.final_score,
    }


# ---------------------------------------------------------------------------
# Teams & participants
# ---------------------------------------------------------------------------


def create_team(repo: Repository, name: str, description: str = "") -> Team:
    name = validate_name(name, "Team name")
    if repo.find_team_by_name(name) is not None:
        raise ValidationError(f"Team {name!r} already exists")
    team = repo.create_team(name, description.strip())
    repo.commit()
    log.info("Created team %s", team.name)
    return team


def ensure_handle_free(repo: Repository, handle: str) -> str:
    handle = normalize_handle(handle or "")
    if not handle or any(c.isspace() for c in handle):
        raise ValidationError("Invalid @username")
    if repo.find_participant_by_handle(handle) is not None:
        raise ValidationError(f"@{handle} is already registered")
    return handle


def add_participant(repo: Repository, handle: str, first_name: str, last_name: str, weight: int | None) -> Participant:
    handle = ensure_handle_free(repo, handle)
    first_name = validate_name(first_name, "First name")
    last_name = validate_name(last_name, "Last name")
    weight = validate_weight(weight)
    participant = repo.create_participant(handle, first_name, last_name, weight)
    repo.commit()
    log.info("Registered participant @%s (weight %d)", handle, weight)
    return participant


def rename_participant(repo: Repository, participant_id: uuid.UUID, first_name: str, last_name: str) -> Participant:
    participant = require_participant(repo, participant_id)
    repo.update_participant_name(
        participant, validate_name(first_name, "First name"), validate_name(last_name, "Last name"),
    )
    repo.commit()
    return participant


def change_weight(repo: Repository, participant_id: uuid.UUID, weight: int | None) -> Participant:
    participant = require_participant(repo, participant_id)
    repo.update_participant_weight(participant, validate_weight(weight))
    repo.commit()
    log.info("Weight of @%s set to %d", participant.handle, participant.weight)
    return participant


def delete_participant(repo: Repository, participant_id: uuid.UUID) -> Participant:
    participant = require_participant(repo, participant_id)
    repo.delete_participant(participant)
    repo.commit()
    log.info("Deleted participant @%s", participant.handle)
    return participant


def assign_role(repo: Repository, participant_id: uuid.UUID, role_id: uuid.UUID) -> tuple[Participant, Role]:
    participant = require_participant(repo, participant_id)
    role = require_role(repo, role_id)
    if not repo.assign_role(participant, role):
        raise ValidationError(f"{participant.display_name} already has role {role.name!r}")
    repo.commit()
    return participant, role


def unassign_role(repo: Repository, participant_id: uuid.UUID, role_id: uuid.UUID) -> tuple[Participant, Role]:
    participant = require_participant(repo, participant_id)
    role = require_role(repo, role_id)
    if not repo.unassign_role(participant, role):
        raise ValidationError(f"{participant.display_name} does not have role {role.name!r}")
    repo.commit()
    return participant, role


def add_to_team(repo: Repository, participant_id: uuid.UUID, team_id: uuid.UUID) -> tuple[Participant, Team]:
    participant = require_participant(repo, participant_id)
    team = require_team(repo, team_id)
    if not repo.add_member(team, participant):
        raise ValidationError(f"{participant.display_name} is already in team {team.name!r}")
    repo.commit()
    return participant, team


def remove_from_team(repo: Repository, participant_id: uuid.UUID, team_id: uuid.UUID) -> tuple[Participant, Team]:
    participant = require_participant(repo, participant_id)
    team = require_team(repo, team_id)
    if not repo.remove_member(team, participant):
        raise ValidationError(f"{participant.display_name} is not in team {team.name!r}")
    repo.commit()
    return participant, team


def team_roster(repo: Repository, team_id: uuid.UUID) -> list[tuple[Participant, Role | None]]:
    require_team(repo, team_id)
    return [(p, repo.primary_role(p.id)) for p in repo.list_team_members(team_id)]


# ---------------------------------------------------------------------------
# Epics & risks
# ---------------------------------------------------------------------------


def add_epic(repo: Repository, team_id: uuid.UUID, number: str, name: str, description: str = "") -> Epic:
    team = require_team(repo, team_id)
    number = ensure_epic_number_free(repo, number)
    epic = repo.create_epic(number, validate_name(name, "Epic name"), (description or "").strip(), team.id)
    repo.commit()
    log.info("Created epic #%s for team %s", epic.number, team.name)
    return epic


def add_risk(repo: Repository, epic_id: uuid.UUID, description: str) -> Risk:
    """Attach a risk. A risk added while the epic is being scored joins the scoring round."""
    epic = require_epic(repo, epic_id)
    status = Status(epic.status)
    if status is Status.COMPLETE:
        raise ValidationError(f"Epic #{epic.number} is already complete")
    initial = Status.IN_PROGRESS if status is Status.IN_PROGRESS else Status.NEW
    risk = repo.create_risk(epic.id, validate_name(description, "Risk description"), initial)
    repo.commit()
    return risk


def start_scoring(repo: Repository, epic_id: uuid.UUID) -> tuple[Epic, list[Risk]]:
    """Move a NEW epic and all of its risks to IN_PROGRESS."""
    epic = require_epic(repo, epic_id)
    if Status(epic.status) is not Status.NEW:
        raise ValidationError(f"Epic #{epic.number} is already {epic.status}")
    repo.update_epic_status(epic, Status.IN_PROGRESS)
    risks = repo.list_risks(epic.id)
    for risk in risks:
        repo.update_risk_status(risk, Status.IN_PROGRESS)
    repo.commit()
    log.info("Scoring started for epic #%s with %d risks", epic.number, len(risks))
    return epic, risks


def delete_epic(repo: Repository, epic_id: uuid.UUID) -> Epic:
    epic = require_epic(repo, epic_id)
    repo.delete_epic(epic)
    repo.commit()
    log.info("Deleted epic #%s", epic.number)
    return epic


def delete_risk(repo: Repository, risk_id: uuid.UUID) -> Risk:
    risk = require_risk(repo, risk_id)
    epic_id = risk.epic_id
    repo.delete_risk(risk)
    repo.commit()
    # The deleted risk may have been the last thing the epic was waiting on.
    try_complete_epic(repo, epic_id)
    return risk


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------


@dataclass
class SubmissionResult:
    created: bool
    completion: Completion


def _require_open_target(repo: Repository, participant: Participant, epic: Epic, label: str) -> None:
    if Status(epic.status) is not Status.IN_PROGRESS:
        raise ValidationError(f"{label} is not open for scoring ({epic.status})")
    if not repo.is_member(epic.team_id, participant.id):
        raise ValidationError(f"You are not a member of the team that owns epic #{epic.number}")


def resolve_role(repo: Repository, participant: Participant, role_name: str | None = None) -> Role:
    """The role an estimate is filed under: the named one, or the participant's primary role."""
    roles = repo.roles_of(participant.id)
    if not roles:
        raise ValidationError("You have no assigned role; ask an administrator")
    if role_name is None:
        return roles[0]
    for role in roles:
        if role.name.casefold() == role_name.strip().casefold():
            return role
    raise ValidationError(f"You do not hold role {role_name!r}")


def submit_effort(
    repo: Repository,
    epic_id: uuid.UUID,
    handle: str | None,
    value: int | None,
    effort_min: int = 0,
    effort_max: int = 500,
    role_name: str | None = None,
) -> SubmissionResult:
    participant = require_participant_by_handle(repo, handle)
    epic = require_epic(repo, epic_id)
    _require_open_target(repo, participant, epic, f"Epic #{epic.number}")
    value = validate_effort(value, effort_min, effort_max)
    role = resolve_role(repo, participant, role_name)

    created = repo.upsert_effort(epic.id, participant.id, role.id, value)
    repo.commit()
    log.info("@%s estimated epic #%s at %d as %s", participant.handle, epic.number, value, role.name)
    return SubmissionResult(created, try_complete_epic(repo, epic.id))


def submit_risk(
    repo: Repository,
    risk_id: uuid.UUID,
    handle: str | None,
    probability: int | None,
    impact: int | None,
) -> SubmissionResult:
    participant = require_participant_by_handle(repo, handle)
    risk = require_risk(repo, risk_id)
    epic = require_epic(repo, risk.epic_id)
    if Status(risk.status) is not Status.IN_PROGRESS:
        raise ValidationError(f"Risk is not open for scoring ({risk.status})")
    _require_open_target(repo, participant, epic, f"Epic #{epic.number}")
    probability = validate_level(probability, "Probability")
    impact = validate_level(impact, "Impact")

    created = repo.upsert_risk_score(risk.id, participant.id, probability, impact)
    repo.commit()
    log.info("@%s assessed a risk of epic #%s: %d x %d", participant.handle, epic.number, probability, impact)
    return SubmissionResult(created, try_complete_risk(repo, risk.id))


def pending_epics_for(repo: Repository, handle: str | None, team_id: uuid.UUID) -> tuple[Team, list[Epic]]:
    participant = require_participant_by_handle(repo, handle)
    team = require_team(repo, team_id)
    return team, repo.list_pending_epics_for(participant.id, team.id)


def pending_risks_for(repo: Repository, handle: str | None, epic_id: uuid.UUID) -> list[Risk]:
    participant = require_participant_by_handle(repo, handle)
    require_epic(repo, epic_id)
    return repo.list_pending_risks_for(participant.id, epic_id)


def has_estimated(repo: Repository, participant_id: uuid.UUID, epic_id: uuid.UUID) -> bool:
    return participant_id in repo.effort_submitters(epic_id)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def epic_results(repo: Repository, epic_id: uuid.UUID) -> dict[str, Any]:
    epic = require_epic(repo, epic_id)
    return {
        **epic_summary(epic),
        "role_scores": [
            {"role": rs.role.name, "weighted_avg": rs.weighted_avg}
            for rs in repo.list_role_aggregates(epic.id)
        ],
        "risks": [risk_summary(r) for r in repo.list_risks(epic.id)],
    }


def _member_ref(p: Participant) -> dict:
    return {"id": p.id, "handle": p.handle, "name": p.display_name}


def epic_status_report(repo: Repository, epic_id: uuid.UUID) -> dict[str, Any]:
    """Who on the team still owes an effort estimate or a risk assessment."""
    epic = require_epic(repo, epic_id)
    members = repo.list_team_members(epic.team_id)
    estimated = repo.effort_submitters(epic.id)
    risks = []
    for risk in repo.list_risks(epic.id):
        assessed = repo.risk_submitters(risk.id)
        risks.append({
            **risk_summary(risk),
            "missing": [_member_ref(m) for m in members if m.id not in assessed],
        })
    return {
        **epic_summary(epic),
        "member_count": len(members),
        "missing_effort": [_member_ref(m) for m in members if m.id not in estimated],
        "risks": risks,
    }
