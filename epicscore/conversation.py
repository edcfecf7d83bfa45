"""Conversation router: turns commands, free text and button clicks into replies.

A chat transport hands the router three kinds of interaction:

- a *command* (``/score``, ``/adduser`` ...), which always abandons whatever
  flow the conversation had pending;
- a *free-text* message, which continues the pending flow if there is one and
  is ignored otherwise;
- a *click* on a choice button, carrying an action token.

Each interaction is one unit of work on its own database session. Every
domain error becomes a reply to the conversation that caused it; a validation
error inside a multi-step flow leaves the flow on the same step so the user
can simply try again.
"""
from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from typing import Callable, Iterator

from sqlalchemy.orm import Session

from epicscore import services
from epicscore.config import AccessPolicy
from epicscore.errors import (
    MalformedTokenError, NotFoundError, PermissionDeniedError, PersistenceError, SessionExpiredError,
    ValidationError,
)
from epicscore.models import Epic, Participant, Status
from epicscore.repository import Repository
from epicscore.scoring import Completion, Outcome
from epicscore.sessions import PENDING_EPIC, PENDING_PARTICIPANT, SessionStore, Step
from epicscore.tokens import (
    CANCEL, ActionToken, ConfirmAction, Domain, EpicAction, RiskAction, RoleAction, ScoreAction, TeamAction,
    TokenCodec, UserAction, is_cancel,
)
from epicscore.utils import normalize_handle, parse_int, truncate

log = logging.getLogger(__name__)

LABEL_LIMIT = 50


@dataclass
class Choice:
    label: str
    token: str


@dataclass
class Reply:
    text: str
    choices: list[list[Choice]] = field(default_factory=list)


@dataclass
class Interaction:
    conversation_id: str
    handle: str | None
    first_name: str = ""


class Privilege(IntEnum):
    EVERYONE = 0
    ADMIN = 1
    SUPER_ADMIN = 2


class Command(StrEnum):
    START = "start"
    HELP = "help"
    CANCEL = "cancel"
    SCORE = "score"
    RESULTS = "results"
    EPIC_STATUS = "epicstatus"
    ADD_USER = "adduser"
    ASSIGN_ROLE = "assignrole"
    ADD_EPIC = "addepic"
    ADD_RISK = "addrisk"
    START_SCORE = "startscore"
    LIST = "list"
    ADD_TEAM = "addteam"
    ASSIGN_TEAM = "assignteam"
    RENAME_USER = "renameuser"
    CHANGE_RATE = "changerate"
    UNASSIGN_ROLE = "unassignrole"
    REMOVE_FROM_TEAM = "removefromteam"
    DELETE_EPIC = "deleteepic"
    DELETE_RISK = "deleterisk"
    DELETE_USER = "deleteuser"
    ADD_ADMIN = "addadmin"
    REMOVE_ADMIN = "removeadmin"


HELP_LINES: dict[Command, str] = {
    Command.SCORE: "/score - estimate epics and assess risks",
    Command.RESULTS: "/results - show an epic's results",
    Command.EPIC_STATUS: "/epicstatus - who still has to score an epic",
    Command.CANCEL: "/cancel - abandon the current step",
    Command.ADD_USER: "/adduser [@username first last weight] - register a participant",
    Command.ASSIGN_ROLE: "/assignrole - give a participant a role",
    Command.ADD_EPIC: "/addepic - create an epic",
    Command.ADD_RISK: "/addrisk - add a risk to an epic",
    Command.START_SCORE: "/startscore - open an epic for scoring",
    Command.LIST: "/list - team roster",
    Command.ADD_TEAM: "/addteam <name> - create a team",
    Command.ASSIGN_TEAM: "/assignteam - add a participant to a team",
    Command.RENAME_USER: "/renameuser - rename a participant",
    Command.CHANGE_RATE: "/changerate - change a participant's weight",
    Command.UNASSIGN_ROLE: "/unassignrole - take a role away",
    Command.REMOVE_FROM_TEAM: "/removefromteam - remove a participant from a team",
    Command.DELETE_EPIC: "/deleteepic - delete an epic",
    Command.DELETE_RISK: "/deleterisk - delete a risk",
    Command.DELETE_USER: "/deleteuser - delete a participant",
    Command.ADD_ADMIN: "/addadmin <username> - grant administrator rights",
    Command.REMOVE_ADMIN: "/removeadmin <username> - revoke administrator rights",
}

Handler = Callable[[Repository, Interaction, ActionToken], list[Reply]]


def _participant_label(p: Participant) -> str:
    return f"{p.display_name} (@{p.handle})"


def _epic_label(e: Epic) -> str:
    return f"#{e.number} {e.name} [{e.status}]"


class ConversationRouter:
    def __init__(
        self,
        sessions: SessionStore,
        codec: TokenCodec,
        policy: AccessPolicy,
        session_factory: Callable[[], Session],
        effort_min: int = 0,
        effort_max: int = 500,
    ):
        self.sessions = sessions
        self.codec = codec
        self.policy = policy
        self._policy_lock = threading.Lock()
        self._session_factory = session_factory
        self.effort_min = effort_min
        self.effort_max = effort_max

        self._commands: dict[Command, tuple[Privilege, Callable[[Repository, Interaction, str], list[Reply]]]] = {
            Command.START: (Privilege.EVERYONE, self._cmd_start),
            Command.HELP: (Privilege.EVERYONE, self._cmd_help),
            Command.CANCEL: (Privilege.EVERYONE, self._cmd_cancel),
            Command.SCORE: (Privilege.EVERYONE, self._cmd_score),
            Command.RESULTS: (Privilege.EVERYONE, self._epic_picker_command(EpicAction.RESULTS)),
            Command.EPIC_STATUS: (Privilege.EVERYONE, self._epic_picker_command(EpicAction.EPIC_STATUS)),
            Command.ADD_USER: (Privilege.ADMIN, self._cmd_add_user),
            Command.ASSIGN_ROLE: (Privilege.ADMIN, self._user_picker_command(UserAction.ASSIGN_ROLE)),
            Command.ADD_EPIC: (Privilege.ADMIN, self._team_picker_command(TeamAction.ADD_EPIC)),
            Command.ADD_RISK: (Privilege.ADMIN, self._epic_picker_command(
                EpicAction.ADD_RISK, (Status.NEW, Status.IN_PROGRESS))),
            Command.START_SCORE: (Privilege.ADMIN, self._epic_picker_command(EpicAction.START_SCORE, (Status.NEW,))),
            Command.LIST: (Privilege.ADMIN, self._team_picker_command(TeamAction.LIST)),
            Command.ADD_TEAM: (Privilege.SUPER_ADMIN, self._cmd_add_team),
            Command.ASSIGN_TEAM: (Privilege.SUPER_ADMIN, self._user_picker_command(UserAction.ASSIGN_TEAM)),
            Command.RENAME_USER: (Privilege.SUPER_ADMIN, self._user_picker_command(UserAction.RENAME_USER)),
            Command.CHANGE_RATE: (Privilege.SUPER_ADMIN, self._user_picker_command(UserAction.CHANGE_RATE)),
            Command.UNASSIGN_ROLE: (Privilege.SUPER_ADMIN, self._user_picker_command(UserAction.UNASSIGN_ROLE)),
            Command.REMOVE_FROM_TEAM: (Privilege.SUPER_ADMIN, self._user_picker_command(UserAction.REMOVE_FROM_TEAM)),
            Command.DELETE_EPIC: (Privilege.SUPER_ADMIN, self._epic_picker_command(EpicAction.DELETE_EPIC)),
            Command.DELETE_RISK: (Privilege.SUPER_ADMIN, self._epic_picker_command(EpicAction.DELETE_RISK)),
            Command.DELETE_USER: (Privilege.SUPER_ADMIN, self._user_picker_command(UserAction.DELETE_USER)),
            Command.ADD_ADMIN: (Privilege.SUPER_ADMIN, self._cmd_add_admin),
            Command.REMOVE_ADMIN: (Privilege.SUPER_ADMIN, self._cmd_remove_admin),
        }

        self._clicks: dict[Domain, dict[str, tuple[Privilege, Handler]]] = {
            Domain.USER: {
                UserAction.ASSIGN_ROLE: (Privilege.ADMIN, self._user_assign_role),
                UserAction.UNASSIGN_ROLE: (Privilege.SUPER_ADMIN, self._user_unassign_role),
                UserAction.ASSIGN_TEAM: (Privilege.SUPER_ADMIN, self._user_assign_team),
                UserAction.REMOVE_FROM_TEAM: (Privilege.SUPER_ADMIN, self._user_remove_from_team),
                UserAction.RENAME_USER: (Privilege.SUPER_ADMIN, self._user_rename),
                UserAction.CHANGE_RATE: (Privilege.SUPER_ADMIN, self._user_change_rate),
                UserAction.DELETE_USER: (Privilege.SUPER_ADMIN, self._user_delete),
            },
            Domain.ROLE: {
                RoleAction.ASSIGN_ROLE: (Privilege.ADMIN, self._role_assign),
                RoleAction.UNASSIGN_ROLE: (Privilege.SUPER_ADMIN, self._role_unassign),
            },
            Domain.TEAM: {
                TeamAction.ADD_EPIC: (Privilege.ADMIN, self._team_add_epic),
                TeamAction.ASSIGN_TEAM: (Privilege.SUPER_ADMIN, self._team_assign),
                TeamAction.REMOVE_FROM_TEAM: (Privilege.SUPER_ADMIN, self._team_remove),
                TeamAction.LIST: (Privilege.ADMIN, self._team_list),
            },
            Domain.EPIC: {
                EpicAction.START_SCORE: (Privilege.ADMIN, self._epic_start_score),
                EpicAction.RESULTS: (Privilege.EVERYONE, self._epic_results),
                EpicAction.EPIC_STATUS: (Privilege.EVERYONE, self._epic_status),
                EpicAction.ADD_RISK: (Privilege.ADMIN, self._epic_add_risk),
                EpicAction.DELETE_EPIC: (Privilege.SUPER_ADMIN, self._epic_delete),
                EpicAction.DELETE_RISK: (Privilege.SUPER_ADMIN, self._epic_pick_risk),
            },
            Domain.RISK: {
                RiskAction.DELETE_RISK: (Privilege.SUPER_ADMIN, self._risk_delete),
            },
            Domain.CONFIRM: {
                ConfirmAction.DELETE_EPIC: (Privilege.SUPER_ADMIN, self._confirm_delete_epic),
                ConfirmAction.DELETE_RISK: (Privilege.SUPER_ADMIN, self._confirm_delete_risk),
                ConfirmAction.DELETE_USER: (Privilege.SUPER_ADMIN, self._confirm_delete_user),
            },
            Domain.SCORE: {
                ScoreAction.TEAM: (Privilege.EVERYONE, self._score_team),
                ScoreAction.EPIC: (Privilege.EVERYONE, self._score_epic),
                ScoreAction.RISKS: (Privilege.EVERYONE, self._score_risks),
                ScoreAction.RISK: (Privilege.EVERYONE, self._score_risk),
                **{ScoreAction.probability(n): (Privilege.EVERYONE, self._score_probability) for n in range(1, 5)},
                **{ScoreAction.impact(p, n): (Privilege.EVERYONE, self._score_impact)
                   for p in range(1, 5) for n in range(1, 5)},
            },
        }

        self._steps: dict[Step, Callable[[Repository, Interaction, dict[str, str], str], list[Reply]]] = {
            Step.ADD_USER_HANDLE: self._step_add_user_handle,
            Step.ADD_USER_FIRST_NAME: self._step_add_user_first_name,
            Step.ADD_USER_LAST_NAME: self._step_add_user_last_name,
            Step.ADD_USER_WEIGHT: self._step_add_user_weight,
            Step.RENAME_USER_FIRST_NAME: self._step_rename_first_name,
            Step.RENAME_USER_LAST_NAME: self._step_rename_last_name,
            Step.CHANGE_RATE_WEIGHT: self._step_change_rate,
            Step.ADD_EPIC_NUMBER: self._step_add_epic_number,
            Step.ADD_EPIC_NAME: self._step_add_epic_name,
            Step.ADD_EPIC_DESCRIPTION: self._step_add_epic_description,
            Step.ADD_RISK_DESCRIPTION: self._step_add_risk_description,
            Step.SCORE_EPIC_EFFORT: self._step_score_effort,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle_command(
        self, conversation_id: str | int, handle: str | None, command: str, args: str = "", first_name: str = "",
    ) -> list[Reply]:
        ctx = Interaction(str(conversation_id), handle, first_name)
        # Any command abandons the pending flow.
        self.sessions.clear(ctx.conversation_id)
        name = command.strip().lstrip("/").split("@", 1)[0].lower()
        try:
            cmd = Command(name)
        except ValueError:
            return [Reply(f"Unknown command /{name}. Use /help for the list of commands.")]
        privilege, handler = self._commands[cmd]
        log.debug("Command /%s from @%s in %s", cmd, handle, ctx.conversation_id)
        return self._run(ctx, lambda repo: self._checked(privilege, ctx, lambda: handler(repo, ctx, args.strip())))

    def handle_text(self, conversation_id: str | int, handle: str | None, text: str) -> list[Reply]:
        ctx = Interaction(str(conversation_id), handle)
        session = self.sessions.get(ctx.conversation_id)
        if session is None or session.step is Step.IDLE:
            return []
        self.sessions.touch(ctx.conversation_id)
        step_handler = self._steps[session.step]
        return self._run(ctx, lambda repo: step_handler(repo, ctx, session.scratch, text.strip()))

    def handle_click(self, conversation_id: str | int, handle: str | None, token: str) -> list[Reply]:
        ctx = Interaction(str(conversation_id), handle)
        if is_cancel(token):
            self.sessions.clear(ctx.conversation_id)
            return [Reply("Cancelled.")]
        try:
            decoded = self.codec.decode(token)
        except MalformedTokenError as exc:
            log.warning("Rejected click in %s: %s", ctx.conversation_id, exc)
            return [Reply("This button is no longer valid.")]
        privilege, handler = self._clicks[decoded.domain][decoded.action]
        self.sessions.touch(ctx.conversation_id)
        return self._run(ctx, lambda repo: self._checked(privilege, ctx, lambda: handler(repo, ctx, decoded)))

    def handled_actions(self) -> dict[Domain, set[str]]:
        return {domain: set(handlers) for domain, handlers in self._clicks.items()}

    def handled_steps(self) -> set[Step]:
        return set(self._steps)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _repository(self) -> Iterator[Repository]:
        session = self._session_factory()
        try:
            yield Repository(session)
        finally:
            session.close()

    def _run(self, ctx: Interaction, fn: Callable[[Repository], list[Reply]]) -> list[Reply]:
        try:
            with self._repository() as repo:
                return fn(repo)
        except SessionExpiredError as exc:
            self.sessions.clear(ctx.conversation_id)
            return [Reply(str(exc))]
        except (PermissionDeniedError, ValidationError) as exc:
            return [Reply(str(exc))]
        except NotFoundError as exc:
            self.sessions.clear(ctx.conversation_id)
            return [Reply(str(exc))]
        except PersistenceError:
            log.exception("Storage failure in conversation %s", ctx.conversation_id)
            self.sessions.clear(ctx.conversation_id)
            return [Reply("Could not save changes, please try again later.")]

    def _privilege_of(self, handle: str | None) -> Privilege:
        if self.policy.is_super_admin(handle):
            return Privilege.SUPER_ADMIN
        if self.policy.is_admin(handle):
            return Privilege.ADMIN
        return Privilege.EVERYONE

    def _checked(self, required: Privilege, ctx: Interaction, fn: Callable[[], list[Reply]]) -> list[Reply]:
        if self._privilege_of(ctx.handle) < required:
            if required is Privilege.SUPER_ADMIN:
                raise PermissionDeniedError("Super administrators only.")
            raise PermissionDeniedError("Administrators only.")
        return fn()

    def _pending(self, ctx: Interaction, key: str) -> str:
        session = self.sessions.get(ctx.conversation_id)
        value = session.scratch.get(key) if session else None
        if not value:
            raise SessionExpiredError()
        return value

    def _pending_id(self, ctx: Interaction, key: str) -> uuid.UUID:
        try:
            return uuid.UUID(self._pending(ctx, key))
        except ValueError:
            raise SessionExpiredError() from None

    def _cancel_row(self) -> list[Choice]:
        return [Choice("Cancel", CANCEL)]

    def _confirm(self, text: str, action: ConfirmAction, target_id: uuid.UUID) -> list[Reply]:
        token = self.codec.encode(Domain.CONFIRM, action, target_id)
        return [Reply(text, [[Choice("Yes, delete", token), Choice("Cancel", CANCEL)]])]

    # ------------------------------------------------------------------
    # Pickers
    # ------------------------------------------------------------------

    def _picker(self, text: str, domain: Domain, action: StrEnum, items: list[tuple[str, uuid.UUID]]) -> Reply:
        rows = [[Choice(truncate(label, LABEL_LIMIT), self.codec.encode(domain, action, item_id))]
                for label, item_id in items]
        rows.append(self._cancel_row())
        return Reply(text, rows)

    def _user_picker_command(self, action: UserAction):
        def handler(repo: Repository, ctx: Interaction, args: str) -> list[Reply]:
            users = repo.list_participants()
            if not users:
                return [Reply("No participants registered yet.")]
            return [self._picker("Choose a participant:", Domain.USER, action,
                                 [(_participant_label(u), u.id) for u in users])]
        return handler

    def _team_picker_command(self, action: TeamAction):
        def handler(repo: Repository, ctx: Interaction, args: str) -> list[Reply]:
            teams = repo.list_teams()
            if not teams:
                return [Reply("No teams yet.")]
            return [self._picker("Choose a team:", Domain.TEAM, action, [(t.name, t.id) for t in teams])]
        return handler

    def _epic_picker_command(self, action: EpicAction, statuses: tuple[Status, ...] | None = None):
        def handler(repo: Repository, ctx: Interaction, args: str) -> list[Reply]:
            epics = [e for e in repo.list_epics() if statuses is None or Status(e.status) in statuses]
            if not epics:
                return [Reply("No epics found.")]
            return [self._picker("Choose an epic:", Domain.EPIC, action, [(_epic_label(e), e.id) for e in epics])]
        return handler

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _cmd_start(self, repo: Repository, ctx: Interaction, args: str) -> list[Reply]:
        name = ctx.first_name or (f"@{normalize_handle(ctx.handle)}" if ctx.handle else "there")
        return [Reply(f"Hello, {name}! I collect effort estimates and risk assessments for epics.\n"
                      "Use /help for the list of commands.")]

    def _cmd_help(self, repo: Repository, ctx: Interaction, args: str) -> list[Reply]:
        level = self._privilege_of(ctx.handle)
        sections = [
            ("Everyone", Privilege.EVERYONE),
            ("Administrators", Privilege.ADMIN),
            ("Super administrators", Privilege.SUPER_ADMIN),
        ]
        lines = ["Commands"]
        for title, privilege in sections:
            if privilege > level:
                continue
            entries = [HELP_LINES[c] for c, (p, _) in self._commands.items() if p is privilege and c in HELP_LINES]
            lines.append("")
            lines.append(f"{title}:")
            lines.extend(entries)
        if level is Privilege.EVERYONE:
            lines.append("")
            lines.append("Ask an administrator for anything else.")
        return [Reply("\n".join(lines))]

    def _cmd_cancel(self, repo: Repository, ctx: Interaction, args: str) -> list[Reply]:
        return [Reply("Cancelled.")]

    def _cmd_add_team(self, repo: Repository, ctx: Interaction, args: str) -> list[Reply]:
        if not args:
            return [Reply("Usage: /addteam <team name>")]
        team = services.create_team(repo, args)
        return [Reply(f"Team {team.name!r} created.")]

    def _cmd_add_admin(self, repo: Repository, ctx: Interaction, args: str) -> list[Reply]:
        if not args:
            return [Reply("Usage: /addadmin <username>")]
        handle = normalize_handle(args)
        with self._policy_lock:
            if self.policy.is_admin(handle):
                raise ValidationError(f"@{handle} is already an administrator.")
            self.policy = self.policy.with_admin(handle)
        log.info("@%s granted administrator rights to @%s", ctx.handle, handle)
        return [Reply(f"@{handle} is now an administrator.")]

    def _cmd_remove_admin(self, repo: Repository, ctx: Interaction, args: str) -> list[Reply]:
        if not args:
            return [Reply("Usage: /removeadmin <username>")]
        handle = normalize_handle(args)
        with self._policy_lock:
            updated = self.policy.without_admin(handle)
            if updated.admins == self.policy.admins:
                raise NotFoundError("Administrator", f"@{handle}")
            self.policy = updated
        log.info("@%s revoked administrator rights of @%s", ctx.handle, handle)
        return [Reply(f"@{handle} is no longer an administrator.")]

    def _cmd_add_user(self, repo: Repository, ctx: Interaction, args: str) -> list[Reply]:
        parts = args.split()
        if len(parts) >= 4:
            handle, first_name, last_name, weight = parts[0], parts[1], parts[2], parts[3]
            p = services.add_participant(repo, handle, first_name, last_name, parse_int(weight))
            return [Reply(f"Participant {_participant_label(p)} registered.")]
        self.sessions.set(ctx.conversation_id, Step.ADD_USER_HANDLE)
        return [Reply("Enter the participant's @username:")]

    def _cmd_score(self, repo: Repository, ctx: Interaction, args: str) -> list[Reply]:
        participant = services.require_participant_by_handle(repo, ctx.handle)
        teams = repo.teams_of(participant.id)
        if not teams:
            return [Reply("You are not a member of any team.")]
        rows = [[Choice(t.name, self.codec.encode(Domain.SCORE, ScoreAction.TEAM, t.id))] for t in teams]
        return [Reply(f"{participant.display_name}, choose a team:", rows)]

    # ------------------------------------------------------------------
    # Clicks: participant picked
    # ------------------------------------------------------------------

    def _user_assign_role(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant = services.require_participant(repo, token.id)
        roles = repo.list_roles()
        if not roles:
            return [Reply("No roles defined.")]
        self.sessions.stash(ctx.conversation_id, PENDING_PARTICIPANT, str(participant.id))
        return [self._picker(f"Choose a role for {participant.display_name}:", Domain.ROLE,
                             RoleAction.ASSIGN_ROLE, [(r.name, r.id) for r in roles])]

    def _user_unassign_role(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant = services.require_participant(repo, token.id)
        roles = repo.roles_of(participant.id)
        if not roles:
            return [Reply(f"{participant.display_name} has no roles.")]
        self.sessions.stash(ctx.conversation_id, PENDING_PARTICIPANT, str(participant.id))
        return [self._picker("Choose the role to take away:", Domain.ROLE,
                             RoleAction.UNASSIGN_ROLE, [(r.name, r.id) for r in roles])]

    def _user_assign_team(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant = services.require_participant(repo, token.id)
        teams = repo.list_teams()
        if not teams:
            return [Reply("No teams yet.")]
        self.sessions.stash(ctx.conversation_id, PENDING_PARTICIPANT, str(participant.id))
        return [self._picker(f"Choose a team for {participant.display_name}:", Domain.TEAM,
                             TeamAction.ASSIGN_TEAM, [(t.name, t.id) for t in teams])]

    def _user_remove_from_team(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant = services.require_participant(repo, token.id)
        teams = repo.teams_of(participant.id)
        if not teams:
            return [Reply(f"{participant.display_name} is not in any team.")]
        self.sessions.stash(ctx.conversation_id, PENDING_PARTICIPANT, str(participant.id))
        return [self._picker("Choose the team to leave:", Domain.TEAM,
                             TeamAction.REMOVE_FROM_TEAM, [(t.name, t.id) for t in teams])]

    def _user_rename(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant = services.require_participant(repo, token.id)
        self.sessions.set(ctx.conversation_id, Step.RENAME_USER_FIRST_NAME,
                          {PENDING_PARTICIPANT: str(participant.id)})
        return [Reply(f"Renaming {_participant_label(participant)}.\nEnter the new first name:")]

    def _user_change_rate(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant = services.require_participant(repo, token.id)
        self.sessions.set(ctx.conversation_id, Step.CHANGE_RATE_WEIGHT,
                          {PENDING_PARTICIPANT: str(participant.id)})
        return [Reply(f"Weight of {_participant_label(participant)} is {participant.weight}.\n"
                      f"Enter the new weight ({services.WEIGHT_MIN}-{services.WEIGHT_MAX}):")]

    def _user_delete(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant = services.require_participant(repo, token.id)
        return self._confirm(
            f"Delete {_participant_label(participant)}? Their roles, team memberships and "
            "assessments go with them. This cannot be undone.",
            ConfirmAction.DELETE_USER, participant.id,
        )

    # ------------------------------------------------------------------
    # Clicks: role picked (participant comes from the session)
    # ------------------------------------------------------------------

    def _role_assign(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant_id = self._pending_id(ctx, PENDING_PARTICIPANT)
        participant, role = services.assign_role(repo, participant_id, token.id)
        self.sessions.clear(ctx.conversation_id)
        return [Reply(f"Role {role.name!r} assigned to {participant.display_name}.")]

    def _role_unassign(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant_id = self._pending_id(ctx, PENDING_PARTICIPANT)
        participant, role = services.unassign_role(repo, participant_id, token.id)
        self.sessions.clear(ctx.conversation_id)
        return [Reply(f"Role {role.name!r} taken from {participant.display_name}.")]

    # ------------------------------------------------------------------
    # Clicks: team picked
    # ------------------------------------------------------------------

    def _team_add_epic(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        team = services.require_team(repo, token.id)
        self.sessions.set(ctx.conversation_id, Step.ADD_EPIC_NUMBER, {"team_id": str(team.id)})
        return [Reply(f"New epic for team {team.name!r}.\nEnter the epic number (e.g. EP-1):")]

    def _team_assign(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant_id = self._pending_id(ctx, PENDING_PARTICIPANT)
        participant, team = services.add_to_team(repo, participant_id, token.id)
        self.sessions.clear(ctx.conversation_id)
        return [Reply(f"{participant.display_name} added to team {team.name!r}.")]

    def _team_remove(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant_id = self._pending_id(ctx, PENDING_PARTICIPANT)
        participant, team = services.remove_from_team(repo, participant_id, token.id)
        self.sessions.clear(ctx.conversation_id)
        return [Reply(f"{participant.display_name} removed from team {team.name!r}.")]

    def _team_list(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        roster = services.team_roster(repo, token.id)
        if not roster:
            return [Reply("The team has no members.")]
        lines = [f"@{p.handle} {p.display_name} - {role.name if role else '-'} (weight {p.weight})"
                 for p, role in roster]
        return [Reply("\n".join(lines))]

    # ------------------------------------------------------------------
    # Clicks: epic picked
    # ------------------------------------------------------------------

    def _epic_start_score(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        epic, risks = services.start_scoring(repo, token.id)
        return [Reply(f"Epic #{epic.number} {epic.name!r} and {len(risks)} risks are open for scoring.")]

    def _epic_results(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        return [Reply(format_results(services.epic_results(repo, token.id)))]

    def _epic_status(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        return [Reply(format_status_report(services.epic_status_report(repo, token.id)))]

    def _epic_add_risk(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        epic = services.require_epic(repo, token.id)
        if Status(epic.status) is Status.COMPLETE:
            raise ValidationError(f"Epic #{epic.number} is already complete")
        self.sessions.set(ctx.conversation_id, Step.ADD_RISK_DESCRIPTION, {"epic_id": str(epic.id)})
        return [Reply(f"Describe the risk for epic #{epic.number} {epic.name!r}:")]

    def _epic_delete(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        epic = services.require_epic(repo, token.id)
        return self._confirm(
            f"Delete epic #{epic.number} {epic.name!r} with all its risks and assessments? "
            "This cannot be undone.",
            ConfirmAction.DELETE_EPIC, epic.id,
        )

    def _epic_pick_risk(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        epic = services.require_epic(repo, token.id)
        risks = repo.list_risks(epic.id)
        if not risks:
            return [Reply(f"Epic #{epic.number} has no risks.")]
        self.sessions.stash(ctx.conversation_id, PENDING_EPIC, str(epic.id))
        return [self._picker(f"Choose a risk of epic #{epic.number}:", Domain.RISK, RiskAction.DELETE_RISK,
                             [(r.description, r.id) for r in risks])]

    # ------------------------------------------------------------------
    # Clicks: risk picked (epic comes from the session)
    # ------------------------------------------------------------------

    def _risk_delete(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        epic_id = self._pending_id(ctx, PENDING_EPIC)
        risk = services.require_risk(repo, token.id)
        if risk.epic_id != epic_id:
            raise ValidationError("That risk belongs to a different epic")
        return self._confirm(
            f"Delete risk {truncate(risk.description, 60)!r}? This cannot be undone.",
            ConfirmAction.DELETE_RISK, risk.id,
        )

    # ------------------------------------------------------------------
    # Clicks: confirmations
    # ------------------------------------------------------------------

    def _confirm_delete_epic(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        epic = services.delete_epic(repo, token.id)
        self.sessions.clear(ctx.conversation_id)
        return [Reply(f"Epic #{epic.number} deleted.")]

    def _confirm_delete_risk(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        risk = services.delete_risk(repo, token.id)
        self.sessions.clear(ctx.conversation_id)
        return [Reply(f"Risk {truncate(risk.description, 60)!r} deleted.")]

    def _confirm_delete_user(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant = services.delete_participant(repo, token.id)
        self.sessions.clear(ctx.conversation_id)
        return [Reply(f"Participant {_participant_label(participant)} deleted.")]

    # ------------------------------------------------------------------
    # Clicks: scoring menu
    # ------------------------------------------------------------------

    def _score_team(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        team, epics = services.pending_epics_for(repo, ctx.handle, token.id)
        if not epics:
            return [Reply(f"Nothing left to score in team {team.name!r}.")]
        rows = [[Choice(truncate(f"#{e.number} {e.name}", LABEL_LIMIT),
                        self.codec.encode(Domain.SCORE, ScoreAction.EPIC, e.id))] for e in epics]
        return [Reply(f"Epics waiting for you in team {team.name!r}:", rows)]

    def _score_epic(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant = services.require_participant_by_handle(repo, ctx.handle)
        epic = services.require_epic(repo, token.id)
        if Status(epic.status) is not Status.IN_PROGRESS:
            raise ValidationError(f"Epic #{epic.number} is not open for scoring ({epic.status})")
        estimated = services.has_estimated(repo, participant.id, epic.id)
        if estimated:
            return self._risk_menu(repo, participant, epic)
        role = services.resolve_role(repo, participant)
        self.sessions.set(ctx.conversation_id, Step.SCORE_EPIC_EFFORT,
                          {"epic_id": str(epic.id), "handle": participant.handle})
        description = f"\n\n{epic.description}" if epic.description else ""
        return [Reply(f"Epic #{epic.number} {epic.name!r}{description}\n\nYour role: {role.name}\n"
                      f"Enter your effort estimate ({self.effort_min}-{self.effort_max}):")]

    def _score_risks(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        participant = services.require_participant_by_handle(repo, ctx.handle)
        epic = services.require_epic(repo, token.id)
        return self._risk_menu(repo, participant, epic)

    def _risk_menu(self, repo: Repository, participant: Participant, epic: Epic) -> list[Reply]:
        risks = repo.list_pending_risks_for(participant.id, epic.id)
        if not risks:
            return [Reply(f"You have already scored epic #{epic.number} and all of its risks.")]
        rows = [[Choice(truncate(r.description, LABEL_LIMIT), self.codec.encode(Domain.SCORE, ScoreAction.RISK, r.id))]
                for r in risks]
        return [Reply(f"Risks of epic #{epic.number} waiting for you:", rows)]

    def _level_row(self, make: Callable[[int], ScoreAction], risk_id: uuid.UUID) -> list[Choice]:
        return [Choice(str(n), self.codec.encode(Domain.SCORE, make(n), risk_id))
                for n in range(services.LEVEL_MIN, services.LEVEL_MAX + 1)]

    def _score_risk(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        risk = services.require_risk(repo, token.id)
        return [Reply(f"Risk: {risk.description}\n\nChoose the probability (1-4):",
                      [self._level_row(ScoreAction.probability, risk.id)])]

    def _score_probability(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        risk = services.require_risk(repo, token.id)
        (probability,) = token.action.levels
        return [Reply(f"Risk: {risk.description}\nProbability: {probability}\n\nChoose the impact (1-4):",
                      [self._level_row(lambda n: ScoreAction.impact(probability, n), risk.id)])]

    def _score_impact(self, repo: Repository, ctx: Interaction, token: ActionToken) -> list[Reply]:
        probability, impact = token.action.levels
        result = services.submit_risk(repo, token.id, ctx.handle, probability, impact)
        self.sessions.clear(ctx.conversation_id)
        risk = services.require_risk(repo, token.id)
        epic = services.require_epic(repo, risk.epic_id)
        lines = [f"Saved: probability {probability}, impact {impact} for epic #{epic.number}."]
        lines.extend(describe_completion(result.completion, epic))
        reply = Reply("\n".join(lines))
        participant = services.require_participant_by_handle(repo, ctx.handle)
        if repo.list_pending_risks_for(participant.id, epic.id):
            reply.choices = [[Choice("Next risk", self.codec.encode(Domain.SCORE, ScoreAction.RISKS, epic.id))]]
        return [reply]

    # ------------------------------------------------------------------
    # Free-text steps
    # ------------------------------------------------------------------

    def _step_add_user_handle(self, repo: Repository, ctx: Interaction, scratch: dict[str, str], text: str):
        handle = services.ensure_handle_free(repo, text)
        self.sessions.set(ctx.conversation_id, Step.ADD_USER_FIRST_NAME, {**scratch, "handle": handle})
        return [Reply("Enter the first name:")]

    def _step_add_user_first_name(self, repo: Repository, ctx: Interaction, scratch: dict[str, str], text: str):
        first_name = services.validate_name(text, "First name")
        self.sessions.set(ctx.conversation_id, Step.ADD_USER_LAST_NAME, {**scratch, "first_name": first_name})
        return [Reply("Enter the last name:")]

    def _step_add_user_last_name(self, repo: Repository, ctx: Interaction, scratch: dict[str, str], text: str):
        last_name = services.validate_name(text, "Last name")
        self.sessions.set(ctx.conversation_id, Step.ADD_USER_WEIGHT, {**scratch, "last_name": last_name})
        return [Reply(f"Enter the weight ({services.WEIGHT_MIN}-{services.WEIGHT_MAX}):")]

    def _step_add_user_weight(self, repo: Repository, ctx: Interaction, scratch: dict[str, str], text: str):
        weight = services.validate_weight(parse_int(text))
        participant = services.add_participant(
            repo, scratch.get("handle", ""), scratch.get("first_name", ""), scratch.get("last_name", ""), weight,
        )
        self.sessions.clear(ctx.conversation_id)
        return [Reply(f"Participant {_participant_label(participant)} registered.")]

    def _step_rename_first_name(self, repo: Repository, ctx: Interaction, scratch: dict[str, str], text: str):
        first_name = services.validate_name(text, "First name")
        self.sessions.set(ctx.conversation_id, Step.RENAME_USER_LAST_NAME, {**scratch, "first_name": first_name})
        return [Reply("Enter the new last name:")]

    def _step_rename_last_name(self, repo: Repository, ctx: Interaction, scratch: dict[str, str], text: str):
        participant_id = self._pending_id(ctx, PENDING_PARTICIPANT)
        participant = services.rename_participant(repo, participant_id, scratch.get("first_name", ""), text)
        self.sessions.clear(ctx.conversation_id)
        return [Reply(f"Participant renamed to {participant.display_name}.")]

    def _step_change_rate(self, repo: Repository, ctx: Interaction, scratch: dict[str, str], text: str):
        participant_id = self._pending_id(ctx, PENDING_PARTICIPANT)
        participant = services.change_weight(repo, participant_id, parse_int(text))
        self.sessions.clear(ctx.conversation_id)
        return [Reply(f"Weight of {participant.display_name} changed to {participant.weight}.")]

    def _step_add_epic_number(self, repo: Repository, ctx: Interaction, scratch: dict[str, str], text: str):
        number = services.ensure_epic_number_free(repo, text)
        self.sessions.set(ctx.conversation_id, Step.ADD_EPIC_NAME, {**scratch, "number": number})
        return [Reply("Enter the epic name:")]

    def _step_add_epic_name(self, repo: Repository, ctx: Interaction, scratch: dict[str, str], text: str):
        name = services.validate_name(text, "Epic name")
        self.sessions.set(ctx.conversation_id, Step.ADD_EPIC_DESCRIPTION, {**scratch, "name": name})
        return [Reply('Enter a description (or "-" to skip):')]

    def _step_add_epic_description(self, repo: Repository, ctx: Interaction, scratch: dict[str, str], text: str):
        description = "" if text == "-" else text
        team_id = self._pending_id(ctx, "team_id")
        epic = services.add_epic(repo, team_id, scratch.get("number", ""), scratch.get("name", ""), description)
        self.sessions.clear(ctx.conversation_id)
        return [Reply(f"Epic #{epic.number} {epic.name!r} created (status {epic.status}).")]

    def _step_add_risk_description(self, repo: Repository, ctx: Interaction, scratch: dict[str, str], text: str):
        epic_id = self._pending_id(ctx, "epic_id")
        risk = services.add_risk(repo, epic_id, text)
        epic = services.require_epic(repo, epic_id)
        self.sessions.clear(ctx.conversation_id)
        return [Reply(f"Risk added to epic #{epic.number} (status {risk.status}).")]

    def _step_score_effort(self, repo: Repository, ctx: Interaction, scratch: dict[str, str], text: str):
        epic_id = self._pending_id(ctx, "epic_id")
        handle = scratch.get("handle") or ctx.handle
        value = services.validate_effort(parse_int(text), self.effort_min, self.effort_max)
        result = services.submit_effort(repo, epic_id, handle, value, self.effort_min, self.effort_max)
        self.sessions.clear(ctx.conversation_id)
        epic = services.require_epic(repo, epic_id)
        lines = [f"Estimate {value} for epic #{epic.number} saved."]
        lines.extend(describe_completion(result.completion, epic))
        reply = Reply("\n".join(lines))
        participant = services.require_participant_by_handle(repo, handle)
        if repo.list_pending_risks_for(participant.id, epic.id):
            reply.choices = [[Choice("Assess risks", self.codec.encode(Domain.SCORE, ScoreAction.RISKS, epic.id))]]
        return [reply]


# ---------------------------------------------------------------------------
# Report formatting
# ---------------------------------------------------------------------------


def describe_completion(completion: Completion, epic: Epic) -> list[str]:
    lines: list[str] = []
    if completion.cascade is not None:
        if completion.completed:
            lines.append(f"Risk assessment complete: weighted score {completion.score:.2f}.")
        completion = completion.cascade
    if completion.outcome is Outcome.COMPLETED:
        lines.append(f"Epic #{epic.number} is fully scored: final score {completion.score:.0f}.")
    elif completion.outcome is Outcome.WAITING_FOR_RISKS:
        lines.append("All estimates are in; waiting for risk assessments.")
    return lines


def format_results(results: dict) -> str:
    lines = [f"Results for epic #{results['number']} {results['name']!r}", f"Status: {results['status']}", ""]
    if results["role_scores"]:
        lines.append("By role:")
        lines.extend(f"  {rs['role']}: {rs['weighted_avg']:.2f}" for rs in results["role_scores"])
        lines.append("")
    if results["risks"]:
        lines.append("Risks:")
        for risk in results["risks"]:
            detail = ""
            if risk["weighted_score"] is not None:
                detail = f" (score {risk['weighted_score']:.2f}, coefficient {risk['coefficient']:.2f})"
            lines.append(f"  {risk['description']} [{risk['status']}]{detail}")
        lines.append("")
    if results["final_score"] is not None:
        lines.append(f"Final score: {results['final_score']:.0f}")
    else:
        lines.append("Final score not calculated yet.")
    return "\n".join(lines)


def format_status_report(report: dict) -> str:
    lines = [f"Scoring status of epic #{report['number']} {report['name']!r}", "", "Effort - not estimated yet:"]
    if report["missing_effort"]:
        lines.extend(f"  {m['name']} (@{m['handle']})" for m in report["missing_effort"])
    else:
        lines.append("  everyone has estimated")
    for risk in report["risks"]:
        lines.append("")
        lines.append(f"{truncate(risk['description'], 40)} [{risk['status']}] - not assessed yet:")
        if risk["missing"]:
            lines.extend(f"  {m['name']} (@{m['handle']})" for m in risk["missing"])
        else:
            lines.append("  everyone has assessed")
    return "\n".join(lines)
