"""Compact action tokens carried by choice buttons.

Wire format::

    <domain> "_" <action> "_" <id36> [ "_" <id36> ]

plus the bare literal ``cancel``. Ids are canonical 36-character UUID strings;
actions are lower-case words that may themselves contain underscores
(``prob_3``, ``impact_3_2``), so decoding anchors on the fixed-width id
suffix rather than splitting on ``_``.

Transports cap button payloads (64 bytes by default). A domain prefix, an
action and two ids never fit in that budget, so flows that need a second id
stash it in the session store and put only one id on the button.
"""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from enum import StrEnum

from epicscore.errors import MalformedTokenError, TokenTooLongError

DEFAULT_MAX_BYTES = 64
CANCEL = "cancel"

_ID_LEN = 36
# "_" + id + at least one action character
_MIN_REMAINDER = _ID_LEN + 2

_BODY_RE = re.compile(
    r"^(?P<action>[a-z0-9]+(?:_[a-z0-9]+)*)"
    r"_(?P<first>[^_]{36})"
    r"(?:_(?P<second>[^_]{36}))?$"
)


class Domain(StrEnum):
    USER = "user"
    ROLE = "role"
    TEAM = "team"
    EPIC = "epic"
    RISK = "risk"
    CONFIRM = "confirm"
    SCORE = "score"


class UserAction(StrEnum):
    ASSIGN_ROLE = "assignrole"
    UNASSIGN_ROLE = "unassignrole"
    ASSIGN_TEAM = "assignteam"
    REMOVE_FROM_TEAM = "removefromteam"
    RENAME_USER = "renameuser"
    CHANGE_RATE = "changerate"
    DELETE_USER = "deleteuser"


class RoleAction(StrEnum):
    ASSIGN_ROLE = "assignrole"
    UNASSIGN_ROLE = "unassignrole"


class TeamAction(StrEnum):
    ADD_EPIC = "addepic"
    ASSIGN_TEAM = "assignteam"
    REMOVE_FROM_TEAM = "removefromteam"
    LIST = "list"


class EpicAction(StrEnum):
    START_SCORE = "startscore"
    RESULTS = "results"
    EPIC_STATUS = "epicstatus"
    ADD_RISK = "addrisk"
    DELETE_EPIC = "deleteepic"
    DELETE_RISK = "deleterisk"


class RiskAction(StrEnum):
    DELETE_RISK = "deleterisk"


class ConfirmAction(StrEnum):
    DELETE_EPIC = "deleteepic"
    DELETE_RISK = "deleterisk"
    DELETE_USER = "deleteuser"


class ScoreAction(StrEnum):
    TEAM = "team"
    EPIC = "epic"
    RISKS = "risks"
    RISK = "risk"
    PROB_1 = "prob_1"
    PROB_2 = "prob_2"
    PROB_3 = "prob_3"
    PROB_4 = "prob_4"
    # impact_<probability>_<impact>: the chosen probability rides on the impact button
    IMPACT_1_1 = "impact_1_1"
    IMPACT_1_2 = "impact_1_2"
    IMPACT_1_3 = "impact_1_3"
    IMPACT_1_4 = "impact_1_4"
    IMPACT_2_1 = "impact_2_1"
    IMPACT_2_2 = "impact_2_2"
    IMPACT_2_3 = "impact_2_3"
    IMPACT_2_4 = "impact_2_4"
    IMPACT_3_1 = "impact_3_1"
    IMPACT_3_2 = "impact_3_2"
    IMPACT_3_3 = "impact_3_3"
    IMPACT_3_4 = "impact_3_4"
    IMPACT_4_1 = "impact_4_1"
    IMPACT_4_2 = "impact_4_2"
    IMPACT_4_3 = "impact_4_3"
    IMPACT_4_4 = "impact_4_4"

    @property
    def levels(self) -> tuple[int, ...]:
        """(probability,) for probability buttons, (probability, impact) for
        impact buttons, empty otherwise."""
        head, _, tail = self.value.partition("_")
        if head not in ("prob", "impact"):
            return ()
        return tuple(int(n) for n in tail.split("_"))

    @classmethod
    def probability(cls, level: int) -> ScoreAction:
        return cls(f"prob_{level}")

    @classmethod
    def impact(cls, probability: int, level: int) -> ScoreAction:
        return cls(f"impact_{probability}_{level}")


ACTIONS: dict[Domain, type[StrEnum]] = {
    Domain.USER: UserAction,
    Domain.ROLE: RoleAction,
    Domain.TEAM: TeamAction,
    Domain.EPIC: EpicAction,
    Domain.RISK: RiskAction,
    Domain.CONFIRM: ConfirmAction,
    Domain.SCORE: ScoreAction,
}


@dataclass(frozen=True)
class ActionToken:
    domain: Domain
    action: StrEnum
    ids: tuple[uuid.UUID, ...]

    @property
    def id(self) -> uuid.UUID:
        return self.ids[0]

    @property
    def second_id(self) -> uuid.UUID | None:
        return self.ids[1] if len(self.ids) > 1 else None


def is_cancel(token: str) -> bool:
    return token == CANCEL


def _parse_id(token: str, raw: str) -> uuid.UUID:
    try:
        parsed = uuid.UUID(raw)
    except ValueError:
        raise MalformedTokenError(token, f"{raw!r} is not a UUID") from None
    if str(parsed) != raw.lower():
        raise MalformedTokenError(token, f"{raw!r} is not a canonical UUID")
    return parsed


class TokenCodec:
    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES):
        self.max_bytes = max_bytes

    def encode(self, domain: Domain, action: StrEnum | str, *ids: uuid.UUID) -> str:
        if not 1 <= len(ids) <= 2:
            raise ValueError("an action token carries one or two ids")
        try:
            action = ACTIONS[domain](action)
        except ValueError:
            raise ValueError(f"{action!r} is not a {domain} action") from None
        token = "_".join([domain.value, action.value, *(str(i) for i in ids)])
        if len(token.encode("ascii")) > self.max_bytes:
            raise TokenTooLongError(token, self.max_bytes)
        return token

    def decode(self, token: str) -> ActionToken:
        if not token.isascii():
            raise MalformedTokenError(token, "non-ASCII payload")
        if len(token) > self.max_bytes:
            raise MalformedTokenError(token, f"longer than {self.max_bytes} bytes")
        prefix, sep, rest = token.partition("_")
        if not sep:
            raise MalformedTokenError(token, "missing domain separator")
        try:
            domain = Domain(prefix)
        except ValueError:
            raise MalformedTokenError(token, f"unknown domain {prefix!r}") from None
        if len(rest) < _MIN_REMAINDER:
            raise MalformedTokenError(token, "too short")

        m = _BODY_RE.match(rest)
        if m is None:
            raise MalformedTokenError(token, "does not match <action>_<id>[_<id>]")

        try:
            action = ACTIONS[domain](m.group("action"))
        except ValueError:
            raise MalformedTokenError(token, f"unknown {domain} action {m.group('action')!r}") from None

        ids = [_parse_id(token, m.group("first"))]
        if m.group("second") is not None:
            ids.append(_parse_id(token, m.group("second")))
        return ActionToken(domain=domain, action=action, ids=tuple(ids))
