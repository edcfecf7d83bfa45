"""Conversation router: commands, free-text steps and button clicks end to end."""
from __future__ import annotations

import pytest

from epicscore import services
from epicscore.config import AccessPolicy
from epicscore.conversation import ConversationRouter, Reply
from epicscore.errors import PersistenceError
from epicscore.models import Status
from epicscore.repository import Repository
from epicscore.sessions import PENDING_EPIC, PENDING_PARTICIPANT, SessionStore, Step
from epicscore.tokens import ACTIONS, CANCEL, Domain, ScoreAction, TokenCodec

CHAT = "chat-1"


@pytest.fixture()
def router(test_db, clock) -> ConversationRouter:
    _, TestSession = test_db
    return ConversationRouter(
        sessions=SessionStore(ttl_seconds=300, clock=clock),
        codec=TokenCodec(),
        policy=AccessPolicy(admins=frozenset({"admin"}), super_admins=frozenset({"boss"})),
        session_factory=TestSession,
    )


def choices(replies: list[Reply]) -> dict[str, str]:
    """label -> token for every button of the last reply."""
    return {c.label: c.token for row in replies[-1].choices for c in row}


def pick(replies: list[Reply], fragment: str) -> str:
    matches = [token for label, token in choices(replies).items() if fragment in label]
    assert matches, f"no choice containing {fragment!r} in {list(choices(replies))}"
    return matches[0]


def text_of(replies: list[Reply]) -> str:
    return "\n".join(r.text for r in replies)


class TestDispatchTables:
    def test_every_action_has_a_handler(self, router):
        handled = router.handled_actions()
        for domain, actions in ACTIONS.items():
            assert {str(a) for a in handled[domain]} == {a.value for a in actions}

    def test_every_step_has_a_handler(self, router):
        assert router.handled_steps() == set(Step) - {Step.IDLE}


class TestCommands:
    def test_start_and_help(self, router):
        assert "Hello, Ann!" in text_of(router.handle_command(CHAT, "ann", "/start", first_name="Ann"))
        help_text = text_of(router.handle_command(CHAT, "ann", "/help"))
        assert "/score" in help_text
        assert "/adduser" not in help_text
        assert "/deleteepic" in text_of(router.handle_command(CHAT, "boss", "/help"))

    def test_unknown_command(self, router):
        assert "Unknown command /fly" in text_of(router.handle_command(CHAT, "ann", "/fly"))

    def test_bot_suffix_is_ignored(self, router):
        assert "Commands" in text_of(router.handle_command(CHAT, "ann", "/help@EpicScoreBot"))

    def test_admin_only(self, router):
        assert text_of(router.handle_command(CHAT, "alice", "/adduser")) == "Administrators only."
        assert text_of(router.handle_command(CHAT, "admin", "/deleteepic")) == "Super administrators only."

    def test_admin_handles_are_case_insensitive(self, router):
        assert "participant's @username" in text_of(router.handle_command(CHAT, "@Admin", "/adduser"))

    def test_command_clears_pending_flow(self, router):
        router.handle_command(CHAT, "admin", "/adduser")
        assert router.sessions.get(CHAT).step is Step.ADD_USER_HANDLE
        router.handle_command(CHAT, "admin", "/help")
        assert router.sessions.get(CHAT) is None
        assert router.handle_text(CHAT, "admin", "@dave") == []

    def test_text_without_flow_is_ignored(self, router):
        assert router.handle_text(CHAT, "alice", "hello") == []

    def test_add_team(self, router, test_db):
        assert "Team 'Mobile' created." in text_of(router.handle_command(CHAT, "boss", "/addteam", "Mobile"))
        assert "already exists" in text_of(router.handle_command(CHAT, "boss", "/addteam", "mobile"))


class TestAdminList:
    def test_add_and_remove_admin(self, router):
        assert text_of(router.handle_command(CHAT, "alice", "/adduser")) == "Administrators only."
        assert text_of(router.handle_command(CHAT, "boss", "/addadmin", "@Alice")) == "@Alice is now an administrator."
        assert "participant's @username" in text_of(router.handle_command(CHAT, "alice", "/adduser"))

        assert "already an administrator" in text_of(router.handle_command(CHAT, "boss", "/addadmin", "alice"))
        assert text_of(router.handle_command(CHAT, "boss", "/removeadmin", "alice")) == (
            "@alice is no longer an administrator."
        )
        assert text_of(router.handle_command(CHAT, "alice", "/adduser")) == "Administrators only."

    def test_policy_is_replaced_not_mutated(self, router):
        before = router.policy
        router.handle_command(CHAT, "boss", "/addadmin", "dave")
        assert router.policy is not before
        assert not before.is_admin("dave")
        assert router.policy.is_admin("dave")

    def test_remove_unknown_admin(self, router):
        assert "@nobody not found" in text_of(router.handle_command(CHAT, "boss", "/removeadmin", "nobody"))
        assert router.policy.is_admin("admin")

    def test_usage_and_privilege(self, router):
        assert text_of(router.handle_command(CHAT, "boss", "/addadmin")) == "Usage: /addadmin <username>"
        assert text_of(router.handle_command(CHAT, "admin", "/addadmin", "dave")) == "Super administrators only."
        assert text_of(router.handle_command(CHAT, "admin", "/removeadmin", "admin")) == "Super administrators only."
        assert "/addadmin" in text_of(router.handle_command(CHAT, "boss", "/help"))


class TestAddUserFlow:
    def test_step_by_step(self, router, test_db):
        router.handle_command(CHAT, "admin", "/adduser")
        assert "first name" in text_of(router.handle_text(CHAT, "admin", "@dave"))
        router.handle_text(CHAT, "admin", "Dave")
        router.handle_text(CHAT, "admin", "Jones")
        # Bad weight keeps the flow on the same step.
        assert "Weight must be" in text_of(router.handle_text(CHAT, "admin", "lots"))
        assert router.sessions.get(CHAT).step is Step.ADD_USER_WEIGHT
        assert "registered" in text_of(router.handle_text(CHAT, "admin", "80"))
        assert router.sessions.get(CHAT) is None

        _, TestSession = test_db
        with TestSession() as s:
            dave = Repository(s).find_participant_by_handle("dave")
            assert (dave.first_name, dave.last_name, dave.weight) == ("Dave", "Jones", 80)

    def test_inline_arguments(self, router):
        replies = router.handle_command(CHAT, "admin", "/adduser", "@erin Erin Evans 60")
        assert "Erin Evans (@erin) registered" in text_of(replies)

    def test_flow_expires(self, router, clock):
        router.handle_command(CHAT, "admin", "/adduser")
        clock.advance(301)
        assert router.handle_text(CHAT, "admin", "@late") == []

    def test_storage_failure_ends_the_flow(self, router, monkeypatch):
        def failing_create(self, *args, **kwargs):
            raise PersistenceError("create_participant failed: OperationalError")

        monkeypatch.setattr(Repository, "create_participant", failing_create)
        router.handle_command(CHAT, "admin", "/adduser")
        for text in ("@dave", "Dave", "Jones"):
            router.handle_text(CHAT, "admin", text)
        assert router.sessions.get(CHAT).step is Step.ADD_USER_WEIGHT

        assert text_of(router.handle_text(CHAT, "admin", "80")) == "Could not save changes, please try again later."
        assert router.sessions.get(CHAT) is None


class TestSideChannel:
    def test_assign_role(self, router, crew, test_db):
        replies = router.handle_command(CHAT, "admin", "/assignrole")
        replies = router.handle_click(CHAT, "admin", pick(replies, "Alice"))
        assert router.sessions.get(CHAT).scratch[PENDING_PARTICIPANT] == str(crew.alice_id)
        replies = router.handle_click(CHAT, "admin", pick(replies, "Analyst"))
        assert text_of(replies) == "Role 'Analyst' assigned to Alice Anders."
        assert router.sessions.get(CHAT) is None

        _, TestSession = test_db
        with TestSession() as s:
            assert [r.name for r in Repository(s).roles_of(crew.alice_id)] == ["Analyst", "Backend developer"]

    def test_assign_role_after_ttl(self, router, crew, clock):
        replies = router.handle_command(CHAT, "admin", "/assignrole")
        replies = router.handle_click(CHAT, "admin", pick(replies, "Alice"))
        clock.advance(301)
        replies = router.handle_click(CHAT, "admin", pick(replies, "Analyst"))
        assert text_of(replies) == "Session expired, please start the command again"

    def test_side_channel_is_per_conversation(self, router, crew):
        replies = router.handle_command(CHAT, "admin", "/assignrole")
        replies = router.handle_click(CHAT, "admin", pick(replies, "Alice"))
        other = router.handle_click("chat-2", "admin", pick(replies, "Analyst"))
        assert "Session expired" in text_of(other)

    def test_unassign_role(self, router, crew):
        replies = router.handle_command(CHAT, "boss", "/unassignrole")
        replies = router.handle_click(CHAT, "boss", pick(replies, "Carol"))
        assert list(choices(replies)) == ["QA engineer", "Cancel"]
        replies = router.handle_click(CHAT, "boss", pick(replies, "QA"))
        assert text_of(replies) == "Role 'QA engineer' taken from Carol Clark."

    def test_remove_from_team_and_back(self, router, crew):
        replies = router.handle_command(CHAT, "boss", "/removefromteam")
        replies = router.handle_click(CHAT, "boss", pick(replies, "Bob"))
        replies = router.handle_click(CHAT, "boss", pick(replies, "Core"))
        assert text_of(replies) == "Bob Brown removed from team 'Core'."

        replies = router.handle_command(CHAT, "boss", "/assignteam")
        replies = router.handle_click(CHAT, "boss", pick(replies, "Bob"))
        replies = router.handle_click(CHAT, "boss", pick(replies, "Core"))
        assert text_of(replies) == "Bob Brown added to team 'Core'."

    def test_delete_risk_with_confirmation(self, router, crew, open_epic, test_db):
        epic_id, (risk_id,) = open_epic(risks=("Flaky vendor",))
        replies = router.handle_command(CHAT, "boss", "/deleterisk")
        replies = router.handle_click(CHAT, "boss", pick(replies, "EP-1"))
        assert router.sessions.get(CHAT).scratch[PENDING_EPIC] == str(epic_id)
        replies = router.handle_click(CHAT, "boss", pick(replies, "Flaky"))
        assert set(choices(replies)) == {"Yes, delete", "Cancel"}
        replies = router.handle_click(CHAT, "boss", choices(replies)["Yes, delete"])
        assert text_of(replies) == "Risk 'Flaky vendor' deleted."

        _, TestSession = test_db
        with TestSession() as s:
            assert Repository(s).get_risk(risk_id) is None


class TestClicks:
    def test_cancel(self, router):
        router.handle_command(CHAT, "admin", "/adduser")
        assert text_of(router.handle_click(CHAT, "admin", CANCEL)) == "Cancelled."
        assert router.sessions.get(CHAT) is None

    def test_malformed_token(self, router):
        assert text_of(router.handle_click(CHAT, "admin", "user_assignrole_nope")) == "This button is no longer valid."

    def test_privilege_checked_on_click(self, router, crew):
        replies = router.handle_command(CHAT, "boss", "/deleteuser")
        token = pick(replies, "Alice")
        assert text_of(router.handle_click(CHAT, "admin", token)) == "Super administrators only."

    def test_stale_target(self, router, crew, test_db):
        replies = router.handle_command(CHAT, "boss", "/changerate")
        token = pick(replies, "Carol")
        _, TestSession = test_db
        with TestSession() as s:
            services.delete_participant(Repository(s), crew.carol_id)
        assert "not found" in text_of(router.handle_click(CHAT, "boss", token))

    def test_change_rate(self, router, crew):
        replies = router.handle_command(CHAT, "boss", "/changerate")
        replies = router.handle_click(CHAT, "boss", pick(replies, "Carol"))
        assert "is 100" in text_of(replies)
        assert "from 0 to 100" in text_of(router.handle_text(CHAT, "boss", "150"))
        assert text_of(router.handle_text(CHAT, "boss", "70")) == "Weight of Carol Clark changed to 70."

    def test_rename(self, router, crew):
        replies = router.handle_command(CHAT, "boss", "/renameuser")
        router.handle_click(CHAT, "boss", pick(replies, "Bob"))
        router.handle_text(CHAT, "boss", "Robert")
        assert text_of(router.handle_text(CHAT, "boss", "Brown")) == "Participant renamed to Robert Brown."

    def test_add_epic_and_risk(self, router, crew, test_db):
        replies = router.handle_command(CHAT, "admin", "/addepic")
        router.handle_click(CHAT, "admin", pick(replies, "Core"))
        router.handle_text(CHAT, "admin", "EP-9")
        router.handle_text(CHAT, "admin", "Payments")
        assert text_of(router.handle_text(CHAT, "admin", "-")) == "Epic #EP-9 'Payments' created (status NEW)."

        replies = router.handle_command(CHAT, "admin", "/addrisk")
        router.handle_click(CHAT, "admin", pick(replies, "EP-9"))
        assert "status NEW" in text_of(router.handle_text(CHAT, "admin", "PSP contract not signed"))

        replies = router.handle_command(CHAT, "admin", "/startscore")
        replies = router.handle_click(CHAT, "admin", pick(replies, "EP-9"))
        assert text_of(replies) == "Epic #EP-9 'Payments' and 1 risks are open for scoring."

        _, TestSession = test_db
        with TestSession() as s:
            epic = Repository(s).find_epic_by_number("EP-9")
            assert epic.description == ""
            assert epic.status == Status.IN_PROGRESS

    def test_duplicate_epic_number_keeps_step(self, router, crew, open_epic):
        open_epic("EP-1")
        replies = router.handle_command(CHAT, "admin", "/addepic")
        router.handle_click(CHAT, "admin", pick(replies, "Core"))
        assert "already exists" in text_of(router.handle_text(CHAT, "admin", "ep-1"))
        assert router.sessions.get(CHAT).step is Step.ADD_EPIC_NUMBER


class TestScoreFlow:
    def test_full_flow_to_completion(self, router, crew, open_epic, test_db):
        epic_id, (risk_id,) = open_epic(risks=("Unclear API",))
        _, TestSession = test_db
        with TestSession() as s:
            repo = Repository(s)
            services.submit_effort(repo, epic_id, "bob", 10)
            services.submit_effort(repo, epic_id, "carol", 5)
            services.submit_risk(repo, risk_id, "bob", 1, 3)
            services.submit_risk(repo, risk_id, "carol", 1, 3)

        replies = router.handle_command(CHAT, "alice", "/score")
        replies = router.handle_click(CHAT, "alice", pick(replies, "Core"))
        replies = router.handle_click(CHAT, "alice", pick(replies, "EP-1"))
        assert "Your role: Backend developer" in text_of(replies)
        assert router.sessions.get(CHAT).step is Step.SCORE_EPIC_EFFORT

        assert "Enter a whole number" in text_of(router.handle_text(CHAT, "alice", "a lot"))
        replies = router.handle_text(CHAT, "alice", "10")
        assert "Estimate 10 for epic #EP-1 saved." in text_of(replies)
        assert "waiting for risk assessments" in text_of(replies)

        replies = router.handle_click(CHAT, "alice", pick(replies, "Assess risks"))
        replies = router.handle_click(CHAT, "alice", pick(replies, "Unclear API"))
        replies = router.handle_click(CHAT, "alice", choices(replies)["2"])
        assert "Probability: 2" in text_of(replies)
        replies = router.handle_click(CHAT, "alice", choices(replies)["3"])
        text = text_of(replies)
        assert "Saved: probability 2, impact 3 for epic #EP-1." in text
        assert "Risk assessment complete: weighted score 4.00." in text
        # (10 + 5) * 1.05
        assert "Epic #EP-1 is fully scored: final score 16." in text
        assert replies[-1].choices == []

        with TestSession() as s:
            epic = Repository(s).get_epic(epic_id)
            assert epic.status == Status.COMPLETE
            assert epic.final_score == 16

    def _risk_rows(self, test_db, risk_id):
        _, TestSession = test_db
        with TestSession() as s:
            return sorted(Repository(s).weighted_risk_rows(risk_id))

    def test_impact_buttons_carry_their_probability(self, router, crew, open_epic, test_db):
        _, (risk_a, risk_b) = open_epic(risks=("Risk A", "Risk B"))
        on_a = router.handle_click(CHAT, "alice", router.codec.encode(Domain.SCORE, ScoreAction.PROB_1, risk_a))
        router.handle_click(CHAT, "alice", router.codec.encode(Domain.SCORE, ScoreAction.PROB_4, risk_b))

        replies = router.handle_click(CHAT, "alice", choices(on_a)["2"])
        assert "Saved: probability 1, impact 2" in text_of(replies)
        assert self._risk_rows(test_db, risk_a) == [(2, 100)]
        assert self._risk_rows(test_db, risk_b) == []

    def test_shared_chat_keeps_each_users_probability(self, router, crew, open_epic, test_db):
        _, (risk_id,) = open_epic(risks=("Shared",))
        def prob(level):
            return router.codec.encode(Domain.SCORE, ScoreAction.probability(level), risk_id)

        for_alice = router.handle_click(CHAT, "alice", prob(1))
        for_bob = router.handle_click(CHAT, "bob", prob(4))

        assert "Saved: probability 1, impact 1" in text_of(router.handle_click(CHAT, "alice", choices(for_alice)["1"]))
        assert "Saved: probability 4, impact 1" in text_of(router.handle_click(CHAT, "bob", choices(for_bob)["1"]))
        assert self._risk_rows(test_db, risk_id) == [(1, 100), (4, 100)]

    def test_impact_token_layout(self, router, crew, open_epic):
        _, (risk_id,) = open_epic(risks=("R",))
        replies = router.handle_click(CHAT, "alice", router.codec.encode(Domain.SCORE, ScoreAction.PROB_3, risk_id))
        token = choices(replies)["2"]
        assert token == f"score_impact_3_2_{risk_id}"
        assert len(token) <= 64

    def test_nothing_to_score(self, router, crew):
        replies = router.handle_command(CHAT, "alice", "/score")
        replies = router.handle_click(CHAT, "alice", pick(replies, "Core"))
        assert text_of(replies) == "Nothing left to score in team 'Core'."

    def test_unregistered_user(self, router):
        assert "not found" in text_of(router.handle_command(CHAT, "stranger", "/score"))

    def test_results_and_status(self, router, crew, open_epic):
        open_epic("EP-1")
        replies = router.handle_command(CHAT, "alice", "/epicstatus")
        status = text_of(router.handle_click(CHAT, "alice", pick(replies, "EP-1")))
        assert "Alice Anders (@alice)" in status
        replies = router.handle_command(CHAT, "alice", "/results")
        results = text_of(router.handle_click(CHAT, "alice", pick(replies, "EP-1")))
        assert "Final score not calculated yet." in results
