"""
Lifecycle state machine tests.

Drives the engine directly against the in-memory store and scripted oracle:
create, assign, join, completion, approve/reject, feedback and voice intake.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from civicgrid.errors import (NotFound, OracleUnavailable, RejectedFraudulent,
                              RejectedIrrelevant, ValidationError)
from civicgrid.models import (CompletionAnalysis, Priority, SeverityAssessment,
                              VoiceCreateIssueCommand)

from conftest import issue_command

pytestmark = pytest.mark.asyncio

DEADLINE = datetime(2026, 11, 1, 17, 0, tzinfo=timezone.utc)
AFTER_PHOTOS = ["https://img.example/after-1.jpg", "https://img.example/after-2.jpg"]


async def in_progress(engine) -> str:
    result = await engine.create_issue(issue_command())
    await engine.assign("official-1", result.issue.id, "staff-1", DEADLINE)
    return result.issue.id


async def pending_approval(engine) -> str:
    issue_id = await in_progress(engine)
    await engine.submit_completion("staff-1", issue_id, AFTER_PHOTOS, "Filled with hot asphalt")
    return issue_id


async def resolved(engine) -> str:
    issue_id = await pending_approval(engine)
    await engine.approve("official-1", issue_id)
    return issue_id


# ═══════════════════════════════════════════════════════════════════════════════
# CREATE
# ═══════════════════════════════════════════════════════════════════════════════

class TestCreate:
    async def test_relevant_report_is_persisted(self, engine, store, actors):
        result = await engine.create_issue(issue_command())
        issue = result.issue
        assert issue.status == "Submitted"
        assert issue.priority == "High"
        assert issue.severity_score == 9
        assert issue.title == "Deep pothole on Main Street"
        assert issue.supporters == ["citizen-1"]
        assert issue.supporter_count == 1
        assert result.estimated_days == 3
        citizen = store.get_actor("citizen-1")
        assert citizen.utility_points == 9
        assert citizen.trust_points == 100
        assert citizen.report_count == 1
        assert result.new_badges == ["reporter-1"]
        assert citizen.badges == ["reporter-1"]

    async def test_trust_reward_is_capped(self, engine, store, actors):
        store.run_atomic(lambda uow: uow.put_actor(
            uow.get_actor("citizen-1").model_copy(update={"trust_points": 99})))
        await engine.create_issue(issue_command())
        assert store.get_actor("citizen-1").trust_points == 100

    async def test_irrelevant_report_penalizes_trust(self, engine, store, oracle, actors):
        oracle.severity = SeverityAssessment(is_relevant=False, rejection_reason="Photo shows a cat")
        with pytest.raises(RejectedIrrelevant) as exc:
            await engine.create_issue(issue_command())
        assert exc.value.reason == "Photo shows a cat"
        assert store.find_issues() == []
        citizen = store.get_actor("citizen-1")
        assert citizen.trust_points == 95
        assert citizen.report_count == 0
        assert "classify_priority" not in oracle.calls

    async def test_irrelevant_report_from_new_citizen_creates_profile(self, engine, store, oracle):
        oracle.severity = SeverityAssessment(is_relevant=False)
        with pytest.raises(RejectedIrrelevant):
            await engine.create_issue(issue_command(actor_id="first-timer"))
        assert store.get_actor("first-timer").trust_points == 95

    @pytest.mark.parametrize("failing", ["classify_severity", "classify_priority", "generate_title"])
    async def test_oracle_failure_leaves_no_trace(self, engine, store, oracle, actors, failing):
        oracle.failing.add(failing)
        with pytest.raises(OracleUnavailable):
            await engine.create_issue(issue_command())
        assert store.find_issues() == []
        citizen = store.get_actor("citizen-1")
        assert (citizen.utility_points, citizen.trust_points, citizen.report_count) == (0, 100, 0)

    async def test_requires_images(self, engine, actors):
        with pytest.raises(ValidationError):
            await engine.create_issue(issue_command(images=[]))
        with pytest.raises(ValidationError):
            await engine.create_issue(issue_command(images=[f"https://img/{i}.jpg" for i in range(6)]))

    async def test_requires_location_or_address(self, engine, actors):
        with pytest.raises(ValidationError):
            await engine.create_issue(issue_command(location=None, address=""))

    async def test_address_alone_is_enough(self, engine, actors):
        result = await engine.create_issue(issue_command(location=None))
        assert result.issue.address == "12 Main Street"

    async def test_staff_cannot_create(self, engine, oracle, actors):
        with pytest.raises(ValidationError):
            await engine.create_issue(issue_command(actor_id="staff-1"))
        assert oracle.calls == []

    async def test_audio_is_transcribed(self, engine, oracle, actors):
        result = await engine.create_issue(issue_command(audio_url="data:audio/wav;base64,UklGRg=="))
        assert "transcribe_audio" in oracle.calls
        assert result.issue.transcript == "There is a huge pothole near the market"
        assert result.issue.audio_url is None

    async def test_estimate_uses_pending_queue(self, engine, oracle, actors):
        oracle.priority = Priority.MEDIUM
        for _ in range(10):
            await engine.create_issue(issue_command())
        result = await engine.create_issue(issue_command())
        assert result.estimated_days == 8


# ═══════════════════════════════════════════════════════════════════════════════
# ASSIGN
# ═══════════════════════════════════════════════════════════════════════════════

class TestAssign:
    async def test_assign_moves_to_in_progress(self, engine, actors):
        created = await engine.create_issue(issue_command())
        issue = await engine.assign("official-1", created.issue.id, "staff-1", DEADLINE)
        assert issue.status == "In Progress"
        assert issue.assigned_staff_id == "staff-1"
        assert issue.assigned_staff_name == "Road Crew"
        assert issue.deadline == DEADLINE

    async def test_department_must_match(self, engine, store, actors):
        created = await engine.create_issue(issue_command())
        with pytest.raises(ValidationError):
            await engine.assign("official-1", created.issue.id, "staff-2", DEADLINE)
        assert store.get_issue(created.issue.id).status == "Submitted"

    async def test_deadline_required(self, engine, actors):
        created = await engine.create_issue(issue_command())
        with pytest.raises(ValidationError):
            await engine.assign("official-1", created.issue.id, "staff-1", None)

    async def test_only_from_submitted(self, engine, actors):
        issue_id = await in_progress(engine)
        with pytest.raises(ValidationError):
            await engine.assign("official-1", issue_id, "staff-1", DEADLINE)

    async def test_only_officials_assign(self, engine, actors):
        created = await engine.create_issue(issue_command())
        with pytest.raises(ValidationError):
            await engine.assign("citizen-2", created.issue.id, "staff-1", DEADLINE)

    async def test_unknown_staff_and_issue(self, engine, actors):
        created = await engine.create_issue(issue_command())
        with pytest.raises(NotFound):
            await engine.assign("official-1", created.issue.id, "nobody", DEADLINE)
        with pytest.raises(NotFound):
            await engine.assign("official-1", "missing-issue", "staff-1", DEADLINE)

    async def test_citizen_cannot_be_assigned(self, engine, actors):
        created = await engine.create_issue(issue_command())
        with pytest.raises(ValidationError):
            await engine.assign("official-1", created.issue.id, "citizen-2", DEADLINE)


# ═══════════════════════════════════════════════════════════════════════════════
# JOIN
# ═══════════════════════════════════════════════════════════════════════════════

class TestJoin:
    async def test_join_adds_supporter(self, engine, store, actors):
        created = await engine.create_issue(issue_command())
        result = await engine.join("citizen-2", created.issue.id)
        assert result.joined
        assert result.issue.supporters == ["citizen-1", "citizen-2"]
        assert result.issue.supporter_count == 2
        assert store.get_actor("citizen-2").joined_others_count == 1

    async def test_join_is_idempotent(self, engine, store, actors):
        created = await engine.create_issue(issue_command())
        await engine.join("citizen-2", created.issue.id)
        again = await engine.join("citizen-2", created.issue.id)
        assert not again.joined
        stored = store.get_issue(created.issue.id)
        assert stored.supporter_count == 2
        assert stored.priority == "High"
        assert store.get_actor("citizen-2").joined_others_count == 1

    async def test_creator_join_is_noop(self, engine, store, actors):
        created = await engine.create_issue(issue_command())
        result = await engine.join("citizen-1", created.issue.id)
        assert not result.joined
        assert store.get_issue(created.issue.id).supporter_count == 1

    async def test_cannot_join_resolved(self, engine, actors):
        issue_id = await resolved(engine)
        with pytest.raises(ValidationError):
            await engine.join("citizen-2", issue_id)

    async def test_join_unknown_issue(self, engine, actors):
        with pytest.raises(NotFound):
            await engine.join("citizen-2", "missing-issue")

    async def test_escalation_past_five_supporters(self, engine, store, oracle, actors):
        oracle.priority = Priority.LOW
        created = await engine.create_issue(issue_command())
        for i in range(4):
            result = await engine.join(f"joiner-{i}", created.issue.id)
        assert result.issue.supporter_count == 5
        assert result.issue.priority == "Low"
        result = await engine.join("joiner-4", created.issue.id)
        assert result.issue.supporter_count == 6
        assert result.issue.priority == "Medium"
        result = await engine.join("joiner-5", created.issue.id)
        assert result.issue.priority == "High"
        result = await engine.join("joiner-6", created.issue.id)
        assert result.issue.priority == "High"

    async def test_concurrent_joins_are_all_counted(self, engine, store, oracle, actors):
        oracle.priority = Priority.LOW
        created = await engine.create_issue(issue_command())
        joiners = [f"crowd-{i}" for i in range(5)]
        results = await asyncio.gather(*(engine.join(j, created.issue.id) for j in joiners))
        assert all(r.joined for r in results)
        stored = store.get_issue(created.issue.id)
        assert stored.supporter_count == 6
        assert sorted(stored.supporters) == sorted(["citizen-1"] + joiners)
        assert stored.priority == "Medium"

    async def test_team_player_badge(self, engine, store, actors):
        issue_ids = [(await engine.create_issue(issue_command())).issue.id for _ in range(4)]
        earned = []
        for issue_id in issue_ids:
            earned.append((await engine.join("citizen-2", issue_id)).new_badges)
        assert earned == [[], [], [], ["team-player"]]
        assert "team-player" in store.get_actor("citizen-2").badges


# ═══════════════════════════════════════════════════════════════════════════════
# COMPLETION / APPROVAL
# ═══════════════════════════════════════════════════════════════════════════════

class TestCompletion:
    async def test_completion_moves_to_pending_approval(self, engine, actors):
        issue_id = await in_progress(engine)
        issue = await engine.submit_completion("staff-1", issue_id, AFTER_PHOTOS, "Filled with hot asphalt")
        assert issue.status == "Pending Approval"
        assert issue.completion_notes == "Filled with hot asphalt"
        assert issue.completion_image_urls == AFTER_PHOTOS
        assert issue.completion_analysis.is_satisfactory

    async def test_fraudulent_evidence_penalizes_staff(self, engine, store, oracle, actors):
        issue_id = await in_progress(engine)
        oracle.fraudulent = True
        with pytest.raises(RejectedFraudulent):
            await engine.submit_completion("staff-1", issue_id, AFTER_PHOTOS, "Done")
        issue = store.get_issue(issue_id)
        assert issue.status == "In Progress"
        assert issue.completion_notes is None
        assert issue.completion_analysis is None
        staff = store.get_actor("staff-1")
        assert staff.trust_points == 90
        assert staff.ai_image_warning_count == 1
        assert "compare_completion" not in oracle.calls

    async def test_fraud_penalty_rechecks_issue_state(self, engine, store, oracle, actors):
        issue_id = await in_progress(engine)

        def land_other_submission(uow):
            issue = uow.get_issue(issue_id)
            issue.status = "Pending Approval"
            uow.put_issue(issue)

        async def detector(images):
            # another submission commits while this one is being checked
            store.run_atomic(land_other_submission)
            return True
        oracle.detect_fraudulent_image = detector
        with pytest.raises(ValidationError):
            await engine.submit_completion("staff-1", issue_id, AFTER_PHOTOS, "Done")
        assert store.get_issue(issue_id).status == "Pending Approval"
        staff = store.get_actor("staff-1")
        assert (staff.trust_points, staff.ai_image_warning_count) == (100, 0)

    async def test_irrelevant_evidence_changes_nothing(self, engine, store, oracle, actors):
        issue_id = await in_progress(engine)
        oracle.severity = SeverityAssessment(is_relevant=False, rejection_reason="Blank wall")
        with pytest.raises(RejectedIrrelevant):
            await engine.submit_completion("staff-1", issue_id, AFTER_PHOTOS, "Done")
        assert store.get_issue(issue_id).status == "In Progress"
        staff = store.get_actor("staff-1")
        assert (staff.trust_points, staff.ai_image_warning_count) == (100, 0)

    async def test_only_assigned_staff(self, engine, actors):
        issue_id = await in_progress(engine)
        with pytest.raises(ValidationError):
            await engine.submit_completion("staff-2", issue_id, AFTER_PHOTOS, "Done")

    async def test_requires_images_and_notes(self, engine, actors):
        issue_id = await in_progress(engine)
        with pytest.raises(ValidationError):
            await engine.submit_completion("staff-1", issue_id, [], "Done")
        with pytest.raises(ValidationError):
            await engine.submit_completion("staff-1", issue_id, AFTER_PHOTOS, "   ")

    async def test_no_second_submission_while_pending(self, engine, actors):
        issue_id = await pending_approval(engine)
        with pytest.raises(ValidationError):
            await engine.submit_completion("staff-1", issue_id, AFTER_PHOTOS, "Again")

    async def test_comparison_failure_aborts(self, engine, store, oracle, actors):
        issue_id = await in_progress(engine)
        oracle.failing.add("compare_completion")
        with pytest.raises(OracleUnavailable):
            await engine.submit_completion("staff-1", issue_id, AFTER_PHOTOS, "Done")
        assert store.get_issue(issue_id).status == "In Progress"

    async def test_approve_rewards_staff(self, engine, store, oracle, actors):
        oracle.severity = SeverityAssessment(is_relevant=True, severity_score=6, reasoning="Moderate")
        issue_id = await pending_approval(engine)
        issue = await engine.approve("official-1", issue_id)
        assert issue.status == "Resolved"
        assert issue.rejection_reason is None
        staff = store.get_actor("staff-1")
        assert staff.efficiency_points == 6
        assert staff.trust_points == 100

    async def test_approve_requires_pending_approval(self, engine, actors):
        issue_id = await in_progress(engine)
        with pytest.raises(ValidationError):
            await engine.approve("official-1", issue_id)

    async def test_reject_and_resubmit(self, engine, store, actors):
        issue_id = await pending_approval(engine)
        issue = await engine.reject("official-1", issue_id, "Patch already cracking")
        assert issue.status == "In Progress"
        assert issue.rejection_reason == "Patch already cracking"
        assert store.get_actor("staff-1").trust_points == 95
        issue = await engine.submit_completion("staff-1", issue_id, AFTER_PHOTOS, "Re-laid properly")
        assert issue.status == "Pending Approval"
        assert issue.rejection_reason is None

    async def test_reject_requires_reason(self, engine, actors):
        issue_id = await pending_approval(engine)
        with pytest.raises(ValidationError):
            await engine.reject("official-1", issue_id, "  ")

    async def test_trust_never_leaves_bounds(self, engine, store, actors):
        issue_id = await pending_approval(engine)
        for _ in range(25):
            await engine.reject("official-1", issue_id, "Not good enough")
            await engine.submit_completion("staff-1", issue_id, AFTER_PHOTOS, "Tried again")
        assert store.get_actor("staff-1").trust_points == 0
        await engine.approve("official-1", issue_id)
        assert store.get_actor("staff-1").trust_points == 5

    async def test_completion_analysis_is_structured(self, engine, oracle, actors):
        oracle.completion = CompletionAnalysis(narrative="Looks partly done", is_satisfactory=False,
                                               summary="Partial repair")
        issue_id = await pending_approval(engine)
        issue = await engine.get_issue(issue_id)
        assert issue.completion_analysis.summary == "Partial repair"
        assert issue.completion_analysis.is_satisfactory is False


# ═══════════════════════════════════════════════════════════════════════════════
# FEEDBACK
# ═══════════════════════════════════════════════════════════════════════════════

class TestFeedback:
    async def test_supporter_feedback_adjusts_staff_trust(self, engine, store, actors):
        issue_id = await resolved(engine)
        assert await engine.submit_feedback("citizen-1", issue_id, 2, "Took too long")
        assert store.get_actor("staff-1").trust_points == 97
        assert store.get_issue(issue_id).feedback["citizen-1"].rating == 2

    async def test_feedback_once_per_actor(self, engine, store, actors):
        issue_id = await resolved(engine)
        assert await engine.submit_feedback("citizen-1", issue_id, 2)
        assert not await engine.submit_feedback("citizen-1", issue_id, 10)
        assert store.get_issue(issue_id).feedback["citizen-1"].rating == 2
        assert store.get_actor("staff-1").trust_points == 97

    async def test_non_supporter_is_ignored(self, engine, store, actors):
        issue_id = await resolved(engine)
        assert not await engine.submit_feedback("citizen-3", issue_id, 1)
        assert store.get_actor("staff-1").trust_points == 100

    async def test_only_when_resolved(self, engine, store, actors):
        issue_id = await pending_approval(engine)
        assert not await engine.submit_feedback("citizen-1", issue_id, 1)
        assert store.get_issue(issue_id).feedback == {}

    async def test_rating_range(self, engine, actors):
        issue_id = await resolved(engine)
        with pytest.raises(ValidationError):
            await engine.submit_feedback("citizen-1", issue_id, 11)


# ═══════════════════════════════════════════════════════════════════════════════
# SOCIAL
# ═══════════════════════════════════════════════════════════════════════════════

class TestSocial:
    async def test_like_toggles(self, engine, actors):
        created = await engine.create_issue(issue_command())
        assert await engine.toggle_like("citizen-2", created.issue.id) == (True, 1)
        assert await engine.toggle_like("citizen-3", created.issue.id) == (True, 2)
        assert await engine.toggle_like("citizen-2", created.issue.id) == (False, 1)

    async def test_comments_append(self, engine, store, actors):
        created = await engine.create_issue(issue_command())
        await engine.add_comment("citizen-2", created.issue.id, "Nearly fell in this morning")
        await engine.add_comment("staff-1", created.issue.id, "Crew scheduled for Tuesday")
        comments = store.get_issue(created.issue.id).comments
        assert [c.actor_id for c in comments] == ["citizen-2", "staff-1"]
        assert comments[1].actor_name == "Road Crew"

    async def test_empty_comment_rejected(self, engine, actors):
        created = await engine.create_issue(issue_command())
        with pytest.raises(ValidationError):
            await engine.add_comment("citizen-2", created.issue.id, "  ")


# ═══════════════════════════════════════════════════════════════════════════════
# VOICE
# ═══════════════════════════════════════════════════════════════════════════════

class TestVoiceCreate:
    def command(self, dtmf="unknown"):
        return VoiceCreateIssueCommand(caller_phone_number="+15550107788",
                                       audio_data_ref="https://api.twilio.com/rec/RE1.wav",
                                       dtmf_postal_code=dtmf)

    async def test_first_call_creates_voice_citizen(self, engine, store, oracle):
        result = await engine.create_voice_issue(self.command(), oracle.voice)
        issue = result.issue
        assert issue.is_voice_report
        assert issue.caller_number == "+15550107788"
        assert issue.creator_id == "voice_15550107788"
        assert issue.postal_code == "560001"
        assert issue.category == "Broken Streetlight"
        assert issue.image_urls == []
        assert issue.notes == "The streetlight outside the school is broken"
        assert result.estimated_days == 7
        assert result.new_badges == ["voice-reporter", "reporter-1"]
        citizen = store.get_actor("voice_15550107788")
        assert citizen.display_name == "Voice Caller 7788"
        assert citizen.utility_points == 6
        assert citizen.report_count == 1

    async def test_keypad_code_wins(self, engine, oracle):
        result = await engine.create_voice_issue(self.command(dtmf="751001"), oracle.voice)
        assert result.issue.postal_code == "751001"

    async def test_repeat_caller_reuses_profile(self, engine, store, oracle):
        await engine.create_voice_issue(self.command(), oracle.voice)
        result = await engine.create_voice_issue(self.command(), oracle.voice)
        assert result.new_badges == []
        assert store.get_actor("voice_15550107788").report_count == 2
        assert len(store.find_actors(role="citizen")) == 1

    async def test_concurrent_calls_from_one_number(self, engine, store, oracle):
        await asyncio.gather(*(engine.create_voice_issue(self.command(), oracle.voice) for _ in range(4)))
        citizens = store.find_actors(role="citizen")
        assert len(citizens) == 1
        assert citizens[0].report_count == 4
