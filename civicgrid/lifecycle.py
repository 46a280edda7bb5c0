# Issue lifecycle state machine: every transition is one atomic unit of work.
#
#   Submitted -> In Progress -> Pending Approval -> Resolved
#                     ^                |
#                     +---- reject ----+

import asyncio
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from . import store as store_mod
from .config import now_utc
from .errors import NotFound, RejectedFraudulent, RejectedIrrelevant, ValidationError
from .ledger import (APPROVAL_TRUST_REWARD, FEEDBACK_NEUTRAL_RATING, FRAUD_TRUST_PENALTY,
                     IRRELEVANT_REPORT_PENALTY, REJECTION_TRUST_PENALTY, REPORT_TRUST_REWARD,
                     ActorRef, Counter, apply_delta, award_badges, ensure_citizen,
                     find_or_create_voice_citizen)
from .models import (PENDING_STATUSES, ActorProfile, ActorRole, Comment, CreateIssueCommand,
                     FeedbackEntry, Issue, IssueCategory, IssueStatus, VoiceAnalysis, VoiceCreateIssueCommand)
from .policy import (TEAM_PLAYER, VOICE_REPORTER, escalate_priority, estimate_resolution_days,
                     estimated_resolution_date, resolve_postal_code, staff_matches_category)
from .store import UnitOfWork

logger = logging.getLogger(__name__)

MAX_IMAGES = 5
MAX_COMMENT_CHARS = 2000

# Allowed status edges; anything else is rejected before a write is staged
TRANSITIONS = {
    IssueStatus.SUBMITTED.value: {IssueStatus.IN_PROGRESS.value},
    IssueStatus.IN_PROGRESS.value: {IssueStatus.PENDING_APPROVAL.value},
    IssueStatus.PENDING_APPROVAL.value: {IssueStatus.RESOLVED.value, IssueStatus.IN_PROGRESS.value},
    IssueStatus.RESOLVED.value: set(),
}


@dataclass
class CreateResult:
    issue: Issue
    estimated_days: int
    new_badges: List[str] = field(default_factory=list)


@dataclass
class JoinResult:
    issue: Issue
    joined: bool
    new_badges: List[str] = field(default_factory=list)

# ---------------------------------------------------------------------------
# Helpers (run inside a unit of work)
# ---------------------------------------------------------------------------
def _move(issue: Issue, target: IssueStatus) -> None:
    if target.value not in TRANSITIONS[issue.status]:
        raise ValidationError(f"Cannot move issue {issue.id} from {issue.status} to {target.value}")
    issue.status = target
    issue.updated_at = now_utc()


def _load_issue(uow: UnitOfWork, issue_id: str) -> Issue:
    issue = uow.get_issue(issue_id)
    if issue is None:
        raise NotFound(f"Issue {issue_id} not found")
    return issue


def _require_actor(uow: UnitOfWork, actor_id: str, role: ActorRole) -> ActorProfile:
    actor = uow.get_actor(actor_id)
    if actor is None:
        raise NotFound(f"Actor {actor_id} not found")
    if actor.role != role.value:
        raise ValidationError(f"Actor {actor_id} is not {role.value}")
    return actor


def _staff_ref(issue: Issue) -> ActorRef:
    if not issue.assigned_staff_id:
        raise ValidationError(f"Issue {issue.id} has no assigned staff")
    return ActorRef(issue.assigned_staff_id, ActorRole.STAFF)


def _reward_report(uow: UnitOfWork, actor_id: str, severity: int) -> List[str]:
    ref = ActorRef(actor_id, ActorRole.CITIZEN)
    apply_delta(uow, ref, Counter.UTILITY_POINTS, severity)
    apply_delta(uow, ref, Counter.REPORT_COUNT, 1)
    apply_delta(uow, ref, Counter.TRUST_POINTS, REPORT_TRUST_REWARD)
    return award_badges(uow, actor_id)


def _check_workable(issue: Issue, staff_id: str) -> None:
    """Completion evidence is only accepted from the assignee while work is in progress."""
    if issue.assigned_staff_id != staff_id:
        raise ValidationError(f"Issue {issue.id} is not assigned to {staff_id}")
    if issue.status != IssueStatus.IN_PROGRESS.value:
        raise ValidationError(f"Issue {issue.id} is {issue.status}, expected In Progress")


def _check_images(images: Sequence[str], what: str) -> List[str]:
    images = [i for i in images if i]
    if not images:
        raise ValidationError(f"At least one {what} image is required")
    if len(images) > MAX_IMAGES:
        raise ValidationError(f"At most {MAX_IMAGES} {what} images are allowed")
    return images

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------
class LifecycleEngine:
    """Validates and applies issue transitions.

    Oracle calls happen before the atomic unit; only the decision they produce
    is applied inside it, together with every counter change it triggers.
    Actor identity is always an explicit argument.
    """

    def __init__(self, store, oracle, executor: Optional[Executor] = None):
        self.store = store
        self.oracle = oracle
        self.executor = executor or store_mod.executor

    async def _atomic(self, fn):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, self.store.run_atomic, fn)

    async def _read(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, fn, *args)

    async def get_issue(self, issue_id: str) -> Issue:
        issue = await self._read(self.store.get_issue, issue_id)
        if issue is None:
            raise NotFound(f"Issue {issue_id} not found")
        return issue

    async def pending_count(self) -> int:
        return await self._read(self.store.count_issues, PENDING_STATUSES)

    async def _penalize_irrelevant(self, actor_id: str, reason: Optional[str]):
        def penalize(uow):
            ensure_citizen(uow, actor_id)
            return apply_delta(uow, ActorRef(actor_id, ActorRole.CITIZEN),
                               Counter.TRUST_POINTS, IRRELEVANT_REPORT_PENALTY)
        trust = await self._atomic(penalize)
        logger.info("Irrelevant report from %s rejected; trust now %d", actor_id, trust)
        raise RejectedIrrelevant(reason or "")

    # -- create --
    async def create_issue(self, cmd: CreateIssueCommand) -> CreateResult:
        images = _check_images(cmd.images, "evidence")
        if not (cmd.location and cmd.location.is_resolvable) and not cmd.address.strip():
            raise ValidationError("A location or address is required")
        existing = await self._read(self.store.get_actor, cmd.actor_id)
        if existing is not None and existing.role != ActorRole.CITIZEN.value:
            raise ValidationError("Only citizens can file issues")

        assessment = await self.oracle.classify_severity(images)
        if not assessment.is_relevant:
            await self._penalize_irrelevant(cmd.actor_id, assessment.rejection_reason)

        category = IssueCategory(cmd.category).value
        transcript = cmd.audio_transcript
        audio_url = cmd.audio_url
        if audio_url and audio_url.startswith("data:"):
            if not transcript:
                transcript = await self.oracle.transcribe_audio(audio_url)
            audio_url = None
        priority = await self.oracle.classify_priority(
            assessment.severity_score, category, cmd.notes, transcript)
        title = await self.oracle.generate_title(
            category, cmd.notes, transcript, assessment.reasoning)

        pending = await self.pending_count()
        now = now_utc()
        issue = Issue(
            creator_id=cmd.actor_id,
            title=title,
            category=category,
            notes=cmd.notes or "",
            transcript=transcript,
            image_urls=images,
            audio_url=audio_url,
            location=cmd.location,
            address=cmd.address,
            postal_code=cmd.postal_code,
            priority=priority,
            severity_score=assessment.severity_score,
            severity_reasoning=assessment.reasoning,
            submitted_at=now,
            updated_at=now,
            estimated_resolution_date=estimated_resolution_date(now, priority, pending),
            supporters=[cmd.actor_id],
            supporter_count=1,
        )

        def commit(uow):
            ensure_citizen(uow, cmd.actor_id)
            uow.put_issue(issue.model_copy(deep=True))
            return _reward_report(uow, cmd.actor_id, issue.severity_score)
        badges = await self._atomic(commit)
        logger.info("Issue %s created by %s (severity %d, %s)",
                    issue.id, cmd.actor_id, issue.severity_score, issue.priority)
        return CreateResult(await self.get_issue(issue.id),
                            estimate_resolution_days(priority, pending), badges)

    async def create_voice_issue(self, cmd: VoiceCreateIssueCommand,
                                 analysis: VoiceAnalysis) -> CreateResult:
        """Create from a phoned-in report whose classification was done upstream.

        The caller is resolved to a citizen profile by phone number inside the
        same unit of work that persists the issue.
        """
        if not cmd.caller_phone_number.strip():
            raise ValidationError("Caller phone number is required")
        pending = await self.pending_count()
        now = now_utc()
        audio_url = None if cmd.audio_data_ref.startswith("data:") else cmd.audio_data_ref
        draft = Issue(
            creator_id="",
            title=analysis.title,
            category=analysis.category,
            notes=analysis.transcript,
            transcript=analysis.transcript,
            audio_url=audio_url,
            address=analysis.address,
            postal_code=resolve_postal_code(cmd.dtmf_postal_code, analysis.postal_code),
            priority=analysis.priority,
            severity_score=analysis.severity_score,
            severity_reasoning=analysis.reasoning,
            submitted_at=now,
            updated_at=now,
            estimated_resolution_date=estimated_resolution_date(now, analysis.priority, pending),
            is_voice_report=True,
            caller_number=cmd.caller_phone_number,
        )

        def commit(uow) -> Tuple[str, List[str]]:
            profile, created = find_or_create_voice_citizen(uow, cmd.caller_phone_number)
            issue = draft.model_copy(deep=True)
            issue.creator_id = profile.id
            issue.supporters = [profile.id]
            uow.put_issue(issue)
            badges = _reward_report(uow, profile.id, issue.severity_score)
            if created:
                badges = [VOICE_REPORTER] + badges
            return profile.id, badges
        creator_id, badges = await self._atomic(commit)
        logger.info("Voice issue %s created for %s (postal code %s)",
                    draft.id, creator_id, draft.postal_code)
        return CreateResult(await self.get_issue(draft.id),
                            estimate_resolution_days(analysis.priority, pending), badges)

    # -- dispatch --
    async def assign(self, official_id: str, issue_id: str, staff_id: str,
                     deadline: Optional[datetime]) -> Issue:
        if deadline is None:
            raise ValidationError("A deadline is required")

        def commit(uow):
            _require_actor(uow, official_id, ActorRole.OFFICIAL)
            issue = _load_issue(uow, issue_id)
            if issue.status != IssueStatus.SUBMITTED.value:
                raise ValidationError(f"Issue {issue_id} is {issue.status}, expected Submitted")
            staff = uow.get_actor(staff_id)
            if staff is None:
                raise NotFound(f"Staff {staff_id} not found")
            if staff.role != ActorRole.STAFF.value:
                raise ValidationError(f"Actor {staff_id} is not staff")
            if not staff_matches_category(staff.department, issue.category):
                raise ValidationError(f"{staff.department} staff cannot handle {issue.category}")
            _move(issue, IssueStatus.IN_PROGRESS)
            issue.assigned_staff_id = staff.id
            issue.assigned_staff_name = staff.display_name or staff.username
            issue.deadline = deadline
            uow.put_issue(issue)
            return issue
        issue = await self._atomic(commit)
        logger.info("Issue %s assigned to %s by %s", issue_id, staff_id, official_id)
        return issue

    # -- support --
    async def join(self, actor_id: str, issue_id: str) -> JoinResult:
        def commit(uow):
            issue = _load_issue(uow, issue_id)
            if actor_id == issue.creator_id or actor_id in issue.supporters:
                return JoinResult(issue, False)
            if issue.status == IssueStatus.RESOLVED.value:
                raise ValidationError(f"Issue {issue_id} is already resolved")
            ensure_citizen(uow, actor_id)
            issue.supporters = issue.supporters + [actor_id]
            issue.supporter_count += 1
            issue.priority = escalate_priority(issue.priority, issue.supporter_count)
            issue.updated_at = now_utc()
            uow.put_issue(issue)
            apply_delta(uow, ActorRef(actor_id, ActorRole.CITIZEN), Counter.JOINED_OTHERS_COUNT, 1)
            return JoinResult(issue, True, award_badges(uow, actor_id, [TEAM_PLAYER]))
        result = await self._atomic(commit)
        if result.joined:
            logger.info("Actor %s joined issue %s (supporters %d, %s)", actor_id, issue_id,
                        result.issue.supporter_count, result.issue.priority)
        return result

    # -- completion workflow --
    async def submit_completion(self, staff_id: str, issue_id: str,
                                images: Sequence[str], notes: str) -> Issue:
        images = _check_images(images, "completion")
        if not (notes or "").strip():
            raise ValidationError("Completion notes are required")
        issue = await self.get_issue(issue_id)
        _check_workable(issue, staff_id)

        if await self.oracle.detect_fraudulent_image(images):
            def penalize(uow):
                _check_workable(_load_issue(uow, issue_id), staff_id)
                ref = ActorRef(staff_id, ActorRole.STAFF)
                trust = apply_delta(uow, ref, Counter.TRUST_POINTS, FRAUD_TRUST_PENALTY)
                apply_delta(uow, ref, Counter.AI_IMAGE_WARNING_COUNT, 1)
                return trust
            trust = await self._atomic(penalize)
            logger.warning("Fraudulent completion evidence from %s on issue %s; trust now %d",
                           staff_id, issue_id, trust)
            raise RejectedFraudulent()

        relevance = await self.oracle.classify_severity(images)
        if not relevance.is_relevant:
            logger.info("Irrelevant completion evidence from %s on issue %s", staff_id, issue_id)
            raise RejectedIrrelevant(relevance.rejection_reason or "")

        analysis = await self.oracle.compare_completion(
            issue.image_urls, issue.notes, issue.transcript, images, notes)

        def commit(uow):
            current = _load_issue(uow, issue_id)
            _check_workable(current, staff_id)
            _move(current, IssueStatus.PENDING_APPROVAL)
            current.completion_notes = notes.strip()
            current.completion_image_urls = images
            current.completion_analysis = analysis
            current.rejection_reason = None
            uow.put_issue(current)
            return current
        issue = await self._atomic(commit)
        logger.info("Completion submitted for issue %s by %s (satisfactory=%s)",
                    issue_id, staff_id, analysis.is_satisfactory)
        return issue

    async def approve(self, official_id: str, issue_id: str) -> Issue:
        def commit(uow):
            _require_actor(uow, official_id, ActorRole.OFFICIAL)
            issue = _load_issue(uow, issue_id)
            _move(issue, IssueStatus.RESOLVED)
            issue.rejection_reason = None
            uow.put_issue(issue)
            ref = _staff_ref(issue)
            apply_delta(uow, ref, Counter.EFFICIENCY_POINTS, issue.severity_score)
            apply_delta(uow, ref, Counter.TRUST_POINTS, APPROVAL_TRUST_REWARD)
            return issue
        issue = await self._atomic(commit)
        logger.info("Issue %s approved by %s; staff %s +%d efficiency",
                    issue_id, official_id, issue.assigned_staff_id, issue.severity_score)
        return issue

    async def reject(self, official_id: str, issue_id: str, reason: str) -> Issue:
        if not (reason or "").strip():
            raise ValidationError("A rejection reason is required")

        def commit(uow):
            _require_actor(uow, official_id, ActorRole.OFFICIAL)
            issue = _load_issue(uow, issue_id)
            if issue.status != IssueStatus.PENDING_APPROVAL.value:
                raise ValidationError(f"Issue {issue_id} is {issue.status}, expected Pending Approval")
            _move(issue, IssueStatus.IN_PROGRESS)
            issue.rejection_reason = reason.strip()
            uow.put_issue(issue)
            apply_delta(uow, _staff_ref(issue), Counter.TRUST_POINTS, REJECTION_TRUST_PENALTY)
            return issue
        issue = await self._atomic(commit)
        logger.info("Issue %s sent back to %s by %s", issue_id, issue.assigned_staff_id, official_id)
        return issue

    async def submit_feedback(self, actor_id: str, issue_id: str, rating: int,
                              comment: Optional[str] = None) -> bool:
        """Store one rating per supporter on a resolved issue. Returns False when not eligible."""
        if not isinstance(rating, int) or not 1 <= rating <= 10:
            raise ValidationError("Rating must be an integer from 1 to 10")
        entry = FeedbackEntry(rating=rating, comment=comment)

        def commit(uow):
            issue = _load_issue(uow, issue_id)
            if (issue.status != IssueStatus.RESOLVED.value
                    or actor_id not in issue.supporters
                    or actor_id in issue.feedback):
                return False
            issue.feedback = {**issue.feedback, actor_id: entry}
            issue.updated_at = now_utc()
            uow.put_issue(issue)
            if issue.assigned_staff_id:
                apply_delta(uow, _staff_ref(issue), Counter.TRUST_POINTS,
                            rating - FEEDBACK_NEUTRAL_RATING)
            return True
        stored = await self._atomic(commit)
        if stored:
            logger.info("Feedback %d from %s on issue %s", rating, actor_id, issue_id)
        else:
            logger.debug("Feedback from %s on issue %s ignored (not eligible)", actor_id, issue_id)
        return stored

    # -- social --
    async def toggle_like(self, actor_id: str, issue_id: str) -> Tuple[bool, int]:
        def commit(uow):
            issue = _load_issue(uow, issue_id)
            if actor_id in issue.likes:
                issue.likes = [a for a in issue.likes if a != actor_id]
                liked = False
            else:
                issue.likes = issue.likes + [actor_id]
                liked = True
            uow.put_issue(issue)
            return liked, len(issue.likes)
        liked, count = await self._atomic(commit)
        logger.info("Actor %s %s issue %s", actor_id, "liked" if liked else "unliked", issue_id)
        return liked, count

    async def add_comment(self, actor_id: str, issue_id: str, text: str) -> Comment:
        if not (text or "").strip():
            raise ValidationError("Comment text is required")
        if len(text.strip()) > MAX_COMMENT_CHARS:
            raise ValidationError(f"Comments are limited to {MAX_COMMENT_CHARS} characters")

        def commit(uow):
            issue = _load_issue(uow, issue_id)
            actor = uow.get_actor(actor_id)
            comment = Comment(actor_id=actor_id, text=text.strip(),
                              actor_name=(actor.display_name or actor.username) if actor else None)
            issue.comments = issue.comments + [comment]
            uow.put_issue(issue)
            return comment
        comment = await self._atomic(commit)
        logger.info("Comment added to issue %s by %s", issue_id, actor_id)
        return comment
