# Reputation counters on actor profiles. Every call here must run inside a
# store unit of work so the read used for clamping and the write back land
# in the same transaction as the transition that caused them.

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from .errors import NotFound, ValidationError
from .models import ActorProfile, ActorRole
from .policy import VOICE_REPORTER, newly_unlocked_badges
from .store import UnitOfWork

logger = logging.getLogger(__name__)

TRUST_MIN, TRUST_MAX = 0, 100

# ---------------------------------------------------------------------------
# Penalties and rewards
# ---------------------------------------------------------------------------
IRRELEVANT_REPORT_PENALTY = -5
REPORT_TRUST_REWARD = 3
FRAUD_TRUST_PENALTY = -10
APPROVAL_TRUST_REWARD = 5
REJECTION_TRUST_PENALTY = -5
FEEDBACK_NEUTRAL_RATING = 5


class Counter(str, Enum):
    UTILITY_POINTS = "utility_points"
    TRUST_POINTS = "trust_points"
    REPORT_COUNT = "report_count"
    JOINED_OTHERS_COUNT = "joined_others_count"
    EFFICIENCY_POINTS = "efficiency_points"
    AI_IMAGE_WARNING_COUNT = "ai_image_warning_count"


ROLE_COUNTERS = {
    ActorRole.CITIZEN: {Counter.UTILITY_POINTS, Counter.TRUST_POINTS,
                        Counter.REPORT_COUNT, Counter.JOINED_OTHERS_COUNT},
    ActorRole.STAFF:   {Counter.TRUST_POINTS, Counter.EFFICIENCY_POINTS,
                        Counter.AI_IMAGE_WARNING_COUNT},
}


@dataclass(frozen=True)
class ActorRef:
    actor_id: str
    role: ActorRole


@dataclass(frozen=True)
class Clamp:
    """``bounded`` clamps into [low, high]; ``monotone`` refuses negative deltas."""
    kind: str
    low: Optional[int] = None
    high: Optional[int] = None

    def apply(self, current: int, delta: int) -> int:
        if self.kind == "bounded":
            return max(self.low, min(self.high, current + delta))
        if delta < 0:
            raise ValueError(f"monotone counter cannot decrease (delta={delta})")
        return current + delta


MONOTONE = Clamp("monotone")
TRUST_BOUNDS = Clamp("bounded", TRUST_MIN, TRUST_MAX)


def default_clamp(counter: Counter) -> Clamp:
    return TRUST_BOUNDS if counter == Counter.TRUST_POINTS else MONOTONE

# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------
def apply_delta(uow: UnitOfWork, actor_ref: ActorRef, counter: Counter, delta: int,
                clamp: Optional[Clamp] = None) -> int:
    """Read the counter, apply ``delta`` under ``clamp`` and stage the write. Returns the new value."""
    counter = Counter(counter)
    role = ActorRole(actor_ref.role)
    if counter not in ROLE_COUNTERS.get(role, set()):
        raise ValidationError(f"{role.value} profiles have no {counter.value} counter")
    profile = uow.get_actor(actor_ref.actor_id)
    if profile is None:
        raise NotFound(f"Actor {actor_ref.actor_id} not found")
    if profile.role != role.value:
        raise ValidationError(f"Actor {actor_ref.actor_id} is not a {role.value}")
    old = getattr(profile, counter.value)
    new = (clamp or default_clamp(counter)).apply(old, delta)
    if new != old:
        setattr(profile, counter.value, new)
        uow.put_actor(profile)
    logger.debug("Counter %s on %s: %s -> %s", counter.value, actor_ref.actor_id, old, new)
    return new


def award_badges(uow: UnitOfWork, actor_id: str, candidates: Optional[List[str]] = None) -> List[str]:
    """Append every newly satisfied badge to the profile; returns the ids just awarded."""
    profile = uow.get_actor(actor_id)
    if profile is None:
        raise NotFound(f"Actor {actor_id} not found")
    earned = newly_unlocked_badges(profile, candidates)
    if earned:
        profile.badges = profile.badges + earned
        uow.put_actor(profile)
        logger.info("Actor %s earned badges %s", actor_id, earned)
    return earned


def ensure_citizen(uow: UnitOfWork, actor_id: str, display_name: Optional[str] = None) -> ActorProfile:
    """Citizens are created implicitly on their first interaction."""
    profile = uow.get_actor(actor_id)
    if profile is None:
        profile = ActorProfile(id=actor_id, role=ActorRole.CITIZEN, display_name=display_name)
        uow.put_actor(profile)
        logger.info("Created citizen profile %s", actor_id)
    elif profile.role != ActorRole.CITIZEN.value:
        raise ValidationError(f"Actor {actor_id} is not a citizen")
    return profile


def voice_actor_id(phone_number: str) -> str:
    return "voice_" + "".join(ch for ch in phone_number if ch.isdigit())


def find_or_create_voice_citizen(uow: UnitOfWork, phone_number: str) -> Tuple[ActorProfile, bool]:
    """Resolve a caller to a citizen profile keyed by phone number.

    Runs inside the create unit of work; a concurrent call from the same
    number that also creates a profile will conflict on commit and retry,
    finding the profile the first one wrote.
    """
    profile = uow.find_actor_by_phone(phone_number)
    if profile is not None:
        if profile.role != ActorRole.CITIZEN.value:
            raise ValidationError(f"Phone {phone_number} belongs to a {profile.role} profile")
        return profile, False
    actor_id = voice_actor_id(phone_number)
    existing = uow.get_actor(actor_id)
    if existing is not None:
        return existing, False
    digits = actor_id[len("voice_"):]
    profile = ActorProfile(
        id=actor_id,
        role=ActorRole.CITIZEN,
        display_name=f"Voice Caller {digits[-4:]}",
        phone_number=phone_number,
        badges=[VOICE_REPORTER],
    )
    uow.put_actor(profile)
    logger.info("Created voice citizen profile %s", actor_id)
    return profile, True
