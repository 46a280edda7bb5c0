# Escalation, dispatch and achievement rules. Pure functions only.

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .models import ActorProfile, Department, IssueCategory, Priority

# ---------------------------------------------------------------------------
# Priority escalation
# ---------------------------------------------------------------------------
PRIORITY_ORDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH]
ESCALATION_SUPPORTER_THRESHOLD = 5


def escalate_priority(priority, supporter_count: int,
                      threshold: int = ESCALATION_SUPPORTER_THRESHOLD) -> Priority:
    """One step up once the new supporter count passes the threshold; saturates at High."""
    current = Priority(priority)
    if supporter_count <= threshold:
        return current
    idx = PRIORITY_ORDER.index(current)
    return PRIORITY_ORDER[min(idx + 1, len(PRIORITY_ORDER) - 1)]

# ---------------------------------------------------------------------------
# Resolution-time estimate
# ---------------------------------------------------------------------------
BASE_RESOLUTION_DAYS = {Priority.HIGH: 3, Priority.MEDIUM: 7, Priority.LOW: 14}


def estimate_resolution_days(priority, pending_count: int) -> int:
    priority = Priority(priority)
    adjustment = max(0, pending_count) // 10
    if priority == Priority.HIGH:
        adjustment //= 2
    return BASE_RESOLUTION_DAYS[priority] + adjustment


def estimated_resolution_date(submitted_at: datetime, priority, pending_count: int) -> datetime:
    return submitted_at + timedelta(days=estimate_resolution_days(priority, pending_count))

# ---------------------------------------------------------------------------
# Dispatch eligibility (category -> departments)
# ---------------------------------------------------------------------------
CATEGORY_DEPARTMENTS = {
    IssueCategory.POTHOLE:             [Department.PUBLIC_WORKS, Department.ROADS_AND_HIGHWAYS],
    IssueCategory.GRAFFITI:            [Department.PUBLIC_WORKS, Department.CODE_ENFORCEMENT],
    IssueCategory.WASTE_MANAGEMENT:    [Department.SANITATION],
    IssueCategory.BROKEN_STREETLIGHT:  [Department.PUBLIC_WORKS, Department.TRAFFIC_AND_SIGNALS],
    IssueCategory.SAFETY_HAZARD:       [Department.PUBLIC_WORKS, Department.CODE_ENFORCEMENT,
                                        Department.WATER_DEPARTMENT, Department.PARKS_AND_RECREATION],
    IssueCategory.TREE_MAINTENANCE:    [Department.PARKS_AND_RECREATION],
    IssueCategory.ANIMAL_CONTROL:      [Department.ANIMAL_CONTROL],
    IssueCategory.TRAFFIC_AND_SIGNALS: [Department.TRAFFIC_AND_SIGNALS],
    IssueCategory.OTHER:               [Department.OTHER],
}


def eligible_departments(category) -> List[Department]:
    try:
        return CATEGORY_DEPARTMENTS[IssueCategory(category)]
    except ValueError:
        return [Department.OTHER]


def staff_matches_category(department, category) -> bool:
    if department is None:
        return False
    department = Department(department)
    return department == Department.OTHER or department in eligible_departments(category)

# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Badge:
    id: str
    title: str
    description: str
    unlocked: Callable[[ActorProfile], bool]


VOICE_REPORTER = "voice-reporter"
TEAM_PLAYER = "team-player"
TEAM_PLAYER_JOINS = 4

BADGES = [
    Badge("reporter-1", "First Report", "Filed a first civic report.",
          lambda p: p.report_count >= 1),
    Badge("reporter-10", "Neighbourhood Watch", "Filed 10 civic reports.",
          lambda p: p.report_count >= 10),
    Badge("reporter-50", "Civic Sentinel", "Filed 50 civic reports.",
          lambda p: p.report_count >= 50),
    Badge("reporter-100", "City Guardian", "Filed 100 civic reports.",
          lambda p: p.report_count >= 100),
    Badge(TEAM_PLAYER, "Team Player", "Joined 4 reports filed by other citizens.",
          lambda p: p.joined_others_count >= TEAM_PLAYER_JOINS),
    # granted when a profile is created from a phone call, never by predicate
    Badge(VOICE_REPORTER, "Voice Reporter", "Reported an issue over the phone.",
          lambda p: False),
]

BADGES_BY_ID = {b.id: b for b in BADGES}


def newly_unlocked_badges(profile: ActorProfile, candidates: Optional[List[str]] = None) -> List[str]:
    """Badge ids whose predicate now holds and which the profile does not hold yet."""
    pool = BADGES if candidates is None else [BADGES_BY_ID[c] for c in candidates]
    return [b.id for b in pool if b.id not in profile.badges and b.unlocked(profile)]

# ---------------------------------------------------------------------------
# Voice intake postal code
# ---------------------------------------------------------------------------
DEFAULT_POSTAL_CODE = "000000"


def resolve_postal_code(dtmf: Optional[str], spoken: Optional[str]) -> str:
    """Keypad digits win, then a code heard in the recording, then the placeholder."""
    if dtmf and dtmf.strip() and dtmf.strip().lower() != "unknown":
        return dtmf.strip()
    if spoken and spoken.strip():
        return spoken.strip()
    return DEFAULT_POSTAL_CODE
