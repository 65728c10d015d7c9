import time
from typing import Optional, Tuple


VULNERABILITY_WEIGHT = 5
URGENCY_WEIGHT = 10
WAIT_TIME_WEIGHT = 0.1

HIGH_PRIORITY_THRESHOLD = 50

VULNERABILITY_SCORES = {
    "pregnant": 5,
    "elderly": 4,
    "child": 4,
    "disabled": 3,
    "adult": 1,
}

AID_TYPE_SCORES = {
    "life-saving-medicine": 5,
    "serious-injury": 4,
    "regular-medicine": 3,
    "food-water": 2,
    "shelter": 1,
}


def calculate_priority(vulnerability_score: int, urgency_score: int,
                       created_at: float, now: Optional[float] = None) -> float:
    """Score a request from its fixed attributes and how long it has waited.

    score = vulnerability * 5 + urgency * 10 + waiting_minutes * 0.1

    Waiting time is clamped at zero so a created_at slightly in the future
    (clock skew) never lowers the score. The result is rounded to two places.
    """
    if now is None:
        now = time.time()
    waiting_minutes = max(0.0, (now - created_at) / 60.0)

    score = (
        vulnerability_score * VULNERABILITY_WEIGHT
        + urgency_score * URGENCY_WEIGHT
        + waiting_minutes * WAIT_TIME_WEIGHT
    )
    return round(score, 2)


def get_vulnerability_score(category: str) -> int:
    return VULNERABILITY_SCORES.get(category.lower(), 1)


def get_urgency_score(aid_type: str) -> int:
    return AID_TYPE_SCORES.get(aid_type.lower(), 1)


def calculate_full_priority(category: str, aid_type: str, created_at: float,
                            now: Optional[float] = None) -> Tuple[int, int, float]:
    """Resolve both lookups and score them in one go."""
    vulnerability_score = get_vulnerability_score(category)
    urgency_score = get_urgency_score(aid_type)
    priority_score = calculate_priority(vulnerability_score, urgency_score, created_at, now)
    return vulnerability_score, urgency_score, priority_score
