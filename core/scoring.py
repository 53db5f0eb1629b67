"""
Match-Quality Scorer
Weighted 0-100 score of how well an identity can be matched by the
attribution API, plus the API's own 1-10 scale and improvement hints.
"""
import math
from typing import List

from pydantic import BaseModel, Field

from core.identity import IdentityRecord

# Field weights; the raw sum can exceed 100 and is clamped
FIELD_WEIGHTS = {
    "email": 30,
    "phone": 25,
    "external_id": 15,
    "click_id": 12,
    "browser_id": 8,
    "first_name": 5,
    "last_name": 5,
    "date_of_birth": 4,
    "gender": 2,
    "city": 3,
    "state": 2,
    "zip": 3,
    "country": 2,
    "client_ip": 4,
    "client_user_agent": 3,
    "subscription_id": 3,
    "login_id": 10,
    "lead_id": 5,
}

TIERS = (
    (81, "excellent"),
    (61, "great"),
    (41, "good"),
    (21, "fair"),
)


class ScoreResult(BaseModel):
    """Full scoring breakdown for one identity"""
    score: int = Field(..., ge=0, le=100)
    external_scale: int = Field(..., ge=1, le=10)
    meets_target: bool
    tier: str
    fields_present: List[str]
    fields_missing: List[str]
    recommendations: List[str]


def to_external_scale(score: int) -> int:
    """0-100 -> 1-10 (0-10 is 1, 71-80 is 8, 91-100 is 10)"""
    return max(1, min(10, math.ceil(score / 10)))


def score_tier(score: int) -> str:
    for threshold, label in TIERS:
        if score >= threshold:
            return label
    return "poor"


class MatchQualityScorer:
    """
    Score identity records

    Pure and deterministic: the same record always gets the same result.
    """

    def __init__(self, target_scale: int = 8):
        self.target_scale = target_scale

    def quick_score(self, identity: IdentityRecord) -> int:
        total = sum(w for field, w in FIELD_WEIGHTS.items() if identity.has(field))
        return min(total, 100)

    def meets_target(self, score: int) -> bool:
        return to_external_scale(score) >= self.target_scale

    def score(self, identity: IdentityRecord) -> ScoreResult:
        present = [f for f in FIELD_WEIGHTS if identity.has(f)]
        missing = [f for f in FIELD_WEIGHTS if f not in present]
        score = min(sum(FIELD_WEIGHTS[f] for f in present), 100)

        return ScoreResult(
            score=score,
            external_scale=to_external_scale(score),
            meets_target=self.meets_target(score),
            tier=score_tier(score),
            fields_present=present,
            fields_missing=missing,
            recommendations=self.recommendations(present, score),
        )

    def recommendations(self, present: List[str], score: int) -> List[str]:
        recs = []

        if "email" not in present and "phone" not in present:
            recs.append("Add email (em) or phone (ph); these are the strongest matching signals.")
        elif "email" not in present:
            recs.append("Add email (em) to significantly improve match rate.")
        elif "phone" not in present:
            recs.append("Add phone number (ph) for additional matching.")

        if "click_id" not in present and "browser_id" not in present:
            recs.append("Capture the _fbp and _fbc cookies (browser and click identifiers).")

        if "external_id" not in present and score < 60:
            recs.append("Add external_id for consistent cross-session matching.")

        if "first_name" not in present and "last_name" not in present and score < 50:
            recs.append("Add first name (fn) and last name (ln) to improve matching accuracy.")

        if "country" not in present and "zip" not in present and score < 40:
            recs.append("Add country or zip code for geographic matching.")

        if "client_ip" not in present:
            recs.append("Ensure client_ip_address is set from the original request.")

        if not recs and score >= 80:
            recs.append("Match quality is excellent. No changes needed.")

        return recs
