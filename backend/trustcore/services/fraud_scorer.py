# Overview: Rule-based fraud scoring for checkouts.

"""
Fraud Scorer

Additive risk score from independent factors:
- Large amount (total above FRAUD_LARGE_AMOUNT_CENTS): +30
- Velocity (FRAUD_VELOCITY_THRESHOLD or more checkouts by the same employee
  in the trailing window): +40
- Unusual hour (store-local hour before 08:00 or after 22:59): +20

Score >= 70 blocks the checkout pending additional verification.
Score 30-69 is recorded on the transaction. Below 30 is unremarkable.

FAIL OPEN: an error while evaluating one factor is logged and that factor
is skipped. The scorer never blocks a checkout because it broke.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from trustcore.time_utils import utcnow


logger = logging.getLogger(__name__)


BLOCK_THRESHOLD = 70
REVIEW_THRESHOLD = 30

LARGE_AMOUNT_POINTS = 30
VELOCITY_POINTS = 40
UNUSUAL_HOUR_POINTS = 20

BUSINESS_HOURS_START = 8
BUSINESS_HOURS_END = 22

LEVEL_LOW = "low"
LEVEL_MEDIUM = "medium"
LEVEL_HIGH = "high"

# (actor_id, since) -> number of committed checkouts by the actor since then
VelocityCounter = Callable[[int, datetime], int]


@dataclass
class RiskAssessment:
    score: int = 0
    factors: list[str] = field(default_factory=list)

    @property
    def level(self) -> str:
        if self.score >= BLOCK_THRESHOLD:
            return LEVEL_HIGH
        if self.score >= REVIEW_THRESHOLD:
            return LEVEL_MEDIUM
        return LEVEL_LOW

    @property
    def requires_verification(self) -> bool:
        return self.score >= BLOCK_THRESHOLD

    def to_dict(self) -> dict:
        data = asdict(self)
        data["level"] = self.level
        return data


class FraudScorer:
    def __init__(
        self,
        velocity_counter: VelocityCounter,
        *,
        large_amount_cents: int = 100_000,
        velocity_threshold: int = 5,
        velocity_window: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ):
        self._velocity_counter = velocity_counter
        self.large_amount_cents = large_amount_cents
        self.velocity_threshold = velocity_threshold
        self.velocity_window = velocity_window
        self._clock = clock

    def score(self, *, employee_id: int, total_cents: int, store_timezone: str | None = None) -> RiskAssessment:
        assessment = RiskAssessment()
        now = self._clock()

        checks = (
            (self._large_amount, LARGE_AMOUNT_POINTS, "Large transaction amount"),
            (self._rapid_succession, VELOCITY_POINTS, "Rapid successive transactions"),
            (self._unusual_hour, UNUSUAL_HOUR_POINTS, "Transaction outside normal hours"),
        )
        context = {
            "employee_id": employee_id,
            "total_cents": total_cents,
            "store_timezone": store_timezone,
            "now": now,
        }
        for check, points, factor in checks:
            try:
                triggered = check(**context)
            except Exception:
                logger.exception("Fraud factor %r could not be evaluated; skipping", factor)
                continue
            if triggered:
                assessment.score += points
                assessment.factors.append(factor)

        if assessment.score >= REVIEW_THRESHOLD:
            logger.info(
                "Risk score %d for employee %s: %s",
                assessment.score, employee_id, ", ".join(assessment.factors),
            )
        return assessment

    def _large_amount(self, *, total_cents: int, **_) -> bool:
        return total_cents > self.large_amount_cents

    def _rapid_succession(self, *, employee_id: int, now: datetime, **_) -> bool:
        recent = self._velocity_counter(employee_id, now - self.velocity_window)
        return recent >= self.velocity_threshold

    def _unusual_hour(self, *, now: datetime, store_timezone: str | None, **_) -> bool:
        local = now
        if store_timezone:
            local = now.replace(tzinfo=ZoneInfo("UTC")).astimezone(ZoneInfo(store_timezone))
        return local.hour < BUSINESS_HOURS_START or local.hour > BUSINESS_HOURS_END
