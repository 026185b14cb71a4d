from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from descgate.logging import get_logger
from descgate.service.clock import Clock, system_clock
from descgate.storage.common import OBSERVATIONS, DocumentStore
from descgate.storage.models import BehavioralObservation

logger = get_logger(__name__)

HISTORY_WINDOW_MS = 24 * 60 * 60 * 1000
HISTORY_LIMIT = 100
RECENT_WINDOW_MS = 5 * 60 * 1000
HIGH_FREQUENCY_THRESHOLD = 10
TIME_OF_DAY_TOLERANCE_MS = 60 * 60 * 1000
RARE_SHARE = 0.1
OBSERVATION_RETENTION_MS = 7 * 24 * 60 * 60 * 1000
# Attempts scored without a subject are kept apart from every subject history
UNKNOWN_SUBJECT_PARTITION = "_unknown"

FACTOR_WEIGHTS = {
    "NEW_IP_ADDRESS": 0.3,
    "NO_HISTORICAL_DATA": 0.2,
    "HIGH_FREQUENCY_REQUESTS": 0.4,
    "UNUSUAL_TIME_PATTERN": 0.2,
}

_DAY_MS = 24 * 60 * 60 * 1000

# Trust granted to an identity is the inverse of the assessed risk
_SECURITY_LEVEL_FOR_RISK = {"LOW": "HIGH", "MEDIUM": "MEDIUM", "HIGH": "LOW"}


@dataclass
class RiskAssessment:
    score: float
    level: str
    recommendation: str
    factors: List[str] = field(default_factory=list)
    analysis: Dict[str, Any] = field(default_factory=dict)

    @property
    def blocked(self) -> bool:
        return self.recommendation == "BLOCK"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": round(self.score, 3),
            "level": self.level,
            "recommendation": self.recommendation,
            "factors": list(self.factors),
        }


def classify_score(score: float) -> tuple[str, str]:
    if score >= 0.7:
        return "HIGH", "BLOCK"
    if score >= 0.4:
        return "MEDIUM", "MONITOR"
    return "LOW", "ALLOW"


def security_level_for(risk_level: Optional[str]) -> str:
    return _SECURITY_LEVEL_FOR_RISK.get(risk_level or "", "MEDIUM")


def _time_of_day_distance(a_ms: int, b_ms: int) -> int:
    delta = abs((a_ms % _DAY_MS) - (b_ms % _DAY_MS))
    return min(delta, _DAY_MS - delta)


class RiskScorer:
    """Scores a verification attempt against the subject's recent behaviour.

    History is the subject's observations from the last 24 hours (newest
    100). The attempt being scored is not part of its own history; it is
    persisted as a new observation once the assessment is made.
    """

    def __init__(self, store: DocumentStore, *, clock: Clock = system_clock) -> None:
        self.store = store
        self.clock = clock

    async def score(
        self,
        subject_id: Optional[str],
        client_ip: Optional[str],
        fingerprint_prefix: str = "",
    ) -> RiskAssessment:
        if not subject_id or not client_ip:
            assessment = RiskAssessment(
                score=0.5,
                level="MEDIUM",
                recommendation="MONITOR",
                factors=["INSUFFICIENT_DATA"],
            )
            try:
                await self._record(
                    subject_id, client_ip, self.clock.now_ms(), fingerprint_prefix, assessment
                )
            except Exception as exc:
                logger.error("risk_observation_failed", subject_id=subject_id, error=str(exc))
            return assessment
        try:
            return await self._score(subject_id, client_ip, fingerprint_prefix)
        except Exception as exc:
            logger.error(
                "risk_analysis_failed",
                subject_id=subject_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return RiskAssessment(
                score=0.8,
                level="HIGH",
                recommendation="BLOCK",
                factors=["ANALYSIS_ERROR"],
            )

    async def _score(
        self, subject_id: str, client_ip: str, fingerprint_prefix: str
    ) -> RiskAssessment:
        now_ms = self.clock.now_ms()
        history = await self.store.recent(
            OBSERVATIONS,
            partition=subject_id,
            since_ms=now_ms - HISTORY_WINDOW_MS,
            limit=HISTORY_LIMIT,
        )

        factors: List[str] = []
        ip_ratio = 0.0
        recent_count = sum(
            1 for obs in history if int(obs.get("timestamp", 0)) >= now_ms - RECENT_WINDOW_MS
        )

        if history:
            same_ip = sum(1 for obs in history if obs.get("client_ip") == client_ip)
            ip_ratio = same_ip / len(history)
            if ip_ratio < RARE_SHARE:
                factors.append("NEW_IP_ADDRESS")

            near_now = sum(
                1
                for obs in history
                if _time_of_day_distance(int(obs.get("timestamp", 0)), now_ms)
                <= TIME_OF_DAY_TOLERANCE_MS
            )
            if near_now / len(history) < RARE_SHARE:
                factors.append("UNUSUAL_TIME_PATTERN")
        else:
            factors.append("NO_HISTORICAL_DATA")

        if recent_count > HIGH_FREQUENCY_THRESHOLD:
            factors.append("HIGH_FREQUENCY_REQUESTS")

        score = min(1.0, max(0.0, sum(FACTOR_WEIGHTS[f] for f in factors)))
        level, recommendation = classify_score(score)
        assessment = RiskAssessment(
            score=score,
            level=level,
            recommendation=recommendation,
            factors=factors,
            analysis={
                "ipRatio": round(ip_ratio, 3),
                "recentRequestCount": recent_count,
                "historicalRequestCount": len(history),
            },
        )

        await self._record(subject_id, client_ip, now_ms, fingerprint_prefix, assessment)

        if recommendation != "ALLOW":
            logger.info(
                "risk_elevated",
                subject_id=subject_id,
                score=round(score, 3),
                level=level,
                factors=factors,
            )
        return assessment

    async def _record(
        self,
        subject_id: Optional[str],
        client_ip: Optional[str],
        now_ms: int,
        fingerprint_prefix: str,
        assessment: RiskAssessment,
    ) -> None:
        partition = subject_id or UNKNOWN_SUBJECT_PARTITION
        observation = BehavioralObservation(
            subject_id=subject_id,
            client_ip=client_ip,
            timestamp=now_ms,
            credential_fingerprint_prefix=f"{fingerprint_prefix[:8]}...",
            risk_score=round(assessment.score, 3),
            risk_level=assessment.level,
            factors=list(assessment.factors),
        )
        await self.store.append(OBSERVATIONS, observation.to_document(), partition=partition)
        await self.store.trim(
            OBSERVATIONS, partition=partition, before_ms=now_ms - OBSERVATION_RETENTION_MS
        )
