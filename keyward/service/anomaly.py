from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional, Sequence

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.geo import GeoPoint, haversine_km
from keyward.storage.models import Session, utcnow

logger = get_logger(__name__)


class Decision(str, Enum):
    ALLOW = "allow"
    STEP_UP = "step_up"
    DENY = "deny"


@dataclass
class LoginAttempt:
    user_id: str
    ip_address: Optional[str] = None
    device_fingerprint: Optional[str] = None
    geo: Optional[GeoPoint] = None
    recent_failures: int = 0
    at: datetime = field(default_factory=utcnow)


@dataclass
class Assessment:
    score: int
    decision: Decision
    factors: Dict[str, int] = field(default_factory=dict)
    details: Dict[str, object] = field(default_factory=dict)

    def to_details(self) -> Dict[str, object]:
        return {
            "score": self.score,
            "decision": self.decision.value,
            "factors": dict(self.factors),
            **self.details,
        }


class AnomalyGate:
    """Scores a login attempt against the user's recent sessions.

    Every factor weight is non-negative and the thresholds are fixed, so adding
    a factor can only keep or raise the severity of the decision.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        is_ip_blocked: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.settings = settings
        self._is_ip_blocked = is_ip_blocked or (lambda ip: False)
        self.weights = {
            "new_ip": max(0, settings.anomaly_weight_new_ip),
            "new_device": max(0, settings.anomaly_weight_new_device),
            "new_country": max(0, settings.anomaly_weight_new_country),
            "impossible_travel": max(0, settings.anomaly_weight_impossible_travel),
            "recent_failures": max(0, settings.anomaly_weight_per_failure),
        }

    def decide(self, score: int) -> Decision:
        if score >= self.settings.anomaly_deny_threshold:
            return Decision.DENY
        if score >= self.settings.anomaly_step_up_threshold:
            return Decision.STEP_UP
        return Decision.ALLOW

    def _travel(self, attempt: LoginAttempt, history: Sequence[Session]) -> Optional[Dict[str, float]]:
        if attempt.geo is None or not attempt.geo.has_coordinates:
            return None
        located = [s for s in history if s.latitude is not None and s.longitude is not None]
        if not located:
            return None
        latest = max(located, key=lambda s: s.last_seen_at)
        distance = haversine_km(
            latest.latitude, latest.longitude, attempt.geo.latitude, attempt.geo.longitude
        )
        # Floor the interval at one minute so back-to-back logins stay finite
        hours = max((attempt.at - latest.last_seen_at).total_seconds(), 60.0) / 3600.0
        return {"distance_km": round(distance, 1), "speed_kmh": round(distance / hours, 1)}

    def assess(self, attempt: LoginAttempt, history: Sequence[Session]) -> Assessment:
        if attempt.ip_address and self._is_ip_blocked(attempt.ip_address):
            assessment = Assessment(
                score=self.settings.anomaly_deny_threshold,
                decision=Decision.DENY,
                factors={"blocked_ip": self.settings.anomaly_deny_threshold},
            )
            logger.warning("anomaly_blocked_ip", user_id=attempt.user_id)
            return assessment

        factors: Dict[str, int] = {}
        details: Dict[str, object] = {}
        # Users without history have nothing to be novel against
        if history:
            known_ips = {s.ip_addr for s in history if s.ip_addr}
            if attempt.ip_address and attempt.ip_address not in known_ips:
                factors["new_ip"] = self.weights["new_ip"]
            known_devices = {s.device_fingerprint for s in history if s.device_fingerprint}
            if attempt.device_fingerprint and attempt.device_fingerprint not in known_devices:
                factors["new_device"] = self.weights["new_device"]
            known_countries = {s.country for s in history if s.country}
            country = attempt.geo.country if attempt.geo else None
            if country and known_countries and country not in known_countries:
                factors["new_country"] = self.weights["new_country"]
                details["country"] = country
            travel = self._travel(attempt, history)
            if travel is not None:
                details["travel"] = travel
                if travel["speed_kmh"] > self.settings.anomaly_max_travel_kmh:
                    factors["impossible_travel"] = self.weights["impossible_travel"]

        failures = min(max(0, attempt.recent_failures), self.settings.anomaly_failure_cap)
        if failures:
            factors["recent_failures"] = failures * self.weights["recent_failures"]
            details["recent_failures"] = attempt.recent_failures

        score = sum(factors.values())
        decision = self.decide(score)
        if attempt.recent_failures >= self.settings.lockout_threshold:
            decision = Decision.DENY
        if decision is Decision.DENY:
            details["block_candidate"] = attempt.ip_address
        assessment = Assessment(score=score, decision=decision, factors=factors, details=details)
        logger.info(
            "anomaly_scored",
            user_id=attempt.user_id,
            score=score,
            decision=decision.value,
            factors=list(factors),
        )
        return assessment

