"""
Quota lookup and security anomaly logging.

Account management lives outside the hosting core. The deploy pipeline
only asks an ``AuthorizationOracle`` how many applications a caller owns
and how many they may own.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol
import logging

from .store import APPLICATIONS, RecordStore

anomaly_logger = logging.getLogger("hostcore.security.anomaly")


class AnomalyType(str, Enum):
    """Types of security anomalies."""
    BLOCKED_COMMAND = "blocked_command"
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID_REFERENCE = "invalid_reference"


class UserTier(str, Enum):
    """User tier levels with different application limits."""
    FREE = "free"
    VIP = "vip"
    ADMIN = "admin"


TIER_MAX_APPS = {
    UserTier.FREE: 3,
    UserTier.VIP: 10,
    UserTier.ADMIN: 100,
}


@dataclass
class QuotaUsage:
    app_count: int
    max_apps: int

    @property
    def exceeded(self) -> bool:
        """True when no further application may be deployed."""
        return self.app_count >= self.max_apps

    def to_dict(self) -> dict:
        return {"app_count": self.app_count, "max_apps": self.max_apps, "exceeded": self.exceeded}


class AuthorizationOracle(Protocol):
    def get_usage(self, caller_id: str) -> QuotaUsage: ...


@dataclass
class UserProfile:
    """User profile with an application limit."""
    user_id: str
    tier: UserTier = UserTier.FREE
    max_applications: int = 3
    blocked: bool = False
    reason: Optional[str] = None

    @classmethod
    def from_tier(cls, user_id: str, tier: UserTier) -> "UserProfile":
        """Create profile with tier-based defaults."""
        return cls(user_id=user_id, tier=tier, max_applications=TIER_MAX_APPS.get(tier, 3))

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "tier": self.tier.value,
            "max_applications": self.max_applications,
            "blocked": self.blocked,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserProfile":
        tier = UserTier(data.get("tier", "free"))
        return cls(
            user_id=data.get("user_id", "unknown"),
            tier=tier,
            max_applications=data.get("max_applications", TIER_MAX_APPS[tier]),
            blocked=data.get("blocked", False),
            reason=data.get("reason"),
        )


class StoreQuotaOracle:
    """Counts a caller's applications in the record store."""

    def __init__(self, store: RecordStore, default_max_apps: int = 3):
        self.store = store
        self.default_max_apps = default_max_apps
        self._profiles: Dict[str, UserProfile] = {}
        self._lock = Lock()

    def set_user_profile(self, profile: UserProfile) -> None:
        with self._lock:
            self._profiles[profile.user_id] = profile

    def get_user_profile(self, user_id: str) -> UserProfile:
        with self._lock:
            profile = self._profiles.get(user_id)
        if profile is None:
            profile = UserProfile(user_id=user_id, max_applications=self.default_max_apps)
        return profile

    def get_usage(self, caller_id: str) -> QuotaUsage:
        profile = self.get_user_profile(caller_id)
        count = self.store.count(APPLICATIONS, {"owner": caller_id})
        max_apps = 0 if profile.blocked else profile.max_applications
        return QuotaUsage(app_count=count, max_apps=max_apps)


@dataclass
class AnomalyEvent:
    """Record of a security anomaly."""
    timestamp: datetime
    anomaly_type: AnomalyType
    user_id: Optional[str]
    app_name: Optional[str]
    details: str
    severity: str  # "low", "medium", "high", "critical"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "anomaly_type": self.anomaly_type.value,
            "user_id": self.user_id,
            "app_name": self.app_name,
            "details": self.details,
            "severity": self.severity,
            "metadata": self.metadata,
        }

    def to_log_line(self) -> str:
        return (
            f"[{self.severity.upper()}] {self.anomaly_type.value} | "
            f"user={self.user_id} app={self.app_name} | {self.details}"
        )


class AnomalyLogger:
    """Logs security anomalies for admin review."""

    def __init__(self, log_path: Optional[Path] = None, max_events: int = 10000):
        self.log_path = Path(log_path) if log_path else None
        self.max_events = max_events
        self._events: List[AnomalyEvent] = []
        self._lock = Lock()

    def log(
        self,
        anomaly_type: AnomalyType,
        details: str,
        user_id: Optional[str] = None,
        app_name: Optional[str] = None,
        severity: str = "medium",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AnomalyEvent:
        """Log an anomaly event."""
        event = AnomalyEvent(
            timestamp=datetime.now(UTC),
            anomaly_type=anomaly_type,
            user_id=user_id,
            app_name=app_name,
            details=details,
            severity=severity,
            metadata=metadata or {},
        )

        with self._lock:
            self._events.append(event)
            if len(self._events) > self.max_events:
                self._events = self._events[-self.max_events:]

        if self.log_path:
            try:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.log_path, "a") as f:
                    f.write(json.dumps(event.to_dict()) + "\n")
            except OSError as e:
                anomaly_logger.error(f"Failed to write anomaly log: {e}")

        log_level = {
            "low": logging.DEBUG,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL,
        }.get(severity, logging.WARNING)
        anomaly_logger.log(log_level, event.to_log_line())

        return event

    def get_recent(self, count: int = 100) -> List[AnomalyEvent]:
        with self._lock:
            return self._events[-count:]

    def get_by_type(self, anomaly_type: AnomalyType, count: int = 100) -> List[AnomalyEvent]:
        with self._lock:
            return [e for e in self._events if e.anomaly_type == anomaly_type][-count:]
