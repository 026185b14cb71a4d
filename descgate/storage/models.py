from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Type, TypeVar

M = TypeVar("M")


def _from_document(cls: Type[M], document: Dict[str, Any]) -> M:
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in document.items() if k in known})


@dataclass
class BlacklistEntry:
    fingerprint: str
    blacklisted_at: int
    expires_at: int
    subject_id: Optional[str] = None
    reason: str = "TOKEN_CONSUMED"
    issuing_node_id: Optional[str] = None

    def is_live(self, now_ms: int) -> bool:
        return self.expires_at > now_ms

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "BlacklistEntry":
        return _from_document(cls, document)


@dataclass
class DistributedLock:
    lock_id: str
    acquired_at: int
    expires_at: int
    holder_node_id: str
    nonce: str

    def is_live(self, now_ms: int) -> bool:
        return self.expires_at > now_ms

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "DistributedLock":
        return _from_document(cls, document)


@dataclass
class BehavioralObservation:
    subject_id: Optional[str]
    client_ip: Optional[str]
    timestamp: int
    credential_fingerprint_prefix: str
    risk_score: float
    risk_level: str
    factors: List[str] = field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "BehavioralObservation":
        return _from_document(cls, document)


@dataclass
class UserRecord:
    subject_id: str
    email: Optional[str] = None
    role: str = "user"
    subscription_tier: str = "free"
    monthly_usage: int = 0
    # None means unmetered (enterprise)
    max_usage: Optional[int] = 5
    billing_period: str = ""
    status: str = "active"
    created_at: int = 0
    last_active_at: int = 0
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    role_updated_at: Optional[int] = None

    @property
    def unmetered(self) -> bool:
        return self.max_usage is None

    def at_limit(self) -> bool:
        return not self.unmetered and self.monthly_usage >= self.max_usage

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "UserRecord":
        return _from_document(cls, document)


@dataclass
class RateLimitBucket:
    client_key: str
    timestamps: List[int] = field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "RateLimitBucket":
        return _from_document(cls, document)


@dataclass
class SecurityEvent:
    id: str
    timestamp: int
    level: str
    event_type: str
    subject_id: Optional[str] = None
    client_ip: Optional[str] = None
    endpoint: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "SecurityEvent":
        return _from_document(cls, document)
