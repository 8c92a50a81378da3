from __future__ import annotations

import enum
import types
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

DEFAULT_KEY_ALGORITHM = "AES-256-GCM"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class AnonymizationTechnique(str, enum.Enum):
    """Identifiers that a FieldRule can bind to a field.

    ``K_ANONYMITY``, ``L_DIVERSITY`` and ``T_CLOSENESS`` are dataset-wide
    privacy requirements read by the risk assessor; they never transform a
    single value.
    """

    GENERALIZATION = "generalization"
    SUPPRESSION = "suppression"
    PERTURBATION = "perturbation"
    DATA_MASKING = "data_masking"
    SWAPPING = "swapping"
    K_ANONYMITY = "k_anonymity"
    L_DIVERSITY = "l_diversity"
    T_CLOSENESS = "t_closeness"


# Dataset-wide privacy requirements; the anonymizer passes over these rules.
REQUIREMENT_TECHNIQUES = frozenset(
    {
        AnonymizationTechnique.K_ANONYMITY,
        AnonymizationTechnique.L_DIVERSITY,
        AnonymizationTechnique.T_CLOSENESS,
    }
)


class PseudonymizationAlgorithm(str, enum.Enum):
    AES_256_GCM = "aes-256-gcm"  # reversible, non-deterministic
    HMAC_SHA256 = "hmac-sha256"  # one-way, deterministic


class TokenFormat(str, enum.Enum):
    UUID = "uuid"
    PREFIXED = "prefixed"
    FORMAT_PRESERVING = "format_preserving"


class AuditOperation(str, enum.Enum):
    ANONYMIZED = "anonymized"
    PSEUDONYMIZED = "pseudonymized"
    DEPSEUDONYMIZED = "depseudonymized"
    TOKENIZED = "tokenized"
    DETOKENIZED = "detokenized"
    KEY_ROTATED = "key_rotated"
    RISK_ASSESSED = "risk_assessed"


class EnforcementMode(str, enum.Enum):
    """How a calling pipeline reacts to a transformation failure.

    The engine itself always raises; this value is only carried in settings
    for the caller to consult.
    """

    BLOCK = "block"
    WARN = "warn"
    DISABLED = "disabled"


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldRule:
    """Binds one field to one technique and its parameters."""

    field_name: str
    technique: AnonymizationTechnique
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", types.MappingProxyType(dict(self.parameters)))

    @property
    def is_requirement(self) -> bool:
        return self.technique in REQUIREMENT_TECHNIQUES


@dataclass(frozen=True)
class Profile:
    """A named, ordered list of field rules. Immutable once constructed."""

    name: str
    field_rules: tuple[FieldRule, ...] = ()
    description: str | None = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        # Accept any iterable of rules but always keep an immutable tuple.
        object.__setattr__(self, "field_rules", tuple(self.field_rules))

    def rules_for(self, technique: AnonymizationTechnique) -> list[FieldRule]:
        return [rule for rule in self.field_rules if rule.technique == technique]


@dataclass
class AnonymizationResult:
    """Per-invocation summary; never persisted."""

    fields_seen: int = 0
    fields_transformed: int = 0
    fields_skipped: int = 0
    techniques_applied: dict[str, AnonymizationTechnique] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Keys and tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeyInfo:
    key_id: str
    algorithm: str
    created_at: datetime
    is_active: bool
    expires_at: datetime | None = None


@dataclass(frozen=True)
class TokenizationOptions:
    format: TokenFormat = TokenFormat.UUID
    prefix: str | None = None
    expires_in: timedelta | None = None


@dataclass(frozen=True)
class TokenMapping:
    token: str
    original_value_hash: str
    encrypted_original_value: bytes
    key_id: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditEntry:
    """A single append-only record of an engine operation."""

    operation: AuditOperation
    subject_id: str | None = None
    technique: str | None = None
    field_name: str | None = None
    key_id: str | None = None
    actor_id: str | None = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    timestamp: datetime = field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Risk assessment
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskThresholds:
    k: int = 5
    l: int = 3
    t: float = 0.15


@dataclass
class RiskAssessmentResult:
    k_anonymity: int
    l_diversity: int | None
    t_closeness: float | None
    re_identification_probability: float
    is_acceptable: bool
    assessed_at: datetime = field(default_factory=utcnow)
    recommendations: list[str] = field(default_factory=list)
