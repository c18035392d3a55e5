"""Pydantic models for CA state: profiles, records, ledger entries, reports.

These are the canonical shapes passed between the issuer, the storage layer
and the CLI. All of them are immutable once built.
"""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator
from pydantic.config import ConfigDict


class Model(BaseModel):
    """Base class for all CA value types."""
    model_config = ConfigDict(
        frozen=True,
        extra='forbid',
        str_strip_whitespace=True,
    )


class Tier(str, Enum):
    ROOT = "root"
    INTERMEDIATE = "intermediate"
    LEAF = "leaf"


class ExtensionProfile(Model):
    """X.509 v3 extensions applied when signing a certificate of one tier."""
    ca: bool
    path_length: Optional[int] = None
    basic_constraints_critical: bool = True
    digital_signature: bool = True
    content_commitment: bool = False  # nonRepudiation
    key_encipherment: bool = False
    key_cert_sign: bool = False
    crl_sign: bool = False
    key_usage_critical: bool = True
    extended_key_usage: Tuple[str, ...] = ()
    subject_key_identifier: bool = True
    authority_key_identifier: bool = True
    dns_names: Tuple[str, ...] = ()

    @classmethod
    def root_ca(cls) -> "ExtensionProfile":
        return cls(ca=True, key_cert_sign=True, crl_sign=True)

    @classmethod
    def intermediate_ca(cls) -> "ExtensionProfile":
        # pathlen:0, the intermediate may only sign leaves
        return cls(ca=True, path_length=0, key_cert_sign=True, crl_sign=True)

    @classmethod
    def server(cls, dns_names) -> "ExtensionProfile":
        return cls(
            ca=False,
            basic_constraints_critical=False,
            content_commitment=True,
            key_encipherment=True,
            key_usage_critical=False,
            extended_key_usage=("serverAuth",),
            dns_names=tuple(dns_names),
        )


class CAProfile(Model):
    """Distinguished name, key size and lifetime for one certificate."""
    tier: Tier
    common_name: str = Field(..., min_length=1, max_length=64)
    organization: Optional[str] = None
    country: Optional[str] = None
    state: Optional[str] = None
    locality: Optional[str] = None
    email: Optional[str] = None
    key_size: int = 2048
    validity_days: int = Field(..., gt=0)

    @field_validator("country")
    @classmethod
    def _two_letter_country(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v != "" and len(v) != 2:
            raise ValueError("country must be a two-letter code")
        return v or None

    @field_validator("organization", "state", "locality", "email")
    @classmethod
    def _empty_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @property
    def extension_profile(self) -> ExtensionProfile:
        if self.tier is Tier.ROOT:
            return ExtensionProfile.root_ca()
        if self.tier is Tier.INTERMEDIATE:
            return ExtensionProfile.intermediate_ca()
        return ExtensionProfile.server(())


class CertificateRecord(Model):
    """An issued certificate as stored on disk."""
    serial: int
    tier: Tier
    subject_name: str
    # None for a self-signed root
    issuer_name: Optional[str] = None
    not_before: datetime
    not_after: datetime
    subject_alt_names: List[str] = Field(default_factory=list)
    extension_profile: ExtensionProfile
    cert_pem: str

    @property
    def self_signed(self) -> bool:
        return self.issuer_name is None


class LedgerEntry(Model):
    serial: int
    subject_name: str
    issued_at: datetime
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    # revocation is not supported, entries are always "valid"
    status: Literal["valid", "revoked-unsupported"] = "valid"


class ExpiryStatus(str, Enum):
    EXPIRED = "expired"
    CRITICAL = "critical"
    WARNING = "warning"
    HEALTHY = "healthy"


class InspectionReport(Model):
    subject: str
    issuer: str
    serial: int
    not_before: datetime
    not_after: datetime
    san_list: List[str] = Field(default_factory=list)
    sha256_fingerprint: str
    days_remaining: int
    status: ExpiryStatus
    is_ca: bool = False


class GuardState(str, Enum):
    ABSENT = "absent"
    PRESENT = "present"
    INCONSISTENT = "inconsistent"


class GuardResult(Model):
    tier: Tier
    state: GuardState
    record: Optional[CertificateRecord] = None
    problem: Optional[str] = None
