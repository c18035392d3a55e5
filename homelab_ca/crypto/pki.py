"""X.509 certificate loading, inspection and chain checks.

This module provides:
- load_certificate(): load the first certificate of a PEM file
- record_from_certificate(): describe a parsed certificate as a CertificateRecord
- CertificateInspector: subject, issuer, validity, SANs, fingerprint and
  days-to-expiry for any stored certificate (read-only)
- classify_expiry(): map days remaining to an ExpiryStatus band
- verify_chain(): check a certificate is signed by each issuer in order

Expiry bands:
1. days < 0: expired
2. 0 <= days < 30: critical
3. 30 <= days < 90: warning
4. days >= 90: healthy
"""

import math
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..common.errors import SigningError
from ..common.models import (
    CertificateRecord,
    ExpiryStatus,
    ExtensionProfile,
    InspectionReport,
    Tier,
)
from ..common.utils import fingerprint, utc_now

SECONDS_PER_DAY = 86400
CRITICAL_DAYS = 30
WARNING_DAYS = 90

_EKU_NAMES = {
    ExtendedKeyUsageOID.SERVER_AUTH: "serverAuth",
    ExtendedKeyUsageOID.CLIENT_AUTH: "clientAuth",
}


def load_certificate(path: Union[str, Path]) -> x509.Certificate:
    """Load an X.509 certificate from a PEM file (the first one if several)."""
    with open(path, "rb") as f:
        return x509.load_pem_x509_certificate(f.read())


def load_certificates(path: Union[str, Path]) -> List[x509.Certificate]:
    """Load every certificate of a PEM bundle, in file order."""
    with open(path, "rb") as f:
        return x509.load_pem_x509_certificates(f.read())


def to_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def get_common_name(name: x509.Name) -> Optional[str]:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return attrs[0].value if attrs else None


def get_san_dns_names(cert: x509.Certificate) -> List[str]:
    """DNS names from the SAN extension in certificate order (empty if missing)."""
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return san.value.get_values_for_type(x509.DNSName)


def is_ca_certificate(cert: x509.Certificate) -> bool:
    try:
        bc = cert.extensions.get_extension_for_class(x509.BasicConstraints)
    except x509.ExtensionNotFound:
        return False
    return bc.value.ca is True


def is_self_signed(cert: x509.Certificate) -> bool:
    if cert.issuer != cert.subject:
        return False
    try:
        cert.verify_directly_issued_by(cert)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def extension_profile_of(cert: x509.Certificate) -> ExtensionProfile:
    """Read back the extension profile a certificate was signed with."""
    exts = cert.extensions
    fields = {"ca": False, "subject_key_identifier": False, "authority_key_identifier": False}

    try:
        bc = exts.get_extension_for_class(x509.BasicConstraints)
        fields.update(ca=bc.value.ca, path_length=bc.value.path_length,
                      basic_constraints_critical=bc.critical)
    except x509.ExtensionNotFound:
        pass

    try:
        ku = exts.get_extension_for_class(x509.KeyUsage)
        fields.update(
            digital_signature=ku.value.digital_signature,
            content_commitment=ku.value.content_commitment,
            key_encipherment=ku.value.key_encipherment,
            key_cert_sign=ku.value.key_cert_sign,
            crl_sign=ku.value.crl_sign,
            key_usage_critical=ku.critical,
        )
    except x509.ExtensionNotFound:
        pass

    try:
        eku = exts.get_extension_for_class(x509.ExtendedKeyUsage)
        fields["extended_key_usage"] = tuple(
            _EKU_NAMES.get(oid, oid.dotted_string) for oid in eku.value
        )
    except x509.ExtensionNotFound:
        pass

    for ext_class, key in ((x509.SubjectKeyIdentifier, "subject_key_identifier"),
                           (x509.AuthorityKeyIdentifier, "authority_key_identifier")):
        try:
            exts.get_extension_for_class(ext_class)
            fields[key] = True
        except x509.ExtensionNotFound:
            pass

    fields["dns_names"] = tuple(get_san_dns_names(cert))
    return ExtensionProfile(**fields)


def record_from_certificate(cert: x509.Certificate, tier: Tier) -> CertificateRecord:
    subject = get_common_name(cert.subject) or cert.subject.rfc4514_string()
    issuer = None
    if not is_self_signed(cert):
        issuer = get_common_name(cert.issuer) or cert.issuer.rfc4514_string()
    return CertificateRecord(
        serial=cert.serial_number,
        tier=tier,
        subject_name=subject,
        issuer_name=issuer,
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        subject_alt_names=get_san_dns_names(cert),
        extension_profile=extension_profile_of(cert),
        cert_pem=to_pem(cert),
    )


def classify_expiry(days_remaining: int) -> ExpiryStatus:
    if days_remaining < 0:
        return ExpiryStatus.EXPIRED
    if days_remaining < CRITICAL_DAYS:
        return ExpiryStatus.CRITICAL
    if days_remaining < WARNING_DAYS:
        return ExpiryStatus.WARNING
    return ExpiryStatus.HEALTHY


def days_remaining(not_after: datetime, now: Optional[datetime] = None) -> int:
    """floor((not_after - now) / 86400s); negative once expired."""
    now = now or datetime.now(timezone.utc)
    return math.floor((not_after - now).total_seconds() / SECONDS_PER_DAY)


class CertificateInspector:
    """Read-only reporting on stored certificates."""

    def inspect(
        self,
        cert: Union[x509.Certificate, CertificateRecord, str, Path],
        now: Optional[datetime] = None,
    ) -> InspectionReport:
        cert = self._coerce(cert)
        remaining = days_remaining(cert.not_valid_after_utc, now)
        return InspectionReport(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            serial=cert.serial_number,
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            san_list=get_san_dns_names(cert),
            sha256_fingerprint=fingerprint(cert.public_bytes(serialization.Encoding.DER)),
            days_remaining=remaining,
            status=classify_expiry(remaining),
            is_ca=is_ca_certificate(cert),
        )

    def inspect_file(self, path: Union[str, Path], now: Optional[datetime] = None) -> InspectionReport:
        return self.inspect(load_certificate(path), now)

    @staticmethod
    def _coerce(cert) -> x509.Certificate:
        if isinstance(cert, x509.Certificate):
            return cert
        if isinstance(cert, CertificateRecord):
            return x509.load_pem_x509_certificate(cert.cert_pem.encode("ascii"))
        return load_certificate(cert)


def describe(report: InspectionReport) -> str:
    """Multi-line human readable summary, as printed by `list` and `init`."""
    if report.status is ExpiryStatus.EXPIRED:
        status = f"EXPIRED ({-report.days_remaining} days ago)"
    elif report.status is ExpiryStatus.CRITICAL:
        status = f"CRITICAL - Expires in {report.days_remaining} days"
    elif report.status is ExpiryStatus.WARNING:
        status = f"WARNING - Expires in {report.days_remaining} days"
    else:
        status = f"Valid ({report.days_remaining} days remaining)"
    lines = [
        f"Subject:      {report.subject}",
        f"Issuer:       {report.issuer}",
        f"Serial:       {report.serial}",
        f"Valid From:   {report.not_before:%Y-%m-%d %H:%M:%S} UTC",
        f"Valid Until:  {report.not_after:%Y-%m-%d %H:%M:%S} UTC",
        f"Status:       {status}",
        f"Fingerprint:  {report.sha256_fingerprint}",
    ]
    if report.san_list:
        lines.append(f"DNS Names:    {', '.join(report.san_list)}")
    return "\n".join(lines)


def verify_chain(cert: x509.Certificate, issuers: Sequence[x509.Certificate], now: Optional[datetime] = None) -> None:
    """Check `cert` chains through `issuers` (nearest first) to a self-signed root.

    Each certificate must be directly issued by the next one, every issuer
    must be a CA, the last one must be self-signed, and all must be inside
    their validity window. Raises SigningError(stage="verify chain").
    """
    now = now or utc_now()
    chain = [cert, *issuers]
    if len(chain) < 2 and not is_self_signed(cert):
        raise SigningError("verify chain", "no issuer certificates supplied")

    for child, parent in zip(chain, chain[1:]):
        if not is_ca_certificate(parent):
            raise SigningError("verify chain", f"{parent.subject.rfc4514_string()} is not a CA")
        try:
            child.verify_directly_issued_by(parent)
        except (ValueError, TypeError, InvalidSignature) as e:
            raise SigningError(
                "verify chain",
                f"{child.subject.rfc4514_string()} is not issued by {parent.subject.rfc4514_string()}: {e}",
            ) from e

    if not is_self_signed(chain[-1]):
        raise SigningError("verify chain", f"chain does not end at a root: {chain[-1].subject.rfc4514_string()}")

    for c in chain:
        if not (c.not_valid_before_utc <= now <= c.not_valid_after_utc):
            raise SigningError(
                "verify chain",
                f"{c.subject.rfc4514_string()} outside validity window "
                f"{c.not_valid_before_utc} to {c.not_valid_after_utc}",
            )
