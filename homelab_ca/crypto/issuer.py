"""Certificate signing for the three CA tiers.

Every issuance walks the same states:

    CONFIGURING -> KEY_GENERATED -> REQUEST_BUILT -> SIGNED

- root: self-signed with its own fresh (passphrase protected) key
- intermediate: CSR signed by the root, basicConstraints pathlen:0
- leaf: CSR with CN and DNS SANs signed by the intermediate, serverAuth

Serial numbers come from the issuing CA's SerialLedger and each signature
is recorded there. Nothing here writes certificates or keys to disk; the
CertificateAuthority persists the returned IssuedCertificate.
"""

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Iterable, List, Optional, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..common.errors import ConfigurationError, SigningError, ValidationError
from ..common.models import CAProfile, CertificateRecord, ExtensionProfile, LedgerEntry, Tier
from ..common.utils import utc_now
from ..storage.ledger import SerialLedger
from .keys import KeyPair, KeyStore, Passphrase
from .pki import record_from_certificate

logger = logging.getLogger(__name__)

MAX_COMMON_NAME = 64
MAX_DNS_NAME = 253
_DNS_LABEL = r"[A-Za-z0-9_](?:[A-Za-z0-9_-]{0,61}[A-Za-z0-9_])?"
_DNS_NAME_RE = re.compile(rf"^(?:\*\.)?(?:{_DNS_LABEL}\.)*{_DNS_LABEL}$")

_EKU_OIDS = {
    "serverAuth": ExtendedKeyUsageOID.SERVER_AUTH,
    "clientAuth": ExtendedKeyUsageOID.CLIENT_AUTH,
}


class IssuanceState(str, Enum):
    CONFIGURING = "configuring"
    KEY_GENERATED = "key_generated"
    REQUEST_BUILT = "request_built"
    SIGNED = "signed"


_ORDER = list(IssuanceState)


@dataclass
class Signer:
    """An issuing CA: its certificate, private key and serial ledger."""
    tier: Tier
    certificate: x509.Certificate
    key_pair: KeyPair
    ledger: SerialLedger


@dataclass
class IssuedCertificate:
    tier: Tier
    certificate: x509.Certificate
    key_pair: KeyPair
    record: CertificateRecord
    ledger_entry: LedgerEntry
    csr: Optional[x509.CertificateSigningRequest] = None


class Issuance:
    """Tracks one issuance through its states."""

    def __init__(self, tier: Tier, subject: str):
        self.tier = tier
        self.subject = subject
        self.state = IssuanceState.CONFIGURING

    def advance(self, state: IssuanceState) -> None:
        if _ORDER.index(state) != _ORDER.index(self.state) + 1:
            raise RuntimeError(f"cannot move {self.tier.value} issuance from {self.state.value} to {state.value}")
        logger.debug("%s %r: %s -> %s", self.tier.value, self.subject, self.state.value, state.value)
        self.state = state

    def fail(self, stage: str, error: Exception) -> SigningError:
        return SigningError(stage, str(error) or type(error).__name__, subject=self.subject)


def validate_common_name(common_name: Optional[str]) -> str:
    cn = (common_name or "").strip()
    if not cn:
        raise ValidationError("Common name required for server certificate")
    if len(cn) > MAX_COMMON_NAME:
        raise ValidationError(f"Common name {cn!r} is longer than {MAX_COMMON_NAME} characters")
    if "/" in cn or "\\" in cn or cn in (".", ".."):
        raise ValidationError(f"Common name {cn!r} may not contain path separators")
    return cn


def parse_dns_names(raw: Union[str, Iterable[str], None]) -> List[str]:
    """Split a comma-separated DNS list, trim entries, drop blanks and repeats.

    Order is preserved. Raises ValidationError on a malformed name or when no
    name is left.
    """
    if raw is None:
        parts: Iterable[str] = []
    elif isinstance(raw, str):
        parts = raw.split(",")
    else:
        parts = raw

    names: List[str] = []
    for part in parts:
        name = part.strip()
        if not name:
            continue
        if len(name) > MAX_DNS_NAME or not _DNS_NAME_RE.match(name):
            raise ValidationError(f"Invalid DNS name {name!r}")
        if name in names:
            logger.debug("dropping repeated DNS name %s", name)
            continue
        names.append(name)

    if not names:
        raise ValidationError("At least one DNS name is required for the subjectAltName")
    return names


def build_name(profile: CAProfile) -> x509.Name:
    attrs = []
    if profile.country:
        attrs.append(x509.NameAttribute(NameOID.COUNTRY_NAME, profile.country))
    if profile.state:
        attrs.append(x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, profile.state))
    if profile.locality:
        attrs.append(x509.NameAttribute(NameOID.LOCALITY_NAME, profile.locality))
    if profile.organization:
        attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, profile.organization))
    attrs.append(x509.NameAttribute(NameOID.COMMON_NAME, profile.common_name))
    if profile.email:
        attrs.append(x509.NameAttribute(NameOID.EMAIL_ADDRESS, profile.email))
    return x509.Name(attrs)


def _authority_key_identifier(issuer_cert: Optional[x509.Certificate], issuer_public_key) -> x509.AuthorityKeyIdentifier:
    if issuer_cert is not None:
        try:
            ski = issuer_cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)
            return x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ski.value)
        except x509.ExtensionNotFound:
            pass
    return x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_public_key)


def apply_extensions(
    builder: x509.CertificateBuilder,
    profile: ExtensionProfile,
    subject_public_key,
    issuer_public_key,
    issuer_cert: Optional[x509.Certificate] = None,
) -> x509.CertificateBuilder:
    """Add the extensions described by `profile` to a certificate builder."""
    builder = builder.add_extension(
        x509.BasicConstraints(ca=profile.ca, path_length=profile.path_length if profile.ca else None),
        critical=profile.basic_constraints_critical,
    )
    builder = builder.add_extension(
        x509.KeyUsage(
            digital_signature=profile.digital_signature,
            content_commitment=profile.content_commitment,
            key_encipherment=profile.key_encipherment,
            data_encipherment=False,
            key_agreement=False,
            key_cert_sign=profile.key_cert_sign,
            crl_sign=profile.crl_sign,
            encipher_only=False,
            decipher_only=False,
        ),
        critical=profile.key_usage_critical,
    )
    if profile.extended_key_usage:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([_EKU_OIDS[name] for name in profile.extended_key_usage]),
            critical=False,
        )
    if profile.dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(n) for n in profile.dns_names]),
            critical=False,
        )
    if profile.subject_key_identifier:
        builder = builder.add_extension(
            x509.SubjectKeyIdentifier.from_public_key(subject_public_key), critical=False
        )
    if profile.authority_key_identifier:
        builder = builder.add_extension(
            _authority_key_identifier(issuer_cert, issuer_public_key), critical=False
        )
    return builder


class CertificateIssuer:
    """Signs root, intermediate and leaf certificates."""

    def __init__(self, key_store: Optional[KeyStore] = None, enforce_issuer_validity: bool = False):
        self.key_store = key_store or KeyStore()
        self.enforce_issuer_validity = enforce_issuer_validity

    def issue_root(self, profile: CAProfile, passphrase: Passphrase, ledger: SerialLedger) -> IssuedCertificate:
        """Self-signed root CA; the key must be passphrase protected."""
        if profile.tier is not Tier.ROOT:
            raise ConfigurationError(f"profile for {profile.common_name!r} is not a root profile")
        if not passphrase:
            raise ConfigurationError("The root CA private key requires a passphrase")

        issuance = Issuance(Tier.ROOT, profile.common_name)
        key_pair = self.key_store.generate_key_pair(profile.key_size, passphrase)
        issuance.advance(IssuanceState.KEY_GENERATED)

        name = build_name(profile)
        now = utc_now()
        serial = ledger.next_serial()
        builder = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key_pair.public_key)
            .serial_number(serial)
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=profile.validity_days))
        )
        builder = apply_extensions(
            builder, ExtensionProfile.root_ca(), key_pair.public_key, key_pair.public_key
        )
        issuance.advance(IssuanceState.REQUEST_BUILT)

        cert = self._sign(issuance, builder, key_pair)
        return self._finish(issuance, cert, key_pair, ledger, now)

    def issue_intermediate(self, profile: CAProfile, root: Signer) -> IssuedCertificate:
        """Intermediate CA signed by the root, restricted to pathlen:0."""
        if profile.tier is not Tier.INTERMEDIATE:
            raise ConfigurationError(f"profile for {profile.common_name!r} is not an intermediate profile")

        issuance = Issuance(Tier.INTERMEDIATE, profile.common_name)
        # unencrypted so cert-manager can sign with it unattended
        logger.warning("Intermediate CA key is generated WITHOUT passphrase for cert-manager compatibility")
        key_pair = self.key_store.generate_key_pair(profile.key_size)
        issuance.advance(IssuanceState.KEY_GENERATED)

        csr = self._build_request(issuance, key_pair, build_name(profile), ())
        issuance.advance(IssuanceState.REQUEST_BUILT)

        return self._sign_request(
            issuance, csr, key_pair, root, profile.validity_days, ExtensionProfile.intermediate_ca()
        )

    def issue_leaf(
        self,
        common_name: str,
        dns_names: Union[str, Iterable[str]],
        key_size: int,
        validity_days: int,
        intermediate: Signer,
    ) -> IssuedCertificate:
        """Server certificate signed by the intermediate."""
        cn = validate_common_name(common_name)
        names = parse_dns_names(dns_names)

        issuance = Issuance(Tier.LEAF, cn)
        key_pair = self.key_store.generate_key_pair(key_size)
        issuance.advance(IssuanceState.KEY_GENERATED)

        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
        csr = self._build_request(issuance, key_pair, subject, names)
        issuance.advance(IssuanceState.REQUEST_BUILT)

        return self._sign_request(
            issuance, csr, key_pair, intermediate, validity_days, ExtensionProfile.server(names)
        )

    def _build_request(self, issuance: Issuance, key_pair: KeyPair, subject: x509.Name, dns_names) -> x509.CertificateSigningRequest:
        builder = x509.CertificateSigningRequestBuilder().subject_name(subject)
        if dns_names:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]), critical=False
            )
        try:
            return builder.sign(key_pair.private_key, hashes.SHA256())
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise issuance.fail("build request", e) from e

    def _sign_request(
        self,
        issuance: Issuance,
        csr: x509.CertificateSigningRequest,
        key_pair: KeyPair,
        signer: Signer,
        validity_days: int,
        profile: ExtensionProfile,
    ) -> IssuedCertificate:
        if not csr.is_signature_valid:
            raise issuance.fail("verify request", InvalidSignature("request signature does not verify"))

        now = utc_now()
        not_after = now + timedelta(days=validity_days)
        self._check_issuer_window(issuance, not_after, signer.certificate)

        serial = signer.ledger.next_serial()
        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(signer.certificate.subject)
            .public_key(csr.public_key())
            .serial_number(serial)
            .not_valid_before(now)
            .not_valid_after(not_after)
        )
        builder = apply_extensions(
            builder,
            profile,
            csr.public_key(),
            signer.key_pair.public_key,
            issuer_cert=signer.certificate,
        )
        cert = self._sign(issuance, builder, signer.key_pair)
        # nothing reaches the ledger unless the issuer certificate vouches for it
        try:
            cert.verify_directly_issued_by(signer.certificate)
        except (ValueError, TypeError, InvalidSignature) as e:
            raise issuance.fail("verify chain", e) from e
        issued = self._finish(issuance, cert, key_pair, signer.ledger, now)
        issued.csr = csr
        return issued

    def _check_issuer_window(self, issuance: Issuance, not_after, issuer_cert: x509.Certificate) -> None:
        issuer_end = issuer_cert.not_valid_after_utc
        if not_after <= issuer_end:
            return
        message = (
            f"{issuance.tier.value} certificate for {issuance.subject!r} would expire "
            f"{not_after:%Y-%m-%d} after its issuer ({issuer_end:%Y-%m-%d})"
        )
        if self.enforce_issuer_validity and issuance.tier is Tier.LEAF:
            raise ValidationError(message)
        logger.warning(message)

    def _sign(self, issuance: Issuance, builder: x509.CertificateBuilder, key_pair: KeyPair) -> x509.Certificate:
        try:
            cert = builder.sign(private_key=key_pair.private_key, algorithm=hashes.SHA256())
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise issuance.fail("sign certificate", e) from e
        issuance.advance(IssuanceState.SIGNED)
        return cert

    def _finish(self, issuance: Issuance, cert: x509.Certificate, key_pair: KeyPair, ledger: SerialLedger, issued_at) -> IssuedCertificate:
        entry = ledger.record(
            cert.serial_number,
            issuance.subject,
            issued_at,
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
        )
        return IssuedCertificate(
            tier=issuance.tier,
            certificate=cert,
            key_pair=key_pair,
            record=record_from_certificate(cert, issuance.tier),
            ledger_entry=entry,
        )
