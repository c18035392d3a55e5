"""Ordered trust chains: subject first, root last."""

from dataclasses import dataclass
from typing import List, Sequence, Union

from cryptography import x509

from ..common.errors import ValidationError
from ..common.models import CertificateRecord, Tier
from .pki import record_from_certificate

CertLike = Union[CertificateRecord, x509.Certificate]


def _as_record(cert: CertLike, tier: Tier) -> CertificateRecord:
    if isinstance(cert, CertificateRecord):
        return cert
    return record_from_certificate(cert, tier)


@dataclass(frozen=True)
class TrustChain:
    records: List[CertificateRecord]

    def pem(self) -> str:
        """PEM certificates concatenated in chain order."""
        return "".join(r.cert_pem if r.cert_pem.endswith("\n") else r.cert_pem + "\n" for r in self.records)

    def certificates(self) -> List[x509.Certificate]:
        return [x509.load_pem_x509_certificate(r.cert_pem.encode("ascii")) for r in self.records]

    @property
    def subject(self) -> CertificateRecord:
        return self.records[0]

    @property
    def root(self) -> CertificateRecord:
        return self.records[-1]

    def __len__(self) -> int:
        return len(self.records)


class ChainBuilder:
    """Concatenates a certificate with its issuers.

    Chains are strictly linear, so the only check is that each certificate's
    issuer names the next certificate's subject.
    """

    def build_chain(self, subject: CertLike, issuer_chain: Sequence[CertLike]) -> TrustChain:
        records = [_as_record(subject, Tier.LEAF)]
        last = len(issuer_chain) - 1
        for i, cert in enumerate(issuer_chain):
            records.append(_as_record(cert, Tier.ROOT if i == last else Tier.INTERMEDIATE))

        certs = TrustChain(records).certificates()
        for child, parent in zip(certs, certs[1:]):
            if child.issuer != parent.subject:
                raise ValidationError(
                    f"chain out of order: {child.subject.rfc4514_string()} is issued by "
                    f"{child.issuer.rfc4514_string()}, not {parent.subject.rfc4514_string()}"
                )
        return TrustChain(records)

    def ca_bundle(self, intermediate: CertLike, root: CertLike) -> TrustChain:
        """Intermediate followed by root, the distributable CA chain."""
        return self.build_chain(_as_record(intermediate, Tier.INTERMEDIATE), [_as_record(root, Tier.ROOT)])
