"""Idempotency gate for the root and intermediate CAs.

A tier is PRESENT when both its certificate and a matching private key are
on disk, ABSENT when neither is, and INCONSISTENT otherwise. Initialization
issues a tier only when it is ABSENT; an existing CA is never rotated.

The check and the write that follows it happen under the tier's TierLock,
so two concurrent `init` runs cannot both see ABSENT.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from ..common.errors import SigningError, StateInconsistencyError
from ..common.models import GuardResult, GuardState, Tier
from ..crypto.keys import KeyPair, KeyStore, Passphrase
from ..crypto.pki import load_certificate, record_from_certificate
from .files import TierLock
from .layout import PKILayout

logger = logging.getLogger(__name__)


def _public_der(key) -> bytes:
    return key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


class HierarchyGuard:

    def __init__(self, layout: PKILayout, key_store: Optional[KeyStore] = None):
        self.layout = layout
        self.key_store = key_store or KeyStore()

    def check_existing(self, tier: Tier, passphrase: Passphrase = None) -> GuardResult:
        """Inspect storage for the tier's certificate and key.

        When the key can be opened (always for the intermediate, for the root
        only with its passphrase) it must match the certificate's public key.
        """
        cert_path = self.layout.cert_path(tier)
        key_path = self.layout.key_path(tier)
        has_cert, has_key = cert_path.is_file(), key_path.is_file()

        if not has_cert and not has_key:
            return GuardResult(tier=tier, state=GuardState.ABSENT)
        if has_cert != has_key:
            missing = key_path if has_cert else cert_path
            present = cert_path if has_cert else key_path
            return GuardResult(
                tier=tier,
                state=GuardState.INCONSISTENT,
                problem=f"{present} exists but {missing} is missing",
            )

        try:
            cert = load_certificate(cert_path)
        except ValueError as e:
            return GuardResult(
                tier=tier, state=GuardState.INCONSISTENT, problem=f"{cert_path} is not a PEM certificate: {e}"
            )

        if tier is Tier.INTERMEDIATE or passphrase:
            problem = self._key_mismatch(cert, key_path, passphrase)
            if problem:
                return GuardResult(tier=tier, state=GuardState.INCONSISTENT, problem=problem)

        return GuardResult(tier=tier, state=GuardState.PRESENT, record=record_from_certificate(cert, tier))

    @staticmethod
    def matches(cert: x509.Certificate, key_pair: KeyPair) -> bool:
        return _public_der(key_pair.public_key) == _public_der(cert.public_key())

    def _key_mismatch(self, cert: x509.Certificate, key_path, passphrase: Passphrase) -> Optional[str]:
        try:
            key_pair = self.key_store.load(key_path, passphrase)
        except SigningError as e:
            return str(e)
        if not self.matches(cert, key_pair):
            return f"{key_path} does not match the certificate's public key"
        return None

    def lock(self, tier: Tier) -> TierLock:
        return TierLock(self.layout.tier_dir(tier))

    @contextmanager
    def guarded(self, tier: Tier, passphrase: Passphrase = None) -> Iterator[GuardResult]:
        """Hold the tier lock across the existence check and the caller's write.

        Raises StateInconsistencyError when the tier is half present; the
        caller reports it and skips the tier.
        """
        with self.lock(tier):
            result = self.check_existing(tier, passphrase)
            if result.state is GuardState.INCONSISTENT:
                raise StateInconsistencyError(f"{tier.value} CA is in an inconsistent state: {result.problem}")
            yield result
