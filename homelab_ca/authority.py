"""Certificate authority operations: init, server issuance, export, listing.

    PKIConfig -> HierarchyGuard -> CertificateIssuer (root)
              -> CertificateIssuer (intermediate, signed by root)
              -> ChainBuilder (ca-chain.crt) -> ExportAdapter

Leaf issuance uses the intermediate as signer and its SerialLedger for
numbering, then writes the leaf's full chain next to it.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .common.config import PKIConfig
from .common.errors import StateInconsistencyError
from .common.models import CertificateRecord, GuardState, InspectionReport, Tier
from .crypto.chain import ChainBuilder, TrustChain
from .crypto.issuer import (
    CertificateIssuer,
    IssuedCertificate,
    Signer,
    parse_dns_names,
    validate_common_name,
)
from .crypto.keys import KeyStore, Passphrase
from .crypto.pki import CertificateInspector, load_certificate, record_from_certificate, to_pem, verify_chain
from .export import ExportAdapter, ExportBundle
from .storage.files import atomic_write
from .storage.guard import HierarchyGuard
from .storage.layout import LEAF_CERT, LEAF_CSR, LEAF_FULLCHAIN, LEAF_KEY, PKILayout
from .storage.ledger import SerialLedger
from .storage.registry import LeafEntry, LeafRegistry

logger = logging.getLogger(__name__)

CERT_MODE = 0o644

# a passphrase, or a callable asked for one; its argument says whether the
# passphrase is being chosen (True) or only entered (False)
PassphraseSource = Union[Passphrase, Callable[[bool], Passphrase]]


@dataclass
class TierOutcome:
    tier: Tier
    action: str  # created, existing or skipped
    record: Optional[CertificateRecord] = None
    problem: Optional[str] = None


@dataclass
class InitResult:
    root: TierOutcome
    intermediate: TierOutcome
    chain_path: Optional[Path] = None
    export: Optional[ExportBundle] = None


@dataclass
class LeafResult:
    record: CertificateRecord
    entry: LeafEntry
    chain: TrustChain
    paths: Dict[str, Path] = field(default_factory=dict)


class CertificateAuthority:
    """Root, intermediate and leaf issuance for one configured PKI."""

    def __init__(self, config: PKIConfig, root_passphrase: PassphraseSource = None):
        self.config = config
        self.layout = PKILayout(config.directories)
        self.key_store = KeyStore()
        self.issuer = CertificateIssuer(
            self.key_store, enforce_issuer_validity=config.server_cert.enforce_issuer_validity
        )
        self.chain_builder = ChainBuilder()
        self.inspector = CertificateInspector()
        self.guard = HierarchyGuard(self.layout, self.key_store)
        self.ledgers = {
            Tier.ROOT: SerialLedger(Tier.ROOT, self.layout.tier_dir(Tier.ROOT)),
            Tier.INTERMEDIATE: SerialLedger(Tier.INTERMEDIATE, self.layout.tier_dir(Tier.INTERMEDIATE)),
        }
        self.registry = LeafRegistry(self.layout)
        self.exporter = ExportAdapter(config.kubernetes, self.layout.k8s_export_dir)
        self._root_passphrase = root_passphrase

    # ----------------
    # init
    # ----------------
    def init(self, export: Optional[bool] = None) -> InitResult:
        """Create the root and intermediate CAs unless they already exist."""
        logger.info("Setting up directory structure...")
        self.layout.create()
        for ledger in self.ledgers.values():
            ledger.initialize()

        root = self._ensure_root()
        if root.record is None:
            intermediate = TierOutcome(
                Tier.INTERMEDIATE, "skipped", problem="root CA is not available to sign the intermediate"
            )
            logger.warning("Skipping intermediate CA: %s", intermediate.problem)
        else:
            intermediate = self._ensure_intermediate()

        result = InitResult(root=root, intermediate=intermediate)
        if root.record is not None and intermediate.record is not None:
            result.chain_path = self.write_ca_chain(intermediate.record, root.record)
            if export is None:
                export = self.config.kubernetes.enable_k8s_export
            if export:
                result.export = self.export()
        return result

    def _ensure_root(self) -> TierOutcome:
        try:
            with self.guard.guarded(Tier.ROOT) as existing:
                if existing.state is GuardState.PRESENT:
                    logger.warning("Root CA already exists, skipping generation")
                    logger.info("Existing Root CA: %s", self.layout.cert_path(Tier.ROOT))
                    return TierOutcome(Tier.ROOT, "existing", existing.record)

                logger.info("Generating Root CA...")
                passphrase = self._passphrase(confirm=True)
                issued = self.issuer.issue_root(self.config.root_ca, passphrase, self.ledgers[Tier.ROOT])
                self._write_ca(issued)
                logger.info("Root CA generated: %s", self.layout.cert_path(Tier.ROOT))
                return TierOutcome(Tier.ROOT, "created", issued.record)
        except StateInconsistencyError as e:
            logger.warning("%s; skipping", e)
            return TierOutcome(Tier.ROOT, "skipped", problem=str(e))

    def _ensure_intermediate(self) -> TierOutcome:
        try:
            with self.guard.guarded(Tier.INTERMEDIATE) as existing:
                if existing.state is GuardState.PRESENT:
                    logger.warning("Intermediate CA already exists, skipping generation")
                    logger.info("Existing Intermediate CA: %s", self.layout.cert_path(Tier.INTERMEDIATE))
                    return TierOutcome(Tier.INTERMEDIATE, "existing", existing.record)

                logger.info("Generating Intermediate CA...")
                root = self.load_signer(Tier.ROOT)
                verify_chain(root.certificate, [])
                issued = self.issuer.issue_intermediate(self.config.intermediate_ca, root)
                verify_chain(issued.certificate, [root.certificate])
                self._write_ca(issued)
                logger.info("Intermediate CA generated: %s", self.layout.cert_path(Tier.INTERMEDIATE))
                return TierOutcome(Tier.INTERMEDIATE, "created", issued.record)
        except StateInconsistencyError as e:
            logger.warning("%s; skipping", e)
            return TierOutcome(Tier.INTERMEDIATE, "skipped", problem=str(e))

    def _write_ca(self, issued: IssuedCertificate) -> None:
        tier = issued.tier
        self.key_store.save(issued.key_pair, self.layout.key_path(tier))
        if issued.csr is not None:
            atomic_write(self.layout.csr_path(tier), issued.csr.public_bytes(serialization.Encoding.PEM))
        atomic_write(self.layout.cert_path(tier), to_pem(issued.certificate), mode=CERT_MODE)

    def write_ca_chain(self, intermediate: CertificateRecord, root: CertificateRecord) -> Path:
        """Write ca-chain.crt (intermediate then root) if it differs from disk."""
        chain = self.chain_builder.ca_bundle(intermediate, root)
        path = self.layout.ca_chain_path
        pem = chain.pem()
        if not path.is_file() or path.read_text(encoding="ascii") != pem:
            logger.info("Creating certificate chain...")
            atomic_write(path, pem, mode=CERT_MODE)
        return path

    # ----------------
    # signers
    # ----------------
    def _passphrase(self, confirm: bool = False) -> Passphrase:
        source = self._root_passphrase
        if callable(source):
            source = source(confirm)
            self._root_passphrase = source
        return source

    def load_signer(self, tier: Tier) -> Signer:
        """Load a CA certificate and its private key for signing."""
        existing = self.guard.check_existing(tier)
        if existing.state is GuardState.ABSENT:
            raise StateInconsistencyError(
                f"{tier.value} CA not found at {self.layout.tier_dir(tier)}; run 'init' first"
            )
        if existing.state is GuardState.INCONSISTENT:
            raise StateInconsistencyError(f"{tier.value} CA is in an inconsistent state: {existing.problem}")

        passphrase = self._passphrase() if tier is Tier.ROOT else None
        key_path = self.layout.key_path(tier)
        key_pair = self.key_store.load(key_path, passphrase)
        certificate = load_certificate(self.layout.cert_path(tier))
        if not self.guard.matches(certificate, key_pair):
            raise StateInconsistencyError(
                f"{tier.value} CA is in an inconsistent state: {key_path} does not match the certificate's public key"
            )
        return Signer(tier=tier, certificate=certificate, key_pair=key_pair, ledger=self.ledgers[tier])

    def _ca_certificates(self) -> Tuple[x509.Certificate, x509.Certificate]:
        root_path = self.layout.cert_path(Tier.ROOT)
        if not root_path.is_file():
            raise StateInconsistencyError(f"Root CA certificate not found: {root_path}; run 'init' first")
        int_path = self.layout.cert_path(Tier.INTERMEDIATE)
        if not int_path.is_file():
            raise StateInconsistencyError(f"Intermediate CA certificate not found: {int_path}; run 'init' first")
        return load_certificate(int_path), load_certificate(root_path)

    # ----------------
    # leaf issuance
    # ----------------
    def issue_server(self, common_name: str, dns_names) -> LeafResult:
        """Issue (or re-issue) the server certificate for `common_name`.

        Input is validated before anything touches the disk.
        """
        cn = validate_common_name(common_name)
        names = parse_dns_names(dns_names)
        logger.info("Generating server certificate for: %s", cn)

        intermediate_cert, root_cert = self._ca_certificates()
        signer = self.load_signer(Tier.INTERMEDIATE)
        verify_chain(intermediate_cert, [root_cert])
        directory = self.registry.directory_for(cn)

        settings = self.config.server_cert
        issued = self.issuer.issue_leaf(cn, names, settings.key_size, settings.validity_days, signer)
        verify_chain(issued.certificate, [intermediate_cert, root_cert])
        chain = self.chain_builder.build_chain(
            issued.record,
            [record_from_certificate(intermediate_cert, Tier.INTERMEDIATE),
             record_from_certificate(root_cert, Tier.ROOT)],
        )

        paths = {
            "key": directory / LEAF_KEY,
            "csr": directory / LEAF_CSR,
            "cert": directory / LEAF_CERT,
            "fullchain": directory / LEAF_FULLCHAIN,
        }
        self.key_store.save(issued.key_pair, paths["key"])
        atomic_write(paths["csr"], issued.csr.public_bytes(serialization.Encoding.PEM))
        atomic_write(paths["cert"], to_pem(issued.certificate), mode=CERT_MODE)
        atomic_write(paths["fullchain"], chain.pem(), mode=CERT_MODE)
        entry = self.registry.put(issued.record, directory, issued.ledger_entry.issued_at)

        logger.info("Server certificate generated: %s", paths["cert"])
        return LeafResult(record=issued.record, entry=entry, chain=chain, paths=paths)

    # ----------------
    # export
    # ----------------
    def export(self) -> Optional[ExportBundle]:
        """Write the cert-manager manifests from the current CA material."""
        if not self.config.kubernetes.enable_k8s_export:
            logger.warning("Kubernetes export disabled in config")
            return None
        intermediate_cert, root_cert = self._ca_certificates()
        key_path = self.layout.key_path(Tier.INTERMEDIATE)
        if not key_path.is_file():
            raise StateInconsistencyError(f"Intermediate CA key not found: {key_path}")
        chain = self.chain_builder.ca_bundle(intermediate_cert, root_cert)
        return self.exporter.export(
            chain.pem().encode("ascii"),
            key_path.read_bytes(),
            to_pem(root_cert).encode("ascii"),
        )

    # ----------------
    # read methods
    # ----------------
    def inspect_tier(self, tier: Tier) -> InspectionReport:
        return self.inspector.inspect_file(self.layout.cert_path(tier))

    def list_certificates(self) -> List[Tuple[Path, InspectionReport]]:
        """Inspect every *.crt under the output directory, sorted by path."""
        output = self.layout.output_dir
        if not output.is_dir():
            raise StateInconsistencyError(f"Certificate directory not found: {output}")
        found = []
        for path in sorted(output.rglob("*.crt")):
            if not path.is_file():
                continue
            try:
                found.append((path, self.inspector.inspect_file(path)))
            except ValueError as e:
                logger.warning("Skipping unreadable certificate %s: %s", path, e)
        return found
