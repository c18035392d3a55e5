import stat
from datetime import timedelta

import pytest
from cryptography import x509

from homelab_ca.authority import CertificateAuthority
from homelab_ca.common.config import load_config
from homelab_ca.common.errors import StateInconsistencyError, ValidationError
from homelab_ca.common.models import Tier
from homelab_ca.crypto.keys import KeyStore
from homelab_ca.crypto.pki import load_certificates

from conftest import PASSPHRASE


def _snapshot(layout):
    return {
        tier: (layout.cert_path(tier).read_bytes(), layout.key_path(tier).read_bytes())
        for tier in (Tier.ROOT, Tier.INTERMEDIATE)
    }


def test_init_builds_hierarchy(authority):
    result = authority.init()
    layout = authority.layout

    assert result.root.action == "created"
    assert result.intermediate.action == "created"

    root = x509.load_pem_x509_certificate(layout.cert_path(Tier.ROOT).read_bytes())
    inter = x509.load_pem_x509_certificate(layout.cert_path(Tier.INTERMEDIATE).read_bytes())
    assert root.not_valid_after_utc - root.not_valid_before_utc == timedelta(days=18250)
    assert inter.not_valid_after_utc - inter.not_valid_before_utc == timedelta(days=9125)
    assert inter.extensions.get_extension_for_class(x509.BasicConstraints).value.path_length == 0
    assert root.serial_number == 1000
    assert inter.serial_number == 1001

    assert load_certificates(result.chain_path) == [inter, root]
    assert layout.csr_path(Tier.INTERMEDIATE).is_file()

    root_key = layout.key_path(Tier.ROOT)
    assert b"ENCRYPTED" in root_key.read_bytes()
    assert stat.S_IMODE(root_key.stat().st_mode) == 0o400
    assert b"ENCRYPTED" not in layout.key_path(Tier.INTERMEDIATE).read_bytes()

    assert (layout.k8s_export_dir / "ca-secret.yaml").is_file()
    assert (layout.k8s_export_dir / "install-to-k8s.sh").is_file()


def test_init_is_idempotent(initialized, config):
    layout = initialized.layout
    before = _snapshot(layout)
    chain_before = layout.ca_chain_path.read_bytes()
    serial_before = (layout.tier_dir(Tier.ROOT) / "serial").read_text()

    result = CertificateAuthority(config, root_passphrase=PASSPHRASE).init()

    assert result.root.action == "existing"
    assert result.intermediate.action == "existing"
    assert _snapshot(layout) == before
    assert layout.ca_chain_path.read_bytes() == chain_before
    assert (layout.tier_dir(Tier.ROOT) / "serial").read_text() == serial_before


def test_rerun_does_not_ask_for_passphrase(initialized, config):
    def never(confirm):
        raise AssertionError("passphrase requested")

    result = CertificateAuthority(config, root_passphrase=never).init()
    assert result.intermediate.action == "existing"


def test_passphrase_is_confirmed_once_on_creation(config):
    calls = []

    def source(confirm):
        calls.append(confirm)
        return PASSPHRASE

    CertificateAuthority(config, root_passphrase=source).init()
    assert calls == [True]


def test_inconsistent_root_skips_hierarchy(authority):
    layout = authority.layout
    layout.create()
    layout.cert_path(Tier.ROOT).write_text("placeholder")

    result = authority.init()

    assert result.root.action == "skipped"
    assert result.intermediate.action == "skipped"
    assert not layout.cert_path(Tier.INTERMEDIATE).exists()
    assert result.chain_path is None
    assert result.export is None


def test_missing_intermediate_is_recreated_under_same_root(initialized, config):
    layout = initialized.layout
    root_before = layout.cert_path(Tier.ROOT).read_bytes()
    layout.cert_path(Tier.INTERMEDIATE).unlink()
    layout.key_path(Tier.INTERMEDIATE).unlink()

    result = CertificateAuthority(config, root_passphrase=PASSPHRASE).init()

    assert result.root.action == "existing"
    assert result.intermediate.action == "created"
    assert result.intermediate.record.serial == 1002
    assert layout.cert_path(Tier.ROOT).read_bytes() == root_before


def test_server_san_fidelity(initialized):
    leaf = initialized.issue_server("a.test", "a.test, b.test ,c.test")

    cert = x509.load_pem_x509_certificate(leaf.paths["cert"].read_bytes())
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == ["a.test", "b.test", "c.test"]
    assert leaf.record.serial == 1000
    assert leaf.entry.directory == "a.test"
    assert stat.S_IMODE(leaf.paths["key"].stat().st_mode) == 0o400
    assert leaf.paths["csr"].is_file()


def test_server_serials_are_unique(initialized):
    serials = [initialized.issue_server(f"s{i}.test", f"s{i}.test").record.serial for i in range(3)]
    serials.append(initialized.issue_server("s0.test", "s0.test").record.serial)
    assert serials == [1000, 1001, 1002, 1003]


def test_server_rejects_empty_common_name_before_writing(initialized):
    server_dir = initialized.layout.server_certs_dir
    before = sorted(server_dir.rglob("*"))

    with pytest.raises(ValidationError):
        initialized.issue_server("", "a.test")

    assert sorted(server_dir.rglob("*")) == before
    assert not list(server_dir.rglob("*.crt"))
    assert not list(server_dir.rglob("*.key"))


def test_server_rejects_missing_dns_names(initialized):
    with pytest.raises(ValidationError, match="At least one DNS name"):
        initialized.issue_server("a.test", " , ")


def test_server_requires_init(authority):
    with pytest.raises(StateInconsistencyError, match="run 'init' first"):
        authority.issue_server("a.test", "a.test")


def test_server_enforces_issuer_validity(write_config):
    config = load_config(write_config(server_days=10000, enforce="true"))
    ca = CertificateAuthority(config, root_passphrase=PASSPHRASE)
    ca.init()
    with pytest.raises(ValidationError, match="after its issuer"):
        ca.issue_server("long.test", "long.test")
    assert not ca.layout.leaf_dir("long.test").exists()


def test_export_disabled(write_config):
    config = load_config(write_config(k8s="false"))
    ca = CertificateAuthority(config, root_passphrase=PASSPHRASE)
    result = ca.init()

    assert result.export is None
    assert ca.export() is None
    assert not list(ca.layout.k8s_export_dir.iterdir())


def test_export_requires_ca(authority):
    with pytest.raises(StateInconsistencyError):
        authority.export()


def test_list_certificates(initialized):
    initialized.issue_server("web.test", "web.test")
    found = initialized.list_certificates()
    names = [path.name for path, _ in found]

    assert [path for path, _ in found] == sorted(path for path, _ in found)
    assert sorted(names) == sorted([
        "ca-chain.crt", "intermediate-ca.crt", "root-ca.crt", "server-fullchain.crt", "server.crt",
    ])
    by_name = {path.name: report for path, report in found}
    assert by_name["server.crt"].san_list == ["web.test"]
    assert by_name["ca-chain.crt"].subject == by_name["intermediate-ca.crt"].subject
    assert by_name["root-ca.crt"].status.value == "healthy"


def test_list_requires_output_dir(authority):
    with pytest.raises(StateInconsistencyError, match="Certificate directory not found"):
        authority.list_certificates()


def test_mismatched_root_key_skips_intermediate(initialized, config):
    layout = initialized.layout
    store = KeyStore()
    store.save(store.generate_key_pair(2048, PASSPHRASE), layout.key_path(Tier.ROOT))
    layout.cert_path(Tier.INTERMEDIATE).unlink()
    layout.key_path(Tier.INTERMEDIATE).unlink()
    root_ledger = initialized.ledgers[Tier.ROOT]
    serials_before = [e.serial for e in root_ledger.entries()]

    result = CertificateAuthority(config, root_passphrase=PASSPHRASE).init()

    assert result.root.action == "existing"
    assert result.intermediate.action == "skipped"
    assert "does not match" in result.intermediate.problem
    assert result.chain_path is None
    assert [e.serial for e in root_ledger.entries()] == serials_before
    assert not layout.cert_path(Tier.INTERMEDIATE).exists()


def test_mismatched_intermediate_key_blocks_server(initialized):
    store = KeyStore()
    store.save(store.generate_key_pair(2048), initialized.layout.key_path(Tier.INTERMEDIATE))

    with pytest.raises(StateInconsistencyError, match="inconsistent state"):
        initialized.issue_server("a.test", "a.test")
    assert initialized.ledgers[Tier.INTERMEDIATE].entries() == []
