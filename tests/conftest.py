"""Shared pytest fixtures: temporary config files, a CA on disk, test certificates."""

from datetime import timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from homelab_ca.authority import CertificateAuthority
from homelab_ca.common.config import load_config
from homelab_ca.common.utils import utc_now

PASSPHRASE = "correct horse battery staple"

# 2048-bit keys everywhere to keep key generation fast
CONFIG_TEMPLATE = """\
[root_ca]
name = "Test Root CA"
organization = "HomeLab Test"
country = PL
state = "Mazovia"
locality = "Warsaw"
email = ca@homelab.test
validity_days = 18250
key_size = 2048

[intermediate_ca]
name = "Test Intermediate CA"
organization = "HomeLab Test"
country = PL
state = "Mazovia"
locality = "Warsaw"
validity_days = 9125
key_size = 2048

[server_cert]
validity_days = {server_days}
key_size = 2048
enforce_issuer_validity = {enforce}

[kubernetes]
enable_k8s_export = {k8s}
namespace = cert-manager
ca_secret_name = ca-secret
issuer_name = homelab-ca-issuer

[directories]
output_dir = ./certs
root_ca_dir = ./certs/root-ca
intermediate_ca_dir = ./certs/intermediate-ca
server_certs_dir = ./certs/server
k8s_export_dir = ./certs/kubernetes
"""


@pytest.fixture
def write_config(tmp_path):
    """Return a callable writing cert.conf into tmp_path and returning its path."""
    def _write(server_days=365, enforce="false", k8s="true", text=None) -> Path:
        path = tmp_path / "cert.conf"
        if text is None:
            text = CONFIG_TEMPLATE.format(server_days=server_days, enforce=enforce, k8s=k8s)
        path.write_text(text, encoding="utf-8")
        return path
    return _write


@pytest.fixture
def config_path(write_config) -> Path:
    return write_config()


@pytest.fixture
def config(config_path):
    return load_config(config_path)


@pytest.fixture
def authority(config) -> CertificateAuthority:
    return CertificateAuthority(config, root_passphrase=PASSPHRASE)


@pytest.fixture
def initialized(authority) -> CertificateAuthority:
    result = authority.init()
    assert result.intermediate.record is not None
    return authority


@pytest.fixture
def make_cert():
    """Build a throwaway self-signed certificate valid from `start` to `end`."""
    def _make(cn="test.homelab", start=None, end=None, dns_names=(), ca=False):
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        now = utc_now()
        start = start or now - timedelta(days=1)
        end = end or now + timedelta(days=365)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
        builder = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(start)
            .not_valid_after(end)
            .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        )
        if dns_names:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]), critical=False
            )
        return builder.sign(key, hashes.SHA256())
    return _make
