"""Kubernetes cert-manager export of the CA material.

Produces, under the kubernetes export directory:
- ca-secret.yaml: Secret with tls.crt (intermediate + root chain),
  tls.key (intermediate key) and ca.crt (root), base64 encoded
- ca-issuer.yaml: ClusterIssuer plus namespaced Issuer using that secret
- example-certificate.yaml: a Certificate request template
- example-ingress-auto-tls.yaml: Ingress examples using the cluster issuer
- install-to-k8s.sh: kubectl helper that applies the above
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from .common.config import KubernetesSettings
from .common.utils import b64e
from .storage.files import atomic_write

logger = logging.getLogger(__name__)

SCRIPT_MODE = 0o755

INSTALL_SCRIPT = """\
#!/bin/bash
# Install CA certificates to Kubernetes

set -e

echo "================================================"
echo "  Installing HomeLab CA to Kubernetes"
echo "================================================"

echo ""
echo "[1/4] Creating namespace: {namespace}"
kubectl create namespace {namespace} --dry-run=client -o yaml | kubectl apply -f -

echo ""
echo "[2/4] Applying CA secret..."
kubectl apply -f ca-secret.yaml

echo ""
echo "[3/4] Applying CA issuer..."
kubectl apply -f ca-issuer.yaml

echo ""
echo "[4/4] Verifying installation..."
kubectl get clusterissuer {issuer}
kubectl get secret {secret} -n {namespace}

echo ""
echo "================================================"
echo "  Installation Complete!"
echo "================================================"
echo ""
echo "Your Intermediate CA is now ready to automatically sign certificates."
echo ""
echo "Usage Options:"
echo ""
echo "1. Manual Certificate Creation:"
echo "   kubectl apply -f example-certificate.yaml"
echo ""
echo "2. Automatic via Ingress (RECOMMENDED):"
echo "   kubectl apply -f example-ingress-auto-tls.yaml"
echo ""
echo "3. Add to existing Ingress:"
echo "   Add annotation: cert-manager.io/cluster-issuer: {issuer}"
echo ""
echo "Monitor certificates: kubectl get certificate -A"
echo "Check cert-manager logs: kubectl logs -n cert-manager -l app=cert-manager"
echo "================================================"
"""


@dataclass
class ExportBundle:
    """Rendered export files, name -> text."""
    files: Dict[str, str] = field(default_factory=dict)
    written: List[Path] = field(default_factory=list)


def _ingress(name: str, issuer: str, hosts: List[str], secret: str, backends: List[Dict[str, Any]],
             extra_annotations: Dict[str, str] = None) -> Dict[str, Any]:
    annotations = {"cert-manager.io/cluster-issuer": issuer}
    annotations.update(extra_annotations or {})
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {"name": name, "namespace": "default", "annotations": annotations},
        "spec": {
            "ingressClassName": "nginx",
            "tls": [{"hosts": hosts, "secretName": secret}],
            "rules": [
                {
                    "host": b["host"],
                    "http": {
                        "paths": [
                            {
                                "path": "/",
                                "pathType": "Prefix",
                                "backend": {
                                    "service": {"name": b["service"], "port": {"number": b["port"]}}
                                },
                            }
                        ]
                    },
                }
                for b in backends
            ],
        },
    }


class ExportAdapter:
    """Renders cert-manager descriptors from CA certificates and keys."""

    def __init__(self, settings: KubernetesSettings, export_dir: Path):
        self.settings = settings
        self.export_dir = Path(export_dir)

    def secret(self, chain_pem: bytes, intermediate_key_pem: bytes, root_cert_pem: bytes) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": self.settings.ca_secret_name, "namespace": self.settings.namespace},
            "type": "Opaque",
            "data": {
                "tls.crt": b64e(chain_pem),
                "tls.key": b64e(intermediate_key_pem),
                "ca.crt": b64e(root_cert_pem),
            },
        }

    def issuers(self) -> List[Dict[str, Any]]:
        spec = {"ca": {"secretName": self.settings.ca_secret_name}}
        return [
            {
                "apiVersion": "cert-manager.io/v1",
                "kind": "ClusterIssuer",
                "metadata": {"name": self.settings.issuer_name},
                "spec": spec,
            },
            {
                "apiVersion": "cert-manager.io/v1",
                "kind": "Issuer",
                "metadata": {"name": self.settings.issuer_name, "namespace": self.settings.namespace},
                "spec": spec,
            },
        ]

    def example_certificate(self) -> Dict[str, Any]:
        return {
            "apiVersion": "cert-manager.io/v1",
            "kind": "Certificate",
            "metadata": {"name": "example-tls-cert", "namespace": "default"},
            "spec": {
                "secretName": "example-tls-secret",
                "issuerRef": {"name": self.settings.issuer_name, "kind": "ClusterIssuer"},
                "commonName": "example.homelab.local",
                "dnsNames": ["example.homelab.local", "*.example.homelab.local"],
                "duration": "8760h",
                "renewBefore": "720h",
            },
        }

    def example_ingresses(self) -> List[Dict[str, Any]]:
        issuer = self.settings.issuer_name
        return [
            _ingress(
                "myapp-ingress",
                issuer,
                ["myapp.homelab.local", "api.homelab.local"],
                "myapp-tls-auto",
                [
                    {"host": "myapp.homelab.local", "service": "myapp-service", "port": 80},
                    {"host": "api.homelab.local", "service": "api-service", "port": 8080},
                ],
                {
                    "nginx.ingress.kubernetes.io/ssl-redirect": "true",
                    "nginx.ingress.kubernetes.io/force-ssl-redirect": "true",
                },
            ),
            _ingress(
                "wildcard-ingress",
                issuer,
                ["*.apps.homelab.local"],
                "wildcard-apps-tls-auto",
                [{"host": "*.apps.homelab.local", "service": "default-backend", "port": 80}],
            ),
        ]

    def install_script(self) -> str:
        return INSTALL_SCRIPT.format(
            namespace=self.settings.namespace,
            secret=self.settings.ca_secret_name,
            issuer=self.settings.issuer_name,
        )

    def render(self, chain_pem: bytes, intermediate_key_pem: bytes, root_cert_pem: bytes) -> ExportBundle:
        dump = dict(sort_keys=False, default_flow_style=False)
        bundle = ExportBundle()
        bundle.files["ca-secret.yaml"] = yaml.safe_dump(
            self.secret(chain_pem, intermediate_key_pem, root_cert_pem), **dump
        )
        bundle.files["ca-issuer.yaml"] = yaml.safe_dump_all(self.issuers(), **dump)
        bundle.files["example-certificate.yaml"] = yaml.safe_dump(self.example_certificate(), **dump)
        bundle.files["example-ingress-auto-tls.yaml"] = (
            "# Example: Ingress with automatic TLS certificate generation\n"
            "# cert-manager creates and signs the certificate from the annotation\n"
            + yaml.safe_dump_all(self.example_ingresses(), **dump)
        )
        bundle.files["install-to-k8s.sh"] = self.install_script()
        return bundle

    def export(self, chain_pem: bytes, intermediate_key_pem: bytes, root_cert_pem: bytes) -> ExportBundle:
        logger.info("Exporting certificates for Kubernetes cert-manager...")
        bundle = self.render(chain_pem, intermediate_key_pem, root_cert_pem)
        for name, text in bundle.files.items():
            # ca-secret.yaml embeds the intermediate private key
            mode = SCRIPT_MODE if name.endswith(".sh") else (0o600 if name == "ca-secret.yaml" else 0o644)
            bundle.written.append(atomic_write(self.export_dir / name, text, mode=mode))
        logger.info("Kubernetes manifests exported to: %s", self.export_dir)
        return bundle
