"""Command line entry point.

Usage:
    homelab-ca [--config cert.conf] init
    homelab-ca server <common-name> <dns1,dns2,...>
    homelab-ca k8s-export
    homelab-ca list

Exit status is 0 on success and 1 on any configuration, validation,
signing or tooling failure.
"""

import argparse
import getpass
import logging
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .common.config import PASSPHRASE_ENV, default_config_path, load_config
from .common.errors import PKIError, ToolAvailabilityError, ValidationError
from .authority import CertificateAuthority
from .crypto.pki import describe

logger = logging.getLogger("homelab_ca")


def configure_logging(verbose: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    root = logging.getLogger("homelab_ca")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def check_tooling() -> str:
    """Make sure the cryptography OpenSSL backend can do RSA with SHA-256."""
    try:
        from cryptography.hazmat.backends.openssl import backend
        from cryptography.hazmat.primitives import hashes
    except ImportError as e:
        raise ToolAvailabilityError(f"Required library not available: cryptography ({e})") from e
    if not backend.hash_supported(hashes.SHA256()):
        raise ToolAvailabilityError("The OpenSSL backend does not support SHA-256")
    return backend.openssl_version_text()


def prompt_passphrase(confirm: bool) -> str:
    """Root CA passphrase from the environment, or asked on the terminal."""
    value = os.getenv(PASSPHRASE_ENV)
    if value:
        return value
    passphrase = getpass.getpass("Root CA key passphrase: ")
    if confirm:
        again = getpass.getpass("Confirm passphrase: ")
        if again != passphrase:
            raise ValidationError("Passphrases do not match")
    if not passphrase:
        raise ValidationError("Root CA key passphrase must not be empty")
    return passphrase


def print_report(title: str, report) -> None:
    print("━" * 48)
    print(f"Certificate: {title}")
    print("━" * 48)
    print(describe(report))
    print()


def cmd_init(ca, args) -> int:
    result = ca.init()
    for outcome in (result.root, result.intermediate):
        if outcome.record is not None:
            print_report(str(ca.layout.cert_path(outcome.tier)), ca.inspect_tier(outcome.tier))
    if result.chain_path is not None:
        print(f"Wrote CA chain: {result.chain_path}")
    if result.export is not None:
        print(f"Run: cd {ca.layout.k8s_export_dir} && ./install-to-k8s.sh")
    if result.intermediate.record is None:
        logger.error("CA hierarchy is incomplete: %s",
                     result.intermediate.problem or result.root.problem)
        return 1
    return 0


def cmd_server(ca, args) -> int:
    leaf = ca.issue_server(args.common_name, args.dns_names)
    for kind, path in leaf.paths.items():
        print(f"Wrote {kind}: {path}")
    print(f"Serial: {leaf.record.serial}")
    return 0


def cmd_export(ca, args) -> int:
    bundle = ca.export()
    if bundle is not None:
        for path in bundle.written:
            print(f"Wrote: {path}")
        print(f"Run: cd {ca.layout.k8s_export_dir} && ./install-to-k8s.sh")
    return 0


def cmd_list(ca, args) -> int:
    if not ca.layout.output_dir.is_dir():
        logger.warning("Certificate directory not found: %s", ca.layout.output_dir)
        return 1
    logger.info("Scanning for certificates...")
    found = ca.list_certificates()
    if not found:
        logger.warning("No certificates found in %s", ca.layout.output_dir)
        return 1
    logger.info("Found %d certificate(s)", len(found))
    for path, report in found:
        try:
            title = str(path.relative_to(ca.layout.output_dir.parent))
        except ValueError:
            title = str(path)
        print_report(title, report)
    return 0


COMMANDS = {
    "init": cmd_init,
    "server": cmd_server,
    "k8s-export": cmd_export,
    "list": cmd_list,
}


class ArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with status 1 like every other failure."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = ArgumentParser(
        prog="homelab-ca",
        description="Root/Intermediate CA and server certificates for a home lab, with cert-manager export",
    )
    parser.add_argument("--config", default=None, help="Path to the INI config (default: $HOMELAB_CA_CONFIG or ./cert.conf)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create Root and Intermediate CA and export to Kubernetes")
    server = sub.add_parser("server", help="Issue a server certificate signed by the Intermediate CA")
    server.add_argument("common_name", help="Common Name, e.g. app.homelab.local")
    server.add_argument("dns_names", help="Comma-separated DNS names, e.g. app.homelab.local,*.app.homelab.local")
    sub.add_parser("k8s-export", help="Re-export CA material for cert-manager")
    sub.add_parser("list", help="Inspect all certificates under the output directory")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    try:
        args = build_parser().parse_args(argv)
    except SystemExit as e:
        return e.code or 0
    configure_logging(args.verbose)

    try:
        config_path = args.config or default_config_path()
        logger.info("Config file: %s", config_path)
        config = load_config(config_path)
        logger.debug("cryptography backend: %s", check_tooling())

        ca = CertificateAuthority(config, root_passphrase=prompt_passphrase)
        return COMMANDS[args.command](ca, args)
    except PKIError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 1


if __name__ == "__main__":
    sys.exit(main())
