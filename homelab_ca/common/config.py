"""INI configuration loading into one immutable PKIConfig.

The config file has the sections root_ca, intermediate_ca, server_cert,
kubernetes and directories. Missing keys fall back to documented defaults;
missing required sections or root_ca keys raise ConfigurationError.

Environment (a .env file is honoured by the CLI via python-dotenv):
- HOMELAB_CA_CONFIG: path of the config file (default ./cert.conf)
- HOMELAB_CA_ROOT_PASSPHRASE: passphrase for the root CA key
"""

import configparser
import os
from pathlib import Path
from typing import Dict, Optional, Union

import pydantic
from pydantic import Field

from .errors import ConfigurationError
from .models import CAProfile, Model, Tier

CONFIG_ENV = "HOMELAB_CA_CONFIG"
PASSPHRASE_ENV = "HOMELAB_CA_ROOT_PASSPHRASE"
DEFAULT_CONFIG_FILE = "cert.conf"

SUPPORTED_KEY_SIZES = (2048, 3072, 4096)

REQUIRED_SECTIONS = ("root_ca", "intermediate_ca", "server_cert", "kubernetes")
REQUIRED_ROOT_KEYS = ("name", "organization", "country", "validity_days", "key_size")

CA_DEFAULTS = {
    "root_ca": {
        "name": "Example Root CA",
        "validity_days": "18250",
        "key_size": "4096",
    },
    "intermediate_ca": {
        "name": "Example Intermediate CA",
        "validity_days": "9125",
        "key_size": "4096",
    },
}
DN_DEFAULTS = {
    "organization": "ExampleOrg",
    "country": "PL",
    "state": "ExampleRegion",
    "locality": "ExampleCity",
    "email": "",
}

_BOOLEANS = {"1": True, "yes": True, "true": True, "on": True,
             "0": False, "no": False, "false": False, "off": False}


class ServerCertSettings(Model):
    validity_days: int = Field(365, gt=0)
    key_size: int = 2048
    enforce_issuer_validity: bool = False


class KubernetesSettings(Model):
    enable_k8s_export: bool = True
    namespace: str = "cert-manager"
    ca_secret_name: str = "ca-secret"
    issuer_name: str = "homelab-ca-issuer"


class DirectorySettings(Model):
    output_dir: Path
    root_ca_dir: Path
    intermediate_ca_dir: Path
    server_certs_dir: Path
    k8s_export_dir: Path


class PKIConfig(Model):
    root_ca: CAProfile
    intermediate_ca: CAProfile
    server_cert: ServerCertSettings
    kubernetes: KubernetesSettings
    directories: DirectorySettings
    source: Optional[Path] = None


def default_config_path() -> Path:
    return Path(os.getenv(CONFIG_ENV, DEFAULT_CONFIG_FILE))


def _clean(value: str) -> str:
    # '#' starts a comment anywhere in a value, with or without whitespace before it
    return value.split("#", 1)[0].strip().strip('"').strip()


def _get(parser: configparser.ConfigParser, section: str, key: str, default: str = "") -> str:
    if parser.has_section(section) and parser.has_option(section, key):
        value = _clean(parser.get(section, key))
        if value:
            return value
    return default


def _get_int(parser, section: str, key: str, default: str) -> int:
    raw = _get(parser, section, key, default)
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"[{section}] {key} must be an integer, got {raw!r}") from None


def _get_bool(parser, section: str, key: str, default: bool) -> bool:
    raw = _get(parser, section, key, "")
    if not raw:
        return default
    try:
        return _BOOLEANS[raw.lower()]
    except KeyError:
        raise ConfigurationError(f"[{section}] {key} must be a boolean, got {raw!r}") from None


def _key_size(parser, section: str, default: str) -> int:
    size = _get_int(parser, section, "key_size", default)
    if size not in SUPPORTED_KEY_SIZES:
        raise ConfigurationError(
            f"[{section}] key_size {size} is not supported "
            f"(expected one of {', '.join(map(str, SUPPORTED_KEY_SIZES))})"
        )
    return size


def _ca_profile(parser, section: str, tier: Tier) -> CAProfile:
    defaults = CA_DEFAULTS[section]
    fields = {
        "tier": tier,
        "common_name": _get(parser, section, "name", defaults["name"]),
        "key_size": _key_size(parser, section, defaults["key_size"]),
        "validity_days": _get_int(parser, section, "validity_days", defaults["validity_days"]),
    }
    for key, default in DN_DEFAULTS.items():
        fields[key] = _get(parser, section, key, default)
    try:
        return CAProfile(**fields)
    except pydantic.ValidationError as e:
        raise ConfigurationError(f"[{section}] {_first_error(e)}") from None


def _first_error(e: pydantic.ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(part) for part in err["loc"])
    return f"{loc}: {err['msg']}"


def _resolve(base: Path, value: str) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else (base / path)


def _validate_structure(parser: configparser.ConfigParser) -> None:
    for section in REQUIRED_SECTIONS:
        if not parser.has_section(section):
            raise ConfigurationError(f"Missing required section [{section}] in configuration file")
    for key in REQUIRED_ROOT_KEYS:
        if not _get(parser, "root_ca", key):
            raise ConfigurationError(f"Missing required key '{key}' in [root_ca] section")


def parse_config(text: str, base_dir: Union[str, Path] = ".", source: Optional[Path] = None) -> PKIConfig:
    """Parse INI text into a validated PKIConfig."""
    parser = configparser.ConfigParser(
        interpolation=None,
        inline_comment_prefixes=("#", ";"),
    )
    try:
        parser.read_string(text)
    except configparser.Error as e:
        raise ConfigurationError(f"Malformed configuration file: {e}") from None

    _validate_structure(parser)

    base = Path(base_dir)
    dirs: Dict[str, Path] = {}
    output = _get(parser, "directories", "output_dir", "./certs")
    dirs["output_dir"] = _resolve(base, output)
    dirs["root_ca_dir"] = _resolve(base, _get(parser, "directories", "root_ca_dir", "./certs/root-ca"))
    dirs["intermediate_ca_dir"] = _resolve(
        base, _get(parser, "directories", "intermediate_ca_dir", "./certs/intermediate-ca")
    )
    dirs["server_certs_dir"] = _resolve(base, _get(parser, "directories", "server_certs_dir", "./certs/server"))
    dirs["k8s_export_dir"] = _resolve(base, _get(parser, "directories", "k8s_export_dir", "./certs/kubernetes"))

    try:
        server_cert = ServerCertSettings(
            validity_days=_get_int(parser, "server_cert", "validity_days", "365"),
            key_size=_key_size(parser, "server_cert", "2048"),
            enforce_issuer_validity=_get_bool(parser, "server_cert", "enforce_issuer_validity", False),
        )
        kubernetes = KubernetesSettings(
            enable_k8s_export=_get_bool(parser, "kubernetes", "enable_k8s_export", True),
            namespace=_get(parser, "kubernetes", "namespace", "cert-manager"),
            ca_secret_name=_get(parser, "kubernetes", "ca_secret_name", "ca-secret"),
            issuer_name=_get(parser, "kubernetes", "issuer_name", "homelab-ca-issuer"),
        )
    except pydantic.ValidationError as e:
        raise ConfigurationError(_first_error(e)) from None

    return PKIConfig(
        root_ca=_ca_profile(parser, "root_ca", Tier.ROOT),
        intermediate_ca=_ca_profile(parser, "intermediate_ca", Tier.INTERMEDIATE),
        server_cert=server_cert,
        kubernetes=kubernetes,
        directories=DirectorySettings(**dirs),
        source=source,
    )


def load_config(path: Union[str, Path, None] = None) -> PKIConfig:
    """Load and validate the config file; relative directories resolve against it."""
    path = Path(path) if path is not None else default_config_path()
    if not path.is_file():
        raise ConfigurationError(
            f"Configuration file not found: {path}. "
            "The configuration file is mandatory; create it before running."
        )
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Configuration file is not readable: {path} ({e.strerror})") from None
    return parse_config(text, base_dir=path.resolve().parent, source=path)
