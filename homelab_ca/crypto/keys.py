"""RSA key generation, storage and loading.

Passphrase policy:
- the root CA key is always encrypted (AES-256, PKCS#8)
- intermediate and leaf keys are stored unencrypted so an unattended
  signer (cert-manager) can use them

Key files are written atomically with mode 0400.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ..common.config import SUPPORTED_KEY_SIZES
from ..common.errors import ConfigurationError, SigningError
from ..storage.files import atomic_write

logger = logging.getLogger(__name__)

KEY_FILE_MODE = 0o400
PUBLIC_EXPONENT = 65537

Passphrase = Union[str, bytes, None]


def _as_bytes(passphrase: Passphrase) -> Optional[bytes]:
    if passphrase is None or passphrase == b"" or passphrase == "":
        return None
    if isinstance(passphrase, str):
        return passphrase.encode("utf-8")
    return passphrase


@dataclass(frozen=True)
class KeyPair:
    private_key: rsa.RSAPrivateKey
    passphrase: Optional[bytes] = None

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()

    @property
    def encrypted(self) -> bool:
        return self.passphrase is not None

    def private_pem(self) -> bytes:
        if self.passphrase is not None:
            encryption = serialization.BestAvailableEncryption(self.passphrase)
        else:
            encryption = serialization.NoEncryption()
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )


class KeyStore:
    """Creates, saves and loads RSA private keys."""

    def generate_key_pair(self, bits: int, passphrase: Passphrase = None) -> KeyPair:
        if bits not in SUPPORTED_KEY_SIZES:
            raise ConfigurationError(
                f"Unsupported RSA key size {bits} "
                f"(expected one of {', '.join(map(str, SUPPORTED_KEY_SIZES))})"
            )
        logger.info("Generating %d-bit RSA private key%s", bits,
                    " (passphrase protected)" if passphrase else "")
        key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=bits)
        return KeyPair(private_key=key, passphrase=_as_bytes(passphrase))

    def save(self, key_pair: KeyPair, path: Union[str, Path]) -> Path:
        """Write the private key PEM to `path` as an owner-read-only file."""
        return atomic_write(path, key_pair.private_pem(), mode=KEY_FILE_MODE)

    def load(self, path: Union[str, Path], passphrase: Passphrase = None) -> KeyPair:
        """Load an RSA private key; any failure is a SigningError."""
        path = Path(path)
        secret = _as_bytes(passphrase)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise SigningError("load issuer key", f"cannot read {path}: {e.strerror}") from e
        try:
            key = serialization.load_pem_private_key(data, password=secret)
        except TypeError as e:
            # encrypted key without passphrase, or passphrase for a plain key
            raise SigningError("load issuer key", f"{path}: {e}") from e
        except (ValueError, UnsupportedAlgorithm) as e:
            raise SigningError("load issuer key", f"{path}: wrong passphrase or malformed key") from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise SigningError("load issuer key", f"{path}: not an RSA key")
        return KeyPair(private_key=key, passphrase=secret)
