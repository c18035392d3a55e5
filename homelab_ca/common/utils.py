"""Small helpers shared by the issuer, inspector and exporter.

- utc_now() -> datetime: timezone-aware UTC now, whole seconds
- b64e(b) -> str: base64 encode bytes to an ASCII string
- fingerprint(der) -> str: colon-separated upper-case SHA-256 hex
"""

import base64
import hashlib
from datetime import datetime, timezone
from typing import Union


def utc_now() -> datetime:
	"""Return the current UTC time truncated to whole seconds.

	X.509 validity fields carry no sub-second precision, so truncating keeps
	not_after - not_before an exact number of days.
	"""
	return datetime.now(timezone.utc).replace(microsecond=0)


def b64e(b: Union[bytes, str]) -> str:
	"""Base64-encode bytes (or UTF-8 text) without line wrapping."""
	if isinstance(b, str):
		b = b.encode("utf-8")
	return base64.b64encode(b).decode("ascii")


def fingerprint(der: bytes) -> str:
	"""SHA-256 fingerprint in the AA:BB:... form printed by openssl."""
	digest = hashlib.sha256(der).hexdigest().upper()
	return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))
