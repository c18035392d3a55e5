"""Error taxonomy for the certificate authority.

- ConfigurationError: missing/invalid configuration, fatal before any crypto
- StateInconsistencyError: a CA tier is half present (cert without key or
  the other way round) or required material is missing
- ValidationError: a single request is invalid (empty CN, no DNS names)
- SigningError: a cryptographic step failed, carries the failing stage
- ToolAvailabilityError: the cryptographic engine is unusable
"""

from typing import Optional


class PKIError(Exception):
    """Base class for all certificate authority errors."""


class ConfigurationError(PKIError):
    pass


class StateInconsistencyError(PKIError):
    pass


class ValidationError(PKIError):
    pass


class SigningError(PKIError):
    """Raised when a signing step fails.

    `stage` names the step, e.g. "load issuer key" or "sign certificate".
    """

    def __init__(self, stage: str, message: str, subject: Optional[str] = None):
        self.stage = stage
        self.subject = subject
        where = f" for {subject!r}" if subject else ""
        super().__init__(f"{stage} failed{where}: {message}")


class ToolAvailabilityError(PKIError):
    pass
