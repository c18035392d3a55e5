"""Per-CA serial counter and append-only issuance index.

Each CA directory holds:
- `serial`: the next serial number to hand out, decimal text
- `index.json`: every certificate the CA has signed, oldest first

Serials start at 1000 and are never reset or reused, even when the same
subject is issued again. Both files are rewritten atomically under the
directory's TierLock.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..common.errors import StateInconsistencyError
from ..common.models import LedgerEntry, Tier
from .files import TierLock, atomic_write

logger = logging.getLogger(__name__)

INITIAL_SERIAL = 1000
SERIAL_FILE = "serial"
INDEX_FILE = "index.json"


class SerialLedger:
    """Serial counter and issuance log for one issuing CA."""

    def __init__(self, tier: Tier, directory: Union[str, Path]):
        self.tier = tier
        self.directory = Path(directory)
        self.serial_path = self.directory / SERIAL_FILE
        self.index_path = self.directory / INDEX_FILE
        self.lock = TierLock(self.directory)

    def initialize(self) -> None:
        """Create the serial and index files if they do not exist yet."""
        with self.lock:
            if not self.serial_path.exists():
                atomic_write(self.serial_path, f"{INITIAL_SERIAL}\n")
            if not self.index_path.exists():
                self._write_entries([])

    def peek(self) -> int:
        """Return the serial the next call to next_serial() would hand out."""
        if not self.serial_path.exists():
            return INITIAL_SERIAL
        raw = self.serial_path.read_text(encoding="utf-8").strip()
        try:
            value = int(raw)
        except ValueError:
            raise StateInconsistencyError(
                f"{self.tier.value} CA serial file is corrupt: {self.serial_path} ({raw!r})"
            ) from None
        if value < INITIAL_SERIAL:
            raise StateInconsistencyError(
                f"{self.tier.value} CA serial {value} is below {INITIAL_SERIAL}: {self.serial_path}"
            )
        return value

    def next_serial(self) -> int:
        """Return the current counter and advance it by one."""
        with self.lock:
            serial = self.peek()
            atomic_write(self.serial_path, f"{serial + 1}\n")
        logger.debug("%s CA reserved serial %d", self.tier.value, serial)
        return serial

    def record(
        self,
        serial: int,
        subject_name: str,
        issued_at: datetime,
        not_before: Optional[datetime] = None,
        not_after: Optional[datetime] = None,
    ) -> LedgerEntry:
        """Append an issuance to the index."""
        entry = LedgerEntry(
            serial=serial,
            subject_name=subject_name,
            issued_at=issued_at,
            not_before=not_before,
            not_after=not_after,
        )
        with self.lock:
            entries = self.entries()
            if any(e.serial == serial for e in entries):
                raise StateInconsistencyError(
                    f"serial {serial} already recorded in {self.index_path}"
                )
            entries.append(entry)
            self._write_entries(entries)
        logger.info("%s CA issued serial %d to %s", self.tier.value, serial, subject_name)
        return entry

    def entries(self) -> List[LedgerEntry]:
        if not self.index_path.exists():
            return []
        with open(self.index_path, encoding="utf-8") as f:
            data = json.load(f)
        return [LedgerEntry(**e) for e in data.get("entries", [])]

    def find(self, serial: int) -> Optional[LedgerEntry]:
        for entry in self.entries():
            if entry.serial == serial:
                return entry
        return None

    def history(self, subject_name: str) -> List[LedgerEntry]:
        """All issuances for one subject, oldest first."""
        return [e for e in self.entries() if e.subject_name == subject_name]

    def _write_entries(self, entries: List[LedgerEntry]) -> None:
        data: Dict[str, Any] = {
            "tier": self.tier.value,
            "entries": [e.model_dump(mode="json") for e in entries],
        }
        atomic_write(self.index_path, json.dumps(data, indent=2) + "\n")
