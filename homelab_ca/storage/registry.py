"""Keyed store of issued leaf certificates (`registry.json`).

Maps each subject common name to its current certificate record and the
directory holding its files. Re-issuing a subject replaces its entry.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field

from ..common.errors import StateInconsistencyError, ValidationError
from ..common.models import CertificateRecord, Model
from .files import LOCK_FILE, TierLock, atomic_write
from .layout import LEAF_CERT, LEAF_CSR, LEAF_FULLCHAIN, LEAF_KEY, PKILayout

logger = logging.getLogger(__name__)

REGISTRY_FILE = "registry.json"
# bookkeeping files sharing the server directory with the subject directories
RESERVED_NAMES = (REGISTRY_FILE, LOCK_FILE)


class LeafEntry(Model):
    subject_name: str
    directory: str
    serial: int
    dns_names: List[str] = Field(default_factory=list)
    not_after: datetime
    issued_at: datetime


def directory_name(common_name: str) -> str:
    """Directory for a subject; wildcards become a literal 'wildcard' label."""
    return common_name.replace("*", "wildcard")


class LeafRegistry:

    def __init__(self, layout: PKILayout):
        self.layout = layout
        self.path = layout.server_certs_dir / REGISTRY_FILE
        self.lock = TierLock(layout.server_certs_dir)

    def _load(self) -> Dict[str, LeafEntry]:
        if not self.path.exists():
            return {}
        if not self.path.is_file():
            raise StateInconsistencyError(f"Leaf registry is not a regular file: {self.path}")
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        return {name: LeafEntry(**entry) for name, entry in data.get("subjects", {}).items()}

    def _save(self, entries: Dict[str, LeafEntry]) -> None:
        data = {"subjects": {name: e.model_dump(mode="json") for name, e in sorted(entries.items())}}
        atomic_write(self.path, json.dumps(data, indent=2) + "\n")

    def directory_for(self, common_name: str) -> Path:
        """Directory holding the subject's files; rejects a clash with another subject."""
        wanted = directory_name(common_name)
        if wanted in RESERVED_NAMES or wanted.startswith("."):
            raise ValidationError(
                f"Common name {common_name!r} is reserved for files in {self.layout.server_certs_dir}"
            )
        path = self.layout.leaf_dir(wanted)
        if path.exists() and not path.is_dir():
            raise ValidationError(f"{path} exists and is not a directory")
        for name, entry in self._load().items():
            if entry.directory == wanted and name != common_name:
                raise ValidationError(
                    f"Directory {wanted!r} is already used by subject {name!r}"
                )
        return path

    def put(self, record: CertificateRecord, directory: Path, issued_at: datetime) -> LeafEntry:
        entry = LeafEntry(
            subject_name=record.subject_name,
            directory=directory.name,
            serial=record.serial,
            dns_names=record.subject_alt_names,
            not_after=record.not_after,
            issued_at=issued_at,
        )
        with self.lock:
            entries = self._load()
            previous = entries.get(record.subject_name)
            if previous is not None:
                logger.info("Replacing certificate for %s (serial %d -> %d)",
                            record.subject_name, previous.serial, record.serial)
            entries[record.subject_name] = entry
            self._save(entries)
        return entry

    def get(self, subject_name: str) -> Optional[LeafEntry]:
        return self._load().get(subject_name)

    def subjects(self) -> List[str]:
        return sorted(self._load())

    def files(self, subject_name: str) -> Dict[str, Path]:
        entry = self.get(subject_name)
        if entry is None:
            raise ValidationError(f"No server certificate registered for {subject_name!r}")
        base = self.layout.leaf_dir(entry.directory)
        return {
            "key": base / LEAF_KEY,
            "csr": base / LEAF_CSR,
            "cert": base / LEAF_CERT,
            "fullchain": base / LEAF_FULLCHAIN,
        }
