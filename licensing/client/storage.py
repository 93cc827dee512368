"""
licensing/client/storage.py

Local activation record for the consuming application.

The record is versioned. ``migrate_activation_store`` runs once at startup
and is the only place older layouts are understood; read paths never
special-case them.

Layouts:
- v1: the legacy ``companion_activation`` payload (camelCase keys, optional
  token/identifier, revalidation timestamp kept elsewhere and not carried)
- v2: ActivationRecord below
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


logger = logging.getLogger("licensing.client")

CURRENT_VERSION = 2


class ActivationRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: int = CURRENT_VERSION
    activated: bool = False
    email: Optional[str] = None
    identifier: Optional[str] = None
    plan: Optional[str] = None
    token: Optional[str] = None
    activated_at: Optional[datetime] = Field(default=None, alias="activatedAt")
    is_beta_tester: bool = Field(default=False, alias="isBetaTester")
    beta_expires_at: Optional[datetime] = Field(default=None, alias="betaExpiresAt")
    last_revalidated_at: Optional[datetime] = Field(default=None, alias="lastRevalidatedAt")

    @property
    def has_credential(self) -> bool:
        return bool(self.token and self.identifier)


def upgrade_payload(data: Dict[str, Any]) -> ActivationRecord:
    """Bring a stored payload of any known version to the current record."""
    version = data.get("version", 1)
    if version >= CURRENT_VERSION:
        return ActivationRecord.model_validate(data)

    # The v1 revalidation timestamp is not carried: the first launch after
    # migration always revalidates (or attempts the silent upgrade).
    return ActivationRecord(
        activated=bool(data.get("activated")),
        email=data.get("email"),
        identifier=data.get("identifier"),
        plan=data.get("plan"),
        token=data.get("token"),
        activated_at=data.get("activatedAt"),
        is_beta_tester=bool(data.get("isBetaTester")),
        beta_expires_at=data.get("betaExpiresAt"),
    )


class ActivationStore:
    """JSON file holding one ActivationRecord."""

    def __init__(self, path: Union[str, Path], legacy_path: Optional[Union[str, Path]] = None):
        self.path = Path(path)
        self.legacy_path = Path(legacy_path) if legacy_path else None

    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("activation record unreadable, treating as inactive", extra={"path": str(path)})
            return None
        return data if isinstance(data, dict) else None

    def load(self) -> ActivationRecord:
        data = self._read_json(self.path)
        if data is None:
            return ActivationRecord()
        try:
            return ActivationRecord.model_validate(data)
        except ValidationError:
            logger.warning("activation record invalid, treating as inactive", extra={"path": str(self.path)})
            return ActivationRecord()

    def save(self, record: ActivationRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = record.model_dump_json(exclude_none=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".activation-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise


def migrate_activation_store(store: ActivationStore) -> bool:
    """Upgrade the stored record to the current version. Returns True if anything changed.

    - A legacy file is moved into the primary path (the primary wins if both exist).
    - A v1 payload is upgraded in place.
    """
    changed = False
    data = store._read_json(store.path)

    if store.legacy_path is not None and store.legacy_path.exists():
        if data is None:
            data = store._read_json(store.legacy_path)
        store.legacy_path.unlink()
        changed = True

    if data is None:
        return changed

    if data.get("version", 1) < CURRENT_VERSION or changed:
        try:
            record = upgrade_payload(data)
        except ValidationError:
            logger.warning("activation record could not be migrated, discarding", extra={"path": str(store.path)})
            record = ActivationRecord()
        store.save(record)
        logger.info("activation record migrated", extra={"status": f"v{data.get('version', 1)}->v{CURRENT_VERSION}"})
        changed = True

    return changed
