"""Gift code records. Only the hash of a code is ever stored."""

import hashlib
from datetime import date, datetime, time, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


GIFT_IDENTIFIER_PREFIX = "gift:"


def hash_code(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode("utf-8")).hexdigest()


def gift_identifier(code_hash: str) -> str:
    return f"{GIFT_IDENTIFIER_PREFIX}{code_hash}"


class GiftCodeRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    hash: str
    label: str = ""
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    revoked: bool = False

    def is_usable(self, now: datetime) -> bool:
        """Usable iff not revoked and not past its expiry."""
        if self.revoked:
            return False
        if self.expires_at is None:
            return True
        expires = self.expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return expires > now


def parse_fallback_hashes(raw: Optional[str]) -> List[GiftCodeRecord]:
    """Parse ``hash`` / ``hash:YYYY-MM-DD`` entries, comma separated.

    A date-only expiry runs to the end of that day (UTC).
    """
    records: List[GiftCodeRecord] = []
    for entry in (raw or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        code_hash, _, expiry = entry.partition(":")
        expires_at = None
        if expiry:
            day = date.fromisoformat(expiry.strip())
            expires_at = datetime.combine(day, time.max, tzinfo=timezone.utc)
        records.append(GiftCodeRecord(id=f"fallback-{len(records)}", hash=code_hash.strip().lower(), expires_at=expires_at))
    return records


LEGACY_FALLBACK_HASHES = (
    "22b70cf5f3c48d73f301cb49e00b43604b3bff75be01319ce42a7cb2b1574e8a",
    "7ff50e40fc16aaca1dd462c9310b97db4e3455bef6ca8597f6d79d96b80b6f5d",
    "e17feea8d0336808d0626211d4329641363aea251f6cf272826d99b922f73e4b",
    "fc5f03e446befb2b4dff21986943b8e987056056f806a6af7d9354f83a2a476c",
    "ad93e9abe2968f813af1a63ab8f1f811a6771a8fe54f8cdce7db4706fb6cd8ec",
    "064ed653d8255f22b85ef34d3d4d7ba4e0f9a2fcce6146df670d1eeb0d734e8c",
    "01139000e917e30c9833c6008e37a1c5b237a00fc1d928d7bd617d169795442d",
    "47936b5c1a7baef51aef96db4039a30a32ee5b3b29b3992625bf85e04ca91713",
    "7c2d0b10df6053d2748bfc9a8767a062e2024509a9b6f527665bc2309e818767",
    "cd0690feb7fa9c4ee2a287d22e2c5da02557e35cec6cd947af914c9d4ec174ac",
)
