"""Credential record as stored in the api_keys table."""

import json
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List

SECRET_FIELDS = ("api_key", "password")


@dataclass
class CredentialRecord:
    """One stored secret for one service. Secret columns hold ciphertext."""
    id: str
    user_id: str
    service_name: str
    encrypted_api_key: str
    email_username: str = ""
    encrypted_password: str = ""
    notes: str = ""
    tags: List[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def ciphertext(self, field_name: str) -> str:
        """Ciphertext of a secret field ('api_key' or 'password'), '' if none."""
        if field_name == "api_key":
            return self.encrypted_api_key
        if field_name == "password":
            return self.encrypted_password
        raise ValueError(f"Unknown secret field: {field_name}")

    @property
    def has_password(self) -> bool:
        return bool(self.encrypted_password)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CredentialRecord":
        """Create from a store row (tags arrive as a JSON array string)."""
        tags = row.get("tags") or []
        if isinstance(tags, str):
            tags = json.loads(tags) if tags else []
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            service_name=row["service_name"],
            encrypted_api_key=row["encrypted_api_key"],
            email_username=row.get("email_username") or "",
            encrypted_password=row.get("encrypted_password") or "",
            notes=row.get("notes") or "",
            tags=list(tags),
            created_at=row.get("created_at") or "",
            updated_at=row.get("updated_at") or "",
        )
