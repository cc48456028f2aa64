from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from invoice_downloader.common.json_logger import JsonLogger, log_event
from invoice_downloader.crypto import decrypt_secret, encrypt_secret
from invoice_downloader.storage.ledger import StorageError
from invoice_downloader.totp import SecretFormatError, is_valid_secret

__all__ = ["Credential", "CredentialStore"]


class Credential(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    username: str = Field(min_length=1)
    password: str = Field(default="", repr=False)
    extra_fields: Dict[str, str] = Field(default_factory=dict, repr=False)
    totp_enabled: bool = False
    totp_secret: Optional[str] = Field(default=None, repr=False)
    last_updated: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_totp(self) -> "Credential":
        if self.totp_enabled and not self.totp_secret:
            raise ValueError("totp_enabled requires a totp_secret")
        return self


class CredentialStore:
    """Vendor credentials kept in one encrypted JSON document."""

    def __init__(self, path: Path, secret_key: str, *, logger: JsonLogger) -> None:
        self.path = Path(path)
        self._secret_key = secret_key
        self.logger = logger

    def _load(self) -> Dict[str, Credential]:
        """Read the whole store, raising ``StorageError`` when an existing file cannot be used."""

        try:
            token = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StorageError(f"unable to read credential store {self.path}: {exc}") from exc
        if not token:
            return {}

        try:
            payload = json.loads(decrypt_secret(self._secret_key, token))
            return {vendor_id: Credential.model_validate(raw) for vendor_id, raw in payload.items()}
        except (ValueError, TypeError, AttributeError, ValidationError) as exc:
            raise StorageError(
                f"credential store {self.path} is unreadable with the configured SECRET_KEY: {exc}"
            ) from exc

    def _read(self) -> Dict[str, Credential]:
        try:
            return self._load()
        except StorageError as exc:
            log_event(
                logger=self.logger,
                phase="credentials",
                status="error",
                message="Credential store unreadable; treating as empty",
                path=str(self.path),
                error=str(exc),
            )
            return {}

    def _write(self, credentials: Dict[str, Credential]) -> None:
        document = json.dumps({vendor_id: cred.model_dump(mode="json") for vendor_id, cred in credentials.items()})
        token = encrypt_secret(self._secret_key, document)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(token)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get_credential(self, vendor_id: str) -> Credential | None:
        credential = self._read().get(vendor_id)
        return credential.model_copy() if credential is not None else None

    def get_all_credentials(self) -> Dict[str, Credential]:
        return self._read()

    def store_credential(self, vendor_id: str, credential: Credential) -> Credential:
        """Add or replace one vendor entry.

        Raises ``StorageError`` instead of overwriting a store that the current
        key cannot decrypt.
        """

        if credential.totp_secret and not is_valid_secret(credential.totp_secret):
            raise SecretFormatError("TOTP secret is not valid Base32, hex or Base64")
        stamped = credential.model_copy(update={"last_updated": datetime.now(timezone.utc)})
        credentials = self._load()
        credentials[vendor_id] = stamped
        self._write(credentials)
        log_event(
            logger=self.logger,
            phase="credentials",
            message="Credential stored",
            vendor_id=vendor_id,
            totp_enabled=stamped.totp_enabled,
        )
        return stamped

    def remove_credential(self, vendor_id: str) -> bool:
        credentials = self._load()
        if credentials.pop(vendor_id, None) is None:
            return False
        self._write(credentials)
        log_event(logger=self.logger, phase="credentials", message="Credential removed", vendor_id=vendor_id)
        return True
