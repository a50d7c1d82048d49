"""
Payload codec for the session table.

Attributes are serialized to JSON and stored as URL-safe base64 text.
When an encryption key is configured the JSON is wrapped in a Fernet
token instead, which is itself URL-safe base64 text.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Dict, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken

from dbsession.core.config import SessionSettings
from dbsession.core.errors import CorruptPayload, TypeMismatch

logger = logging.getLogger(__name__)


class PayloadCodec:
    """Encode and decode the session attribute map."""

    def __init__(self, encryption_key: Optional[str] = None):
        self._cipher = Fernet(encryption_key.encode("ascii")) if encryption_key else None

    @classmethod
    def from_settings(cls, settings: SessionSettings) -> "PayloadCodec":
        return cls(encryption_key=settings.encryption_key)

    @property
    def encrypted(self) -> bool:
        return self._cipher is not None

    def encode(self, attributes: Mapping[str, Any]) -> str:
        """
        Serialize the attribute map to storage-safe text.

        Args:
            attributes: Session attributes, JSON-representable values only

        Returns:
            ASCII text suitable for the payload column

        Raises:
            TypeMismatch: If a value cannot be represented
        """
        try:
            raw = json.dumps(
                dict(attributes),
                ensure_ascii=False,
                separators=(",", ":"),
                allow_nan=False,
            ).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise TypeMismatch(f"Session value cannot be stored: {e}") from e

        if self._cipher is not None:
            return self._cipher.encrypt(raw).decode("ascii")
        return base64.urlsafe_b64encode(raw).decode("ascii")

    def decode(self, payload: str) -> Dict[str, Any]:
        """
        Deserialize a stored payload back into an attribute map.

        Raises:
            CorruptPayload: If the payload is malformed in any way
        """
        if isinstance(payload, str):
            try:
                token = payload.encode("ascii")
            except UnicodeEncodeError as e:
                raise CorruptPayload("Payload is not ASCII text") from e
        elif isinstance(payload, (bytes, bytearray)):
            token = bytes(payload)
        else:
            raise CorruptPayload(f"Unexpected payload type: {type(payload).__name__}")

        try:
            if self._cipher is not None:
                raw = self._cipher.decrypt(token)
            else:
                raw = base64.urlsafe_b64decode(token)
        except InvalidToken as e:
            raise CorruptPayload("Payload failed authentication") from e
        except (binascii.Error, ValueError) as e:
            raise CorruptPayload("Payload is not valid base64") from e

        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise CorruptPayload("Payload is not valid JSON") from e

        if not isinstance(data, dict):
            raise CorruptPayload("Payload does not contain a mapping")

        return data
