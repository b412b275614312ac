"""
Devis Storage - supplier-quote files on local disk, served through signed links.

Files live under DEVIS_STORAGE_DIR at purchase-orders/{order_id}/{uuid}-{name}.
Download links carry a short-lived JWT naming the storage path, so the
download endpoint needs no session.
"""
import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt

from app.services.errors import NotFoundError, StoreError, ValidationError
from app.services.file_validation import sanitize_filename

logger = logging.getLogger("achats-devis")

DEVIS_STORAGE_DIR = os.getenv("DEVIS_STORAGE_DIR", "/tmp/devis")
SIGNED_URL_TTL_SECONDS = 60 * 10
DOWNLOAD_PATH = "/api/devis/download"

_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "changethis_use_a_real_secret_in_production_64chars")
_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
_TOKEN_SCOPE = "devis-download"


def build_storage_path(order_id: str, original_filename: str) -> str:
    return f"purchase-orders/{order_id}/{uuid.uuid4()}-{sanitize_filename(original_filename)}"


class DevisStorage:
    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = os.path.abspath(base_dir or DEVIS_STORAGE_DIR)

    def _resolve(self, storage_path: str) -> str:
        full_path = os.path.abspath(os.path.join(self.base_dir, storage_path))
        if os.path.commonpath([full_path, self.base_dir]) != self.base_dir:
            raise ValidationError("Chemin de fichier invalide.")
        return full_path

    def save(self, storage_path: str, content: bytes) -> None:
        full_path = self._resolve(storage_path)
        if os.path.exists(full_path):
            raise StoreError("The resource already exists")
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        try:
            with open(full_path, "wb") as f:
                f.write(content)
        except OSError as e:
            raise StoreError(str(e)) from e
        logger.info(f"Devis stored: {storage_path} ({len(content)} bytes)")

    def read(self, storage_path: str) -> bytes:
        full_path = self._resolve(storage_path)
        if not os.path.isfile(full_path):
            raise NotFoundError("Devis introuvable.")
        with open(full_path, "rb") as f:
            return f.read()

    def remove(self, storage_path: str) -> None:
        full_path = self._resolve(storage_path)
        try:
            os.remove(full_path)
        except FileNotFoundError:
            logger.warning(f"Devis already missing on disk: {storage_path}")
        except OSError as e:
            raise StoreError(str(e)) from e

    def create_signed_url(self, storage_path: str, ttl_seconds: int = SIGNED_URL_TTL_SECONDS) -> str:
        expire = datetime.utcnow() + timedelta(seconds=ttl_seconds)
        token = jwt.encode(
            {"path": storage_path, "scope": _TOKEN_SCOPE, "exp": expire},
            _SECRET_KEY,
            algorithm=_ALGORITHM,
        )
        return f"{DOWNLOAD_PATH}?token={token}"

    def verify_download_token(self, token: str) -> str:
        """Storage path named by a valid, unexpired download token."""
        try:
            payload = jwt.decode(token, _SECRET_KEY, algorithms=[_ALGORITHM])
        except JWTError:
            raise NotFoundError("Lien de telechargement invalide ou expire.")
        if payload.get("scope") != _TOKEN_SCOPE or not payload.get("path"):
            raise NotFoundError("Lien de telechargement invalide ou expire.")
        return payload["path"]


def get_devis_storage() -> DevisStorage:
    """FastAPI dependency; overridden in tests."""
    return DevisStorage()
