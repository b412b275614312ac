"""Upload checks for devis files and the reorder payload."""
import re
from typing import Iterable, List, Optional, Sequence

from app.services.errors import ValidationError

MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024
MAX_FILE_SIZE_LABEL = "10 Mo"
DEFAULT_FILENAME = "fichier"
FALLBACK_CONTENT_TYPE = "application/octet-stream"

_PATH_SEPARATORS = re.compile(r"[\\/]+")
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]+")
_DASH_RUNS = re.compile(r"-+")
_EDGE_PUNCTUATION = re.compile(r"^[-.]+|[-.]+$")


def validate_file_for_upload(filename: Optional[str], size: Optional[int]) -> None:
    """Raise ValidationError when no file was sent, or it is empty or too big."""
    if filename is None or size is None:
        raise ValidationError("Aucun fichier fourni.")
    if size <= 0:
        raise ValidationError("Le fichier est vide.")
    if size > MAX_FILE_SIZE_BYTES:
        raise ValidationError(f"Le fichier depasse {MAX_FILE_SIZE_LABEL}.")


def sanitize_filename(filename: str) -> str:
    """Storage-safe name: ASCII letters, digits, dot, dash and underscore only."""
    normalized = _PATH_SEPARATORS.sub("-", filename or "")
    normalized = _UNSAFE_CHARS.sub("-", normalized)
    normalized = _DASH_RUNS.sub("-", normalized)
    normalized = _EDGE_PUNCTUATION.sub("", normalized)
    return normalized or DEFAULT_FILENAME


def upload_content_type(content_type: Optional[str]) -> str:
    # message/* (saved e-mails) is served as a plain download.
    trimmed = (content_type or "").strip()
    if not trimmed:
        return FALLBACK_CONTENT_TYPE
    if trimmed.startswith("message/"):
        return FALLBACK_CONTENT_TYPE
    return trimmed


def normalize_display_name(value: Optional[str], fallback: str) -> str:
    trimmed = (value or "").strip()
    return trimmed or fallback


def validate_reorder_ids(ordered_ids: Sequence[str], existing_ids: Iterable[str]) -> List[str]:
    """The new order must name every existing devis exactly once."""
    if not ordered_ids:
        raise ValidationError("orderedIds must be a non-empty array")
    if len(set(ordered_ids)) != len(ordered_ids):
        raise ValidationError("orderedIds doit contenir des identifiants uniques.")

    existing = set(existing_ids)
    if not existing:
        raise ValidationError("Aucun devis a reordonner pour cette commande.")
    if len(ordered_ids) != len(existing):
        raise ValidationError("La liste de reordonnancement est incomplete.")
    for devis_id in ordered_ids:
        if devis_id not in existing:
            raise ValidationError(f"Devis {devis_id} non trouve dans cette commande.")
    return list(ordered_ids)


_WHITESPACE_RUNS = re.compile(r"\s+")
_FORBIDDEN_IN_NAME = re.compile(r'[\\/:*?"<>|]+')
_UNDERSCORE_RUNS = re.compile(r"_{2,}")
_EDGE_SEPARATORS = re.compile(r"^[_-]+|[_-]+$")


def sanitize_document_name(value: str, fallback: str) -> str:
    """Download name for generated documents; keeps accents, drops path characters."""
    normalized = _WHITESPACE_RUNS.sub("_", (value or "").strip())
    normalized = _FORBIDDEN_IN_NAME.sub("-", normalized)
    normalized = _UNDERSCORE_RUNS.sub("_", normalized)
    normalized = _DASH_RUNS.sub("-", normalized)
    normalized = _EDGE_SEPARATORS.sub("", normalized)
    return normalized or fallback
