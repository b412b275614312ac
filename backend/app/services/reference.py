"""
Purchase-order references.

Format: SUP-PROJ-II-YYMMDDHHMMSS-XXXX
    SUP   first 4 alphanumerics of the supplier name, accents stripped ("FRN")
    PROJ  delivery-site project code, up to 8 alphanumerics ("GEN")
    II    initials of the buyer, up to 3 letters ("XX")
    XXXX  random suffix from an alphabet without 0/O/1/I

The reference column is unique; callers insert through
create_with_unique_reference which regenerates on collision.
"""
import logging
import random
import re
import unicodedata
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from app.services.errors import ReferenceConflictError, ReferenceExhaustedError

logger = logging.getLogger("achats-reference")

MAX_REFERENCE_ATTEMPTS = 5
SUFFIX_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SUFFIX_LENGTH = 4

_NON_ALNUM = re.compile(r"[^A-Z0-9]")

T = TypeVar("T")


def _normalize(value: Optional[str]) -> str:
    decomposed = unicodedata.normalize("NFKD", value or "")
    ascii_only = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub("", ascii_only.upper())


def _initials(user_name: Optional[str]) -> str:
    words = [_normalize(word) for word in (user_name or "").replace("-", " ").split()]
    letters = "".join(word[0] for word in words if word)
    return letters[:3] or "XX"


def build_purchase_order_reference(
    supplier_name: Optional[str],
    project_code: Optional[str],
    user_name: Optional[str],
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> str:
    now = now or datetime.now()
    rng = rng or random.SystemRandom()
    supplier = _normalize(supplier_name)[:4] or "FRN"
    project = _normalize(project_code)[:8] or "GEN"
    suffix = "".join(rng.choice(SUFFIX_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{supplier}-{project}-{_initials(user_name)}-{now:%y%m%d%H%M%S}-{suffix}"


async def create_with_unique_reference(
    build: Callable[[], str],
    insert: Callable[[str], Awaitable[T]],
    max_attempts: int = MAX_REFERENCE_ATTEMPTS,
) -> T:
    """
    Call insert with freshly built references until one is accepted.

    insert must raise ReferenceConflictError when the reference already exists;
    any other error propagates unchanged.
    """
    for attempt in range(1, max_attempts + 1):
        reference = build()
        try:
            return await insert(reference)
        except ReferenceConflictError:
            logger.warning(f"Reference collision on attempt {attempt}: {reference}")
    raise ReferenceExhaustedError()
