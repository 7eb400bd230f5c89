"""At-rest sealing of the OAuth tokens kept on an Integration row.

Each token column seals its value with AES-GCM and binds the column name as
associated data, so a ciphertext moved into the other column no longer opens.
Stored form: ``ENC:v1:<base64(nonce || ciphertext || tag)>``.
"""

from __future__ import annotations

import base64
import os
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from marketsync.config import settings
from marketsync.utils.logger import logger


SEALED_PREFIX = "ENC:v1:"
NONCE_BYTES = 12


@lru_cache(maxsize=4)
def _cipher(secret: str) -> AESGCM:
    key = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"marketsync-token-encryption",
    ).derive(secret.encode("utf-8"))
    return AESGCM(key)


def seal_token(token: str, *, column: str) -> str:
    nonce = os.urandom(NONCE_BYTES)
    sealed = _cipher(settings.secret_key).encrypt(nonce, token.encode("utf-8"), column.encode("ascii"))
    return SEALED_PREFIX + base64.b64encode(nonce + sealed).decode("ascii")


def open_token(stored: Optional[str], *, column: str) -> Optional[str]:
    """Return the plaintext token, or None when the stored value cannot be opened.

    Unsealed values (rows written before sealing) come back unchanged. A sealed
    value that fails authentication reads as a missing token, which sends the
    integration down the refresh or reconnect path.
    """

    if not stored:
        return None
    if not stored.startswith(SEALED_PREFIX):
        return stored
    try:
        blob = base64.b64decode(stored[len(SEALED_PREFIX):], validate=True)
        nonce, sealed = blob[:NONCE_BYTES], blob[NONCE_BYTES:]
        return _cipher(settings.secret_key).decrypt(nonce, sealed, column.encode("ascii")).decode("utf-8")
    except (InvalidTag, ValueError) as exc:
        logger.warning("[crypto] cannot open stored token column=%s error=%s", column, type(exc).__name__)
        return None
