"""
registry/crypto.py

Encryption at rest for the clinical sections of active cases.

Only ``Case.sections`` is encrypted.  The whole sections mapping of a case
(history, medications, admission, entries, outcome) is stored as one Fernet
token, so a case row never carries section names or sizes in the clear.
Archive records are aggregated and anonymized and are stored as plain JSON.

Keys
----
APP_DATA_KEY holds one or more URL-safe base64 Fernet keys, comma separated,
as produced by ``Fernet.generate_key()``.  The first key encrypts; every key
is tried on decryption, so a new key can be put in front while cases written
under the old one stay readable until they are archived.

Without APP_DATA_KEY a throwaway in-memory key is used and a warning is
logged: sections written in that process cannot be read after a restart.
"""

import json
import logging
import os
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

logger = logging.getLogger(__name__)

_ENV_KEY_NAME = "APP_DATA_KEY"


@lru_cache(maxsize=1)
def _get_fernet() -> MultiFernet:
    raw_keys = [k.strip() for k in os.environ.get(_ENV_KEY_NAME, "").split(",") if k.strip()]

    if raw_keys:
        logger.debug("Loaded %d section key(s) from '%s'.", len(raw_keys), _ENV_KEY_NAME)
        return MultiFernet([Fernet(k.encode("utf-8")) for k in raw_keys])

    logger.warning(
        "%s is not set. Using a temporary in-memory key; case sections will "
        "NOT be readable after a process restart.",
        _ENV_KEY_NAME,
    )
    return MultiFernet([Fernet(Fernet.generate_key())])


def encrypt_sections(sections: dict) -> str:
    """
    Serialize a case's sections mapping (section name -> section dict) and
    encrypt it.  Returns the Fernet token as text.
    """
    plaintext = json.dumps(sections, ensure_ascii=False, default=str).encode("utf-8")
    return _get_fernet().encrypt(plaintext).decode("utf-8")


def decrypt_sections(token: str) -> dict:
    """
    Inverse of :func:`encrypt_sections`.

    Raises:
        cryptography.fernet.InvalidToken: No configured key opens the token,
            or the plaintext is not a sections mapping.
    """
    try:
        plaintext = _get_fernet().decrypt(token.encode("utf-8"))
    except InvalidToken:
        logger.error("Case sections could not be decrypted: unknown key or corrupted token.")
        raise
    sections = json.loads(plaintext.decode("utf-8"))
    if not isinstance(sections, dict):
        logger.error("Decrypted case sections are not a mapping.")
        raise InvalidToken
    return sections
