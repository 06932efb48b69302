"""Cryptographic primitives for the PKCE flow.

Secure random bytes, SHA-256 and unpadded base64url (RFC 4648 section 5).
Random bytes come from the operating system CSPRNG; a different
:data:`RandomSource` can be passed in where determinism is needed (tests).
"""

from __future__ import annotations

import binascii
import hashlib
import secrets

from base64 import urlsafe_b64decode, urlsafe_b64encode
from collections.abc import Callable

from ..exceptions import HashError, RandomGenerationError


RandomSource = Callable[[int], bytes]
"""Callable returning ``n`` random bytes."""


def random_bytes(n: int, source: RandomSource | None = None) -> bytes:
    """Return ``n`` cryptographically secure random bytes.

    Parameters
    ----------
    n : int
        Number of bytes.
    source : RandomSource, optional
        Alternative byte source. Defaults to :func:`secrets.token_bytes`.

    Returns
    -------
    bytes
        Exactly ``n`` bytes.

    Raises
    ------
    RandomGenerationError
        If the platform RNG is unavailable or the source misbehaves.
    """
    if n < 0:
        msg = f"Cannot generate a negative number of bytes: {n}"
        raise ValueError(msg)
    generate = source or secrets.token_bytes
    try:
        data = generate(n)
    except (OSError, NotImplementedError) as exc:
        msg = f"Secure random generator unavailable: {exc}"
        raise RandomGenerationError(msg) from exc
    if not isinstance(data, bytes):
        msg = f"Random source returned {type(data).__name__}, expected bytes"
        raise RandomGenerationError(msg)
    if len(data) != n:
        msg = f"Random source returned {len(data)} bytes, expected {n}"
        raise RandomGenerationError(msg)
    return data


def sha256(data: bytes) -> bytes:
    """Return the 32-byte SHA-256 digest of ``data``.

    Raises
    ------
    HashError
        If the hash cannot be computed.
    """
    try:
        return hashlib.sha256(data).digest()
    except (TypeError, ValueError, MemoryError) as exc:
        msg = f"SHA-256 failed: {exc}"
        raise HashError(msg) from exc


def base64url_encode(data: bytes) -> str:
    """Encode bytes as base64url without ``=`` padding."""
    return urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(text: str) -> bytes:
    """Decode unpadded base64url text.

    Raises
    ------
    ValueError
        If ``text`` is not valid base64url.
    """
    if len(text) % 4 == 1:
        msg = f"Invalid base64url length: {len(text)}"
        raise ValueError(msg)
    padded = text + "=" * (-len(text) % 4)
    try:
        return urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as exc:
        msg = f"Invalid base64url data: {exc}"
        raise ValueError(msg) from exc
