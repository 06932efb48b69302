"""PKCE (Proof Key for Code Exchange) implementation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
Uses S256 challenge method (SHA-256 hash of the code verifier).
"""

from __future__ import annotations

import hmac
import re

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .crypto import base64url_encode, random_bytes, sha256


if TYPE_CHECKING:
    from .crypto import RandomSource


VERIFIER_BYTES = 32
VERIFIER_MIN_LENGTH = 43
VERIFIER_MAX_LENGTH = 128

_VERIFIER_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def derive_challenge(verifier: str) -> str:
    """Return the S256 code challenge for ``verifier``."""
    return base64url_encode(sha256(verifier.encode("ascii")))


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (high-entropy random string).
    challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    def __repr__(self) -> str:
        """Hide the verifier."""
        return f"PKCEChallenge(challenge={self.challenge!r}, method={self.method!r})"

    @classmethod
    def generate(cls, random_source: RandomSource | None = None) -> PKCEChallenge:
        """Generate a new PKCE code verifier and challenge.

        The verifier is 32 random bytes in unpadded base64url, i.e.
        43 characters from the unreserved alphabet.

        Parameters
        ----------
        random_source : RandomSource, optional
            Byte source; the OS CSPRNG when omitted. The same bytes
            always yield the same pair.

        Returns
        -------
        PKCEChallenge
            A new PKCE challenge pair.

        Raises
        ------
        RandomGenerationError
            If no secure random bytes are available.
        """
        verifier = base64url_encode(random_bytes(VERIFIER_BYTES, random_source))
        return cls(verifier=verifier, challenge=derive_challenge(verifier))

    @classmethod
    def from_verifier(cls, verifier: str) -> PKCEChallenge:
        """Build a pair from an existing verifier.

        Raises
        ------
        ValueError
            If the verifier violates RFC 7636 length or alphabet rules.
        """
        if not _VERIFIER_PATTERN.match(verifier):
            msg = (
                f"Code verifier must be {VERIFIER_MIN_LENGTH}-{VERIFIER_MAX_LENGTH} "
                "characters from [A-Za-z0-9-._~]"
            )
            raise ValueError(msg)
        return cls(verifier=verifier, challenge=derive_challenge(verifier))

    def verify(self, verifier: str) -> bool:
        """Check whether ``verifier`` hashes to this challenge."""
        try:
            candidate = derive_challenge(verifier)
        except UnicodeEncodeError:
            return False
        return hmac.compare_digest(candidate, self.challenge)
