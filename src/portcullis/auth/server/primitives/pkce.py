"""PKCE (Proof Key for Code Exchange) manager.

Implements RFC 7636 parameter generation and verification. The gateway
generates the verifier, sends only the challenge upstream, and keeps the
verifier in the flow context until the code exchange.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from portcullis.auth.models.errors import PKCEMismatch
from portcullis.auth.models.security import PKCEParameters

VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"
_VERIFIER_CHARS = frozenset(VERIFIER_ALPHABET)


class PKCEManager:
    """Generates and verifies PKCE parameters.

    This implementation follows RFC 7636 requirements:
    - Uses S256 code challenge method (SHA256 + base64url)
    - Generates cryptographically secure code verifiers
    - Compares challenges in constant time
    """

    def generate_parameters(self) -> PKCEParameters:
        """Generate new PKCE parameters for an authorization flow.

        Returns:
            PKCEParameters: Immutable parameters for the authorization flow
        """
        code_verifier = self._generate_code_verifier()
        return PKCEParameters(
            code_verifier=code_verifier,
            code_challenge=self.compute_challenge(code_verifier),
            code_challenge_method="S256",
        )

    def verify(self, code_verifier: str, code_challenge: str) -> bool:
        """Check a verifier against a previously issued challenge.

        Malformed verifiers never verify. The comparison runs in constant
        time.
        """
        if not (43 <= len(code_verifier) <= 128):
            return False
        if not set(code_verifier) <= _VERIFIER_CHARS:
            return False
        expected = self.compute_challenge(code_verifier)
        return secrets.compare_digest(
            expected.encode("ascii"), code_challenge.encode("utf-8")
        )

    def require(self, parameters: PKCEParameters) -> None:
        """Verify stored parameters are consistent before an exchange.

        Raises:
            PKCEMismatch: If the verifier does not produce the challenge
        """
        if not self.verify(parameters.code_verifier, parameters.code_challenge):
            raise PKCEMismatch("Code verifier does not match code challenge")

    @staticmethod
    def compute_challenge(code_verifier: str) -> str:
        """Derive the S256 code challenge from a verifier.

        RFC 7636 Section 4.2: BASE64URL-ENCODE(SHA256(ASCII(code_verifier)))
        """
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    def _generate_code_verifier(self) -> str:
        """Generate a cryptographically secure code verifier.

        RFC 7636 Section 4.1: code verifier must be 43-128 characters long
        and use only unreserved characters:
            [A-Z] / [a-z] / [0-9] / "-" / "." / "_" / "~"

        Returns:
            A 128-character code verifier (maximum length for best security)
        """
        return "".join(secrets.choice(VERIFIER_ALPHABET) for _ in range(128))
