"""Double-submit CSRF tokens bound to a session's token family."""

from __future__ import annotations

import hmac
from typing import Optional

from sessionguard.core.security import generate_token, sign_csrf_nonce


class CsrfTokenManager:
    """
    Issue and check ``nonce.signature`` tokens

    The signature covers the token family id, so a token minted for one login
    lineage is useless with another session cookie. Nothing is stored
    server-side.
    """

    def issue(self, family_id: str) -> str:
        nonce = generate_token(24)
        return f"{nonce}.{sign_csrf_nonce(nonce, family_id)}"

    def validate(
        self,
        cookie_value: Optional[str],
        header_value: Optional[str],
        family_id: Optional[str],
    ) -> bool:
        if not cookie_value or not header_value or not family_id:
            return False
        if not hmac.compare_digest(cookie_value.encode("utf-8"), header_value.encode("utf-8")):
            return False
        nonce, sep, signature = header_value.rpartition(".")
        if not sep or not nonce or not signature:
            return False
        return hmac.compare_digest(signature, sign_csrf_nonce(nonce, family_id))
