"""
SIP Digest Authentication.
Parses WWW-Authenticate / Proxy-Authenticate challenges and computes the matching credentials.
"""

import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from typing import Dict, Optional

from doorbell_bridge.exceptions import AuthRequired

logger = logging.getLogger(__name__)

_PARAM_RE = re.compile(r'([\w\-]+)\s*=\s*(?:"([^"]*)"|([^\s,]+))')


@dataclass
class AuthChallenge:
    """Digest challenge taken from a 401 or 407 response."""
    realm: str
    nonce: str
    opaque: Optional[str] = None
    qop: Optional[str] = None
    algorithm: str = "MD5"
    is_proxy: bool = False

    @classmethod
    def parse(cls, header: str, is_proxy: bool = False) -> "AuthChallenge":
        """
        Parse a challenge header value.

        Raises:
            AuthRequired: if the header is not a usable Digest challenge.
        """
        value = header.strip()
        if not value.lower().startswith("digest "):
            raise AuthRequired(f"Unsupported authentication scheme: {value[:20]}")

        params = _parse_auth_params(value[7:])
        realm = params.get("realm")
        nonce = params.get("nonce")
        if not realm or not nonce:
            raise AuthRequired("Realm or nonce not found in auth header")

        algorithm = params.get("algorithm", "MD5")
        if algorithm.upper() != "MD5":
            raise AuthRequired(f"Unsupported digest algorithm: {algorithm}")

        return cls(
            realm=realm,
            nonce=nonce,
            opaque=params.get("opaque"),
            qop=params.get("qop"),
            algorithm=algorithm,
            is_proxy=is_proxy,
        )

    @property
    def header_name(self) -> str:
        """Name of the request header that answers this challenge."""
        return "Proxy-Authorization" if self.is_proxy else "Authorization"


def _parse_auth_params(header: str) -> Dict[str, str]:
    params = {}
    for match in _PARAM_RE.finditer(header):
        key = match.group(1).lower()
        params[key] = match.group(2) if match.group(2) is not None else match.group(3)
    return params


class DigestAuthenticator:
    """
    Computes Digest credentials for our SIP account.
    """

    def __init__(self, username: str, password: str):
        self.username = username
        self.password = password

    def authorization(self, method: str, uri: str, challenge: AuthChallenge,
                      cnonce: Optional[str] = None, nonce_count: int = 1) -> str:
        """
        Build the Authorization header value for a request.

        When the challenge offers qop=auth, the response covers the client nonce and nonce count.
        """
        ha1 = self._md5(f"{self.username}:{challenge.realm}:{self.password}")
        ha2 = self._md5(f"{method}:{uri}")

        qop = None
        if challenge.qop:
            options = [q.strip() for q in challenge.qop.split(",")]
            if "auth" in options:
                qop = "auth"

        auth_parts = [
            f'username="{self.username}"',
            f'realm="{challenge.realm}"',
            f'nonce="{challenge.nonce}"',
            f'uri="{uri}"',
        ]

        if qop:
            cnonce = cnonce or secrets.token_hex(8)
            nc = f"{nonce_count:08x}"
            response = self._md5(f"{ha1}:{challenge.nonce}:{nc}:{cnonce}:{qop}:{ha2}")
            auth_parts.append(f'response="{response}"')
            auth_parts.extend([f"qop={qop}", f"nc={nc}", f'cnonce="{cnonce}"'])
        else:
            response = self._md5(f"{ha1}:{challenge.nonce}:{ha2}")
            auth_parts.append(f'response="{response}"')

        auth_parts.append(f"algorithm={challenge.algorithm}")
        if challenge.opaque is not None:
            auth_parts.append(f'opaque="{challenge.opaque}"')

        return "Digest " + ", ".join(auth_parts)

    @staticmethod
    def _md5(value: str) -> str:
        return hashlib.md5(value.encode()).hexdigest()
