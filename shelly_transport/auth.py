"""HTTP Basic and Digest authentication helpers (RFC 2617, RFC 7616).

The HTTP transport performs the two-step digest handshake using
``parse_digest_challenge`` and ``build_digest_authorization``. ``AuthData``
covers the RPC-level ``auth`` object that Gen2+ devices accept inside the
request envelope over WebSocket and MQTT.
"""

from __future__ import annotations

import hashlib
import re
import secrets
from dataclasses import dataclass
from typing import Any

import aiohttp

from .errors import ShellyAuthError

DEFAULT_ALGORITHM = "MD5"
SHA256_ALGORITHMS = frozenset({"SHA-256", "SHA-256-sess"})
INITIAL_NONCE_COUNT = "00000001"

_PARAM_RE = re.compile(r'([\w-]+)\s*=\s*("(?:[^"\\]|\\.)*"|[^,\s]*)')


def basic_auth_header(username: str, password: str) -> str:
    """Return the ``Authorization`` value for Basic authentication."""
    return aiohttp.BasicAuth(username, password).encode()


@dataclass(frozen=True)
class DigestChallenge:
    """Parameters of a ``WWW-Authenticate: Digest`` challenge."""

    realm: str
    nonce: str
    qop: str | None = None
    algorithm: str = DEFAULT_ALGORITHM
    opaque: str | None = None


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


def parse_digest_challenge(header: str) -> DigestChallenge:
    """Parse a ``WWW-Authenticate`` header value into a DigestChallenge.

    Raises:
        ShellyAuthError: If the header is not a Digest challenge or lacks
            realm or nonce.
    """
    scheme, _, params = header.strip().partition(" ")
    if scheme.lower() != "digest":
        raise ShellyAuthError("no digest challenge in response")

    values = {
        key.lower(): _unquote(raw) for key, raw in _PARAM_RE.findall(params)
    }

    realm = values.get("realm", "")
    nonce = values.get("nonce", "")
    if not realm or not nonce:
        raise ShellyAuthError("invalid digest challenge: missing realm or nonce")

    qop = None
    offered = [item.strip() for item in values.get("qop", "").split(",") if item.strip()]
    if offered:
        qop = "auth" if "auth" in offered else offered[0]

    return DigestChallenge(
        realm=realm,
        nonce=nonce,
        qop=qop,
        algorithm=values.get("algorithm") or DEFAULT_ALGORITHM,
        opaque=values.get("opaque") or None,
    )


def generate_cnonce(nbytes: int = 8) -> str:
    """Generate a hex-encoded client nonce."""
    return secrets.token_hex(nbytes)


def hash_hex(data: str, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Hash ``data`` with the digest algorithm, MD5 when unknown."""
    if algorithm in SHA256_ALGORITHMS:
        return hashlib.sha256(data.encode()).hexdigest()
    return hashlib.md5(data.encode(), usedforsecurity=False).hexdigest()


def calculate_digest_response(
    username: str,
    password: str,
    realm: str,
    nonce: str,
    nc: str,
    cnonce: str,
    qop: str | None,
    method: str,
    uri: str,
    algorithm: str = DEFAULT_ALGORITHM,
) -> str:
    """Compute the digest ``response`` value.

    ``HA1 = H(username:realm:password)`` and ``HA2 = H(method:uri)``. With a
    qop of ``auth`` or ``auth-int`` the response is
    ``H(HA1:nonce:nc:cnonce:qop:HA2)``, otherwise ``H(HA1:nonce:HA2)``.
    """
    ha1 = hash_hex(f"{username}:{realm}:{password}", algorithm)
    ha2 = hash_hex(f"{method}:{uri}", algorithm)
    if qop in ("auth", "auth-int"):
        return hash_hex(f"{ha1}:{nonce}:{nc}:{cnonce}:{qop}:{ha2}", algorithm)
    return hash_hex(f"{ha1}:{nonce}:{ha2}", algorithm)


def build_digest_authorization(
    username: str,
    password: str,
    challenge: DigestChallenge,
    method: str,
    uri: str,
    *,
    cnonce: str | None = None,
    nc: str = INITIAL_NONCE_COUNT,
) -> str:
    """Build the ``Authorization: Digest ...`` header answering a challenge."""
    cnonce = cnonce or generate_cnonce()
    response = calculate_digest_response(
        username,
        password,
        challenge.realm,
        challenge.nonce,
        nc,
        cnonce,
        challenge.qop,
        method,
        uri,
        challenge.algorithm,
    )

    value = (
        f'Digest username="{username}", realm="{challenge.realm}", '
        f'nonce="{challenge.nonce}", uri="{uri}", response="{response}"'
    )
    if challenge.qop:
        value += f', qop={challenge.qop}, nc={nc}, cnonce="{cnonce}"'
    if challenge.opaque:
        value += f', opaque="{challenge.opaque}"'
    # Some servers reject an explicit MD5 algorithm parameter.
    if challenge.algorithm != DEFAULT_ALGORITHM:
        value += f", algorithm={challenge.algorithm}"
    return value


@dataclass
class AuthData:
    """RPC-level ``auth`` object carried inside a request envelope."""

    username: str = ""
    password: str = ""
    realm: str = ""
    nonce: str = ""
    cnonce: str = ""
    algorithm: str = ""
    response: str = ""
    nc: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in self.__dict__.items() if value}


def calculate_ha1(
    username: str, password: str, realm: str, algorithm: str = "SHA-256"
) -> str:
    """Pre-compute HA1 so the plaintext password need not be stored."""
    return hash_hex(f"{username}:{realm}:{password}", algorithm)


def digest_auth_data_from_ha1(
    username: str,
    ha1: str,
    realm: str,
    nonce: str,
    *,
    method: str = "dummy_method",
    uri: str = "dummy_uri",
    algorithm: str = "SHA-256",
) -> AuthData:
    """Build RPC-level digest credentials from a pre-computed HA1."""
    cnonce = secrets.token_hex(16)
    nc = 1
    ha2 = hash_hex(f"{method}:{uri}", algorithm)
    response = hash_hex(f"{ha1}:{nonce}:{nc:08x}:{cnonce}:auth:{ha2}", algorithm)
    return AuthData(
        username=username,
        realm=realm,
        nonce=nonce,
        cnonce=cnonce,
        algorithm=algorithm,
        response=response,
        nc=nc,
    )


def digest_auth_data(
    username: str,
    password: str,
    realm: str,
    nonce: str,
    *,
    method: str = "dummy_method",
    uri: str = "dummy_uri",
    algorithm: str = "SHA-256",
) -> AuthData:
    """Build RPC-level digest credentials answering a device challenge."""
    return digest_auth_data_from_ha1(
        username,
        calculate_ha1(username, password, realm, algorithm),
        realm,
        nonce,
        method=method,
        uri=uri,
        algorithm=algorithm,
    )


def validate_auth_data(auth: AuthData | None) -> None:
    """Check that ``auth`` holds the fields its scheme needs.

    Raises:
        ValueError: If a required field is missing.
    """
    if auth is None:
        raise ValueError("auth data is required")
    if not auth.username:
        raise ValueError("username is required")
    if auth.response:
        if not auth.realm:
            raise ValueError("realm is required for digest auth")
        if not auth.nonce:
            raise ValueError("nonce is required for digest auth")
        if not auth.cnonce:
            raise ValueError("cnonce is required for digest auth")
        if auth.nc <= 0:
            raise ValueError("nc must be positive for digest auth")
    elif not auth.password:
        raise ValueError("password is required for basic auth")
