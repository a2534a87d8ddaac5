"""TC3-HMAC-SHA256 request signing for Tencent Cloud style backends.

The steps below form a cryptographic protocol and must stay in this order:

1. canonical request (method, ``/``, empty query, headers, payload hash)
2. credential scope ``<date>/<service>/tc3_request``
3. string to sign
4. signing key derived by HMAC chaining from the secret key
5. hex signature and the ``Authorization`` header

Given the same :class:`SigningContext` (timestamp included) the produced
headers are byte-identical.
"""
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import urlsplit

from core.errors import SigningError

ALGORITHM = "TC3-HMAC-SHA256"
CANONICAL_URI = "/"
CANONICAL_QUERY = ""
SCOPE_TERMINATOR = "tc3_request"


def sha256_hex(payload: Union[str, bytes]) -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def hmac_sha256(key: Union[str, bytes], message: str) -> bytes:
    if isinstance(key, str):
        key = key.encode("utf-8")
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


@dataclass(frozen=True)
class SigningContext:
    """Everything the signature depends on.  Build a new one per request."""
    secret_id: str
    secret_key: str
    method: str
    url: str
    body: Union[str, bytes]
    headers: Mapping[str, str] = field(default_factory=dict)
    version: str = ""
    action: str = ""
    region: str = ""
    timestamp: int = 0

    @property
    def host(self) -> str:
        return _split_host(self.url)

    @property
    def service(self) -> str:
        return self.host.split(".")[0]

    @property
    def date(self) -> str:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


def _split_host(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise SigningError(f"malformed request URL {url!r}: {e}") from e
    if not parts.scheme or not parts.hostname:
        raise SigningError(f"malformed request URL {url!r}: missing scheme or host")
    try:
        port = parts.port
    except ValueError as e:
        raise SigningError(f"malformed request URL {url!r}: {e}") from e
    # userinfo is never part of the signed host
    host = f"[{parts.hostname}]" if ":" in parts.hostname else parts.hostname
    if port is not None:
        host = f"{host}:{port}"
    return host


def signed_header_lines(ctx: SigningContext) -> Tuple[str, str]:
    """Return (canonical headers, signed headers).

    Only ``content-type`` (first match, if any) and ``host`` are signed.
    """
    canonical_headers = ""
    signed = []
    for name, value in ctx.headers.items():
        if name.lower() == "content-type":
            canonical_headers += f"content-type:{value.lower()}\n"
            signed.append("content-type")
            break
    canonical_headers += f"host:{ctx.host}\n"
    signed.append("host")
    return canonical_headers, ";".join(signed)


def canonical_request(ctx: SigningContext) -> str:
    canonical_headers, signed_headers = signed_header_lines(ctx)
    return "\n".join([
        ctx.method,
        CANONICAL_URI,
        CANONICAL_QUERY,
        canonical_headers,
        signed_headers,
        sha256_hex(ctx.body),
    ])


def credential_scope(ctx: SigningContext) -> str:
    return f"{ctx.date}/{ctx.service}/{SCOPE_TERMINATOR}"


def string_to_sign(ctx: SigningContext) -> str:
    return "\n".join([
        ALGORITHM,
        str(ctx.timestamp),
        credential_scope(ctx),
        sha256_hex(canonical_request(ctx)),
    ])


def signing_key(ctx: SigningContext) -> bytes:
    secret_date = hmac_sha256("TC3" + ctx.secret_key, ctx.date)
    secret_service = hmac_sha256(secret_date, ctx.service)
    return hmac_sha256(secret_service, SCOPE_TERMINATOR)


def signature(ctx: SigningContext) -> str:
    return hmac.new(signing_key(ctx), string_to_sign(ctx).encode("utf-8"), hashlib.sha256).hexdigest()


def authorization_headers(ctx: SigningContext) -> Dict[str, str]:
    """Compute the Authorization and X-TC-* headers for *ctx*."""
    # resolve the host first so a bad URL fails before any header exists
    _split_host(ctx.url)
    _, signed_headers = signed_header_lines(ctx)
    authorization = (
        f"{ALGORITHM} Credential={ctx.secret_id}/{credential_scope(ctx)}, "
        f"SignedHeaders={signed_headers}, Signature={signature(ctx)}"
    )
    return {
        "Authorization": authorization,
        "X-TC-Timestamp": str(ctx.timestamp),
        "X-TC-Version": ctx.version,
        "X-TC-Region": ctx.region,
        "X-TC-Action": ctx.action,
    }


def parse_credentials(auth_info: str) -> Tuple[str, str]:
    """Extract (secret_id, secret_key) from the credential JSON."""
    try:
        data: Any = json.loads(auth_info)
    except (json.JSONDecodeError, TypeError) as e:
        raise SigningError(f"failed to unmarshal request credentials: {e}") from e
    if not isinstance(data, dict):
        raise SigningError("failed to unmarshal request credentials: expected a JSON object")
    secret_id = data.get("secret_id")
    secret_key = data.get("secret_key")
    if not isinstance(secret_id, str) or not isinstance(secret_key, str) or not secret_id or not secret_key:
        raise SigningError("miss auth info: secret_id or secret_key")
    return secret_id, secret_key


def sign_request(
    auth_info: str,
    method: str,
    url: str,
    headers: Mapping[str, str],
    body: Union[str, bytes],
    common: Optional[Mapping[str, str]] = None,
    timestamp: Optional[int] = None,
) -> Dict[str, str]:
    """Build a SigningContext from raw call inputs and return its headers.

    *common* carries the version, action and region parameters (keys are
    matched case-insensitively).
    """
    secret_id, secret_key = parse_credentials(auth_info)
    params = {k.lower(): v for k, v in (common or {}).items()}
    ctx = SigningContext(
        secret_id=secret_id,
        secret_key=secret_key,
        method=method.upper(),
        url=url,
        body=body,
        headers=dict(headers),
        version=params.get("version", ""),
        action=params.get("action", ""),
        region=params.get("region", ""),
        timestamp=int(time.time()) if timestamp is None else timestamp,
    )
    return authorization_headers(ctx)
