from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import cast
from urllib.parse import urlencode

from backend.archiver import deadline
from backend.archiver.platforms.errors import AuthenticationFailed
from backend.archiver.platforms.executor import HttpTransport

LOGGER = logging.getLogger("vod_archiver.platforms.auth")


@dataclass(frozen=True)
class AuthToken:
    access_token: str
    expires_in: int
    token_type: str


def request_client_credentials_token(
    *,
    transport: HttpTransport,
    token_url: str,
    client_id: str,
    client_secret: str,
    form_encoded: bool,
    http_timeout_seconds: float = 30.0,
) -> AuthToken:
    """Exchange client credentials for an app access token.

    Twitch reads the credentials from the query string while Kick expects a form body,
    hence `form_encoded`.
    """
    credentials = urlencode(
        {
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "client_credentials",
        }
    )
    headers: dict[str, str] = {"Accept": "application/json"}
    url = token_url
    body: bytes | None = None
    if form_encoded:
        body = credentials.encode("utf-8")
        headers["Content-Type"] = "application/x-www-form-urlencoded"
    else:
        url = f"{token_url}?{credentials}"

    response = transport.send(
        method="POST",
        url=url,
        headers=headers,
        body=body,
        timeout=deadline.bounded_timeout(http_timeout_seconds),
    )
    if not 200 <= response.status < 300:
        raise AuthenticationFailed(
            f"failed to authenticate: status={response.status} "
            f"body={response.body.decode('utf-8', errors='replace')[:200]}"
        )

    try:
        parsed = json.loads(response.body.decode("utf-8", errors="replace"))
    except json.JSONDecodeError as exc:
        raise AuthenticationFailed("failed to decode token response") from exc
    if not isinstance(parsed, dict):
        raise AuthenticationFailed("token response is not an object")

    payload = cast(dict[str, object], parsed)
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise AuthenticationFailed("token response missing access_token")

    expires_in = payload.get("expires_in")
    token_type = payload.get("token_type")
    return AuthToken(
        access_token=access_token.strip(),
        expires_in=expires_in if isinstance(expires_in, int) else 0,
        token_type=token_type if isinstance(token_type, str) else "bearer",
    )


def describe_expiry(expires_in_seconds: int) -> str:
    total_hours = max(0, expires_in_seconds) // 3600
    return f"{total_hours // 24} days and {total_hours % 24} hours"
