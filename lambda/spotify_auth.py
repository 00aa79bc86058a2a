"""Per-user Spotify access tokens and the authenticated request wrapper.

There is deliberately no lock around a user's credential. Two requests that
both see an expired token will both redeem the refresh token; Spotify hands
back two valid access tokens and the last ``save_refreshed_tokens`` wins, so
the other token is simply never used again on this side.
"""

import base64
from typing import Any, Dict, Optional, Tuple

import requests

import runtime
import store
from errors import NoRefreshToken, RefreshFailed
from models import Credential, SignInGrant
from runtime import REQUEST_TIMEOUT, log

TOKEN_URL = "https://accounts.spotify.com/api/token"
EXPIRY_MARGIN_SECONDS = 60
DEFAULT_EXPIRES_IN = 3600


def basic_auth_header() -> Dict[str, str]:
    client_id = runtime.get_secure_parameter("spotify_client_id_param")
    client_secret = runtime.get_secure_parameter("spotify_client_secret_param")
    creds = f"{client_id}:{client_secret}".encode("utf-8")
    return {"Authorization": "Basic " + base64.b64encode(creds).decode("ascii")}


def is_expired(expires_at_epoch: Optional[int], now: Optional[float] = None) -> bool:
    if expires_at_epoch is None:
        return True
    current = runtime.now_epoch() if now is None else now
    return current >= expires_at_epoch - EXPIRY_MARGIN_SECONDS


def parse_spotify_error(
    payload: Optional[Dict[str, Any]]
) -> Tuple[Optional[str], Optional[str]]:
    if not isinstance(payload, dict):
        return None, None
    error_value = payload.get("error")
    error_description = payload.get("error_description")
    if isinstance(error_value, dict):
        error_value = error_value.get("message")
    if isinstance(error_description, dict):
        error_description = error_description.get("message")
    if isinstance(error_value, str):
        error_value = error_value.strip()
    if isinstance(error_description, str):
        error_description = error_description.strip()
    return error_value, error_description


def refresh_access_token(user_id: str) -> Credential:
    credential = store.get_credential(user_id)
    if not credential.refresh_token:
        log("warning", "Spotify refresh token missing", user_id=user_id)
        raise NoRefreshToken(user_id)

    resp = runtime.REQUEST_SESSION.post(
        TOKEN_URL,
        data={
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
        },
        headers={
            **basic_auth_header(),
            "Content-Type": "application/x-www-form-urlencoded",
        },
        timeout=REQUEST_TIMEOUT,
    )

    payload: Dict[str, Any] = {}
    try:
        payload = resp.json()
    except ValueError:
        payload = {}

    if resp.status_code >= 400:
        error_code, description = parse_spotify_error(payload)
        log(
            "warning",
            "Spotify token refresh failed",
            status=resp.status_code,
            error=error_code,
            description=description,
        )
        raise RefreshFailed(resp.status_code, error_code)

    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        log("critical", "Spotify response missing access_token")
        raise RefreshFailed(resp.status_code, "missing_access_token")

    expires_in = runtime.to_int(payload.get("expires_in"), DEFAULT_EXPIRES_IN)
    rotated = payload.get("refresh_token")
    refresh_token = rotated if isinstance(rotated, str) and rotated else credential.refresh_token
    expires_at_epoch = int(runtime.now_epoch()) + expires_in

    store.save_refreshed_tokens(user_id, access_token, refresh_token, expires_at_epoch)
    log(
        "info",
        "spotify_token_refreshed",
        expires_in=expires_in,
        refresh_token_rotated=refresh_token != credential.refresh_token,
    )
    credential.access_token = access_token
    credential.refresh_token = refresh_token
    credential.expires_at_epoch = expires_at_epoch
    return credential


def valid_access_token(user_id: str) -> str:
    credential = store.get_credential(user_id)
    if credential.access_token and not is_expired(credential.expires_at_epoch):
        return credential.access_token
    return refresh_access_token(user_id).access_token


def spotify_fetch(user_id: str, method: str, url: str, **kwargs: Any) -> requests.Response:
    """Issue a Spotify API request as ``user_id``.

    A 401 forces one refresh and one retry. Whatever comes back after that,
    including a second 401 or any other error status, is returned as-is.
    """
    caller_headers = {
        k: v for k, v in (kwargs.pop("headers", None) or {}).items()
        if k.lower() != "authorization"
    }
    kwargs.setdefault("timeout", REQUEST_TIMEOUT)

    def _send(token: str) -> requests.Response:
        headers = {**caller_headers, "Authorization": f"Bearer {token}"}
        return runtime.REQUEST_SESSION.request(method, url, headers=headers, **kwargs)

    resp = _send(valid_access_token(user_id))
    if resp.status_code == 401:
        log("info", "Spotify rejected access token; refreshing", url=url)
        resp = _send(refresh_access_token(user_id).access_token)
    return resp


def record_sign_in(grant: SignInGrant) -> None:
    store.save_sign_in(grant)
    log(
        "info",
        "spotify_sign_in_recorded",
        provider_account_id=grant.provider_account_id,
        has_refresh_token=bool(grant.refresh_token),
        expires_at_epoch=grant.expires_at_epoch,
    )
