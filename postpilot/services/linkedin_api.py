# postpilot/services/linkedin_api.py
import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from urllib.parse import quote, urlencode

import httpx

from postpilot.config import settings
from postpilot.errors import LinkedInOAuthError

logger = logging.getLogger(__name__)

AUTH_URL = "https://www.linkedin.com/oauth/v2/authorization"
TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"
USERINFO_URL = "https://api.linkedin.com/v2/userinfo"

RESTLI_PROTOCOL_VERSION = "2.0.0"
LINKEDIN_VERSION = "202401"
REVOKED_CODE = "REVOKED_ACCESS_TOKEN"
REVOKED_SERVICE_ERROR_CODE = 65601


@contextmanager
def http_client(client: Optional[httpx.Client] = None) -> Iterator[httpx.Client]:
    """Yield the caller's client untouched, or a short-lived one with the configured timeout."""
    if client is not None:
        yield client
        return
    timeout = httpx.Timeout(settings.http_timeout_seconds, connect=5)
    with httpx.Client(timeout=timeout) as c:
        yield c

def restli_headers(access_token: str, versioned: bool = True) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {access_token}",
        "X-Restli-Protocol-Version": RESTLI_PROTOCOL_VERSION,
    }
    if versioned:
        headers["LinkedIn-Version"] = LINKEDIN_VERSION
    return headers

# Helper: log request id if present in LinkedIn response
def log_request_id(resp: httpx.Response) -> None:
    req_id = resp.headers.get("x-restli-request-id")
    if req_id:
        logger.info("LinkedIn request id: %s", req_id)

def parse_json_safely(resp: httpx.Response) -> Any:
    """Decoded body, or None for an empty or non-JSON body."""
    if not resp.content:
        return None
    try:
        return json.loads(resp.content)
    except ValueError:
        return None

def error_message(data: Any, resp: httpx.Response, default: str) -> str:
    if isinstance(data, dict) and isinstance(data.get("message"), str) and data["message"]:
        return data["message"]
    return resp.reason_phrase or default

def is_revoked(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    if data.get("code") == REVOKED_CODE:
        return True
    return str(data.get("serviceErrorCode")) == str(REVOKED_SERVICE_ERROR_CODE)


def auth_url(state: str, redirect_uri: str, scopes: Optional[str] = None) -> str:
    params = {
        "response_type": "code",
        "client_id": settings.linkedin_client_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "scope": scopes or settings.linkedin_scopes,
    }
    qs = urlencode(params, quote_via=quote, safe=":/")
    return f"{AUTH_URL}?{qs}"

def _token_request(payload: Dict[str, str], client: Optional[httpx.Client]) -> Dict[str, Any]:
    with http_client(client) as c:
        resp = c.post(
            TOKEN_URL,
            data=payload,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
    data = parse_json_safely(resp)
    if resp.status_code != 200 or not isinstance(data, dict) or not data.get("access_token"):
        log_request_id(resp)
        logger.warning("LinkedIn token request (%s) failed: %s", payload["grant_type"], resp.status_code)
        description = data.get("error_description") if isinstance(data, dict) else None
        raise LinkedInOAuthError(description or "Failed to get access token")
    return data

def exchange_code_for_token(code: str, redirect_uri: str, client: Optional[httpx.Client] = None) -> Dict[str, Any]:
    return _token_request({
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": settings.linkedin_client_id,
        "client_secret": settings.linkedin_client_secret,
    }, client)

def exchange_refresh_for_token(refresh_token: str, client: Optional[httpx.Client] = None) -> Dict[str, Any]:
    return _token_request({
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": settings.linkedin_client_id,
        "client_secret": settings.linkedin_client_secret,
    }, client)

def fetch_userinfo(access_token: str, client: Optional[httpx.Client] = None) -> Dict[str, Any]:
    """OpenID userinfo: {sub, name, email, picture}."""
    with http_client(client) as c:
        resp = c.get(USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
    data = parse_json_safely(resp)
    if resp.status_code != 200 or not isinstance(data, dict) or not data.get("sub"):
        log_request_id(resp)
        logger.warning("LinkedIn userinfo failed: %s", resp.status_code)
        raise LinkedInOAuthError("Failed to get LinkedIn profile")
    return data
