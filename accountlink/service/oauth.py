from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlencode

import httpx

from accountlink.config import Settings
from accountlink.logging import get_logger
from accountlink.service.errors import InvalidCredentialsError, ServerError
from accountlink.storage.models import utcnow
from accountlink.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

GOOGLE = {
    "name": "google",
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
    "scope": "openid email profile",
}

OAUTH_STATE_TTL = timedelta(minutes=10)


@dataclass(frozen=True)
class OAuthIdentity:
    """A provider-verified identity handed to the auth engine."""

    email: str
    name: Optional[str]
    provider_uid: str


class GoogleOAuthClient:
    """Authorization-code flow against Google.

    ``start`` hands out a one-time ``state``; ``exchange`` consumes it, trades
    the code for an access token and reads the userinfo endpoint.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._transport = transport
        self._state_lock = threading.Lock()
        self._states: Dict[str, Tuple[str, datetime]] = {}

    def _require_config(self) -> Tuple[str, str, str]:
        client_id = self.settings.oauth_google_client_id
        client_secret = self.settings.oauth_google_client_secret
        redirect_uri = self.settings.oauth_redirect_uri
        if not (client_id and client_secret and redirect_uri):
            logger.error("oauth_not_configured", provider=GOOGLE["name"])
            raise ServerError("oauth not configured")
        return client_id, client_secret, redirect_uri

    async def start(self) -> Tuple[str, str]:
        client_id, _, redirect_uri = self._require_config()
        state = secrets.token_urlsafe(24)
        expires_at = utcnow() + OAUTH_STATE_TTL
        if self.cache:
            await self.cache.set_oauth_state(state, GOOGLE["name"], expires_at)
        else:
            with self._state_lock:
                now = utcnow()
                for stale in [s for s, (_, exp) in self._states.items() if exp <= now]:
                    self._states.pop(stale, None)
                self._states[state] = (GOOGLE["name"], expires_at)
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": GOOGLE["scope"],
            "state": state,
            "prompt": "select_account",
        }
        return f"{GOOGLE['auth_url']}?{urlencode(params)}", state

    async def _pop_state(self, state: str) -> Optional[Tuple[str, datetime]]:
        if self.cache:
            return await self.cache.pop_oauth_state(state)
        with self._state_lock:
            return self._states.pop(state, None)

    async def exchange(self, code: str, state: str) -> OAuthIdentity:
        client_id, client_secret, redirect_uri = self._require_config()
        stored = await self._pop_state(state) if state else None
        if not stored or stored[0] != GOOGLE["name"] or stored[1] <= utcnow():
            logger.warning("oauth_state_invalid")
            raise InvalidCredentialsError()
        if not code:
            raise InvalidCredentialsError()

        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    GOOGLE["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token")
                    if isinstance(token_result, dict)
                    else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=GOOGLE["name"])
                    raise InvalidCredentialsError()

                userinfo_response = await client.get(
                    GOOGLE["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=GOOGLE["name"],
                status_code=exc.response.status_code,
            )
            raise InvalidCredentialsError()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=GOOGLE["name"], error=str(exc))
            raise InvalidCredentialsError()

        if not isinstance(userinfo, dict):
            logger.error("oauth_userinfo_invalid_format", provider=GOOGLE["name"])
            raise InvalidCredentialsError()
        provider_uid = userinfo.get("sub") or userinfo.get("id")
        email = userinfo.get("email")
        if not provider_uid or not email:
            logger.error("oauth_identity_incomplete", provider=GOOGLE["name"])
            raise InvalidCredentialsError()
        logger.info("oauth_exchange_success", provider=GOOGLE["name"])
        return OAuthIdentity(
            email=str(email), name=userinfo.get("name"), provider_uid=str(provider_uid)
        )
