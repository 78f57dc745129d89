"""
HTTP client for the authorization server.

This module talks to the provider's endpoints:
- Authorization URL construction (PKCE S256 + anti-forgery state)
- Authorization code exchange
- Renewal (refresh_token grant)
- Device authorization and device token polling
- Best-effort token revocation

Non-200 responses are raised as ``ProviderFailure`` carrying only the
status and OAuth error code; transport errors propagate as ``requests``
exceptions. Classification happens in the caller.
"""

import base64
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional
from urllib.parse import urlencode

import requests

from .config import AuthConfig
from .exceptions import ProviderFailure
from .records import CredentialRecord, normalize_scopes

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_EXPIRES_IN = 3600


@dataclass
class TokenResponse:
    """
    Parsed token endpoint response.

    Attributes:
        access_token: New access secret
        expires_in: Lifetime in seconds
        refresh_token: New renewal secret, if the provider issued one
        scope: Granted-scope echo (space separated), if present
        token_type: Token type (typically "Bearer")
        principal: Provider's identifier for the authorized principal
    """

    access_token: str = field(repr=False)
    expires_in: int
    refresh_token: Optional[str] = field(default=None, repr=False)
    scope: Optional[str] = None
    token_type: str = "Bearer"
    principal: Optional[str] = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "TokenResponse":
        """
        Build from the token endpoint JSON body.

        Raises:
            KeyError: If access_token is missing
            ValueError: If expires_in is not a number
        """
        access_token = data["access_token"]
        if not access_token:
            raise ValueError("empty access_token")
        expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        if expires_in <= 0:
            expires_in = DEFAULT_EXPIRES_IN
        return cls(
            access_token=access_token,
            expires_in=expires_in,
            refresh_token=data.get("refresh_token") or None,
            scope=data.get("scope"),
            token_type=data.get("token_type", "Bearer"),
            principal=_principal_from(data),
        )

    def granted_scopes(self, requested: Iterable[str]) -> frozenset:
        """Scopes granted by this response (requested scopes when not echoed)."""
        if self.scope is None:
            return normalize_scopes(requested)
        return normalize_scopes(self.scope)

    def to_record(
        self,
        subject_id: str,
        requested_scopes: Iterable[str],
        now: datetime,
        provider_hints: Optional[dict] = None,
    ) -> CredentialRecord:
        hints = dict(provider_hints or {})
        hints["token_type"] = self.token_type
        if self.principal:
            hints["principal"] = self.principal
        return CredentialRecord(
            subject_id=subject_id,
            access_secret=self.access_token,
            renewal_secret=self.refresh_token,
            granted_scopes=self.granted_scopes(requested_scopes),
            issued_at=now,
            expires_at=now + timedelta(seconds=self.expires_in),
            provider_hints=hints,
        )


@dataclass
class DeviceAuthorization:
    """Device authorization endpoint response."""

    device_code: str = field(repr=False)
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int = 5
    verification_uri_complete: Optional[str] = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "DeviceAuthorization":
        return cls(
            device_code=data["device_code"],
            user_code=data["user_code"],
            verification_uri=data.get("verification_uri") or data["verification_url"],
            expires_in=int(data.get("expires_in") or 900),
            interval=int(data.get("interval") or 5),
            verification_uri_complete=data.get("verification_uri_complete"),
        )


def _principal_from(data: dict[str, Any]) -> Optional[str]:
    """Best-effort principal identifier from a token response (not verified)."""
    for key in ("subject", "sub", "user_id", "account_id"):
        if data.get(key):
            return str(data[key])
    id_token = data.get("id_token")
    if isinstance(id_token, str) and id_token.count(".") == 2:
        try:
            payload = id_token.split(".")[1]
            payload += "=" * (-len(payload) % 4)
            claims = json.loads(base64.urlsafe_b64decode(payload))
            if claims.get("sub"):
                return str(claims["sub"])
        except (ValueError, TypeError):
            logger.debug("Could not decode id_token claims")
    return None


class ProviderClient:
    """
    Client for the provider's authorization, token and device endpoints.

    Responsibilities:
    - Build authorization URLs
    - Perform token-endpoint grants
    - Report failures without leaking secrets into messages
    """

    def __init__(self, config: AuthConfig):
        self.config = config

    @property
    def supports_device_flow(self) -> bool:
        return bool(self.config.device_authorization_url)

    def build_authorization_url(
        self,
        scopes: Iterable[str],
        state: str,
        challenge: str,
        redirect_uri: str,
    ) -> str:
        """
        Generate the authorization URL for the local-callback flow.

        Returns:
            Complete authorization URL with query parameters
        """
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(sorted(scopes)),
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
        if self.config.supports_incremental:
            params["include_granted_scopes"] = "true"
        separator = "&" if "?" in self.config.authorization_url else "?"
        return f"{self.config.authorization_url}{separator}{urlencode(params)}"

    def exchange_code(
        self, authorization_code: str, verifier: str, redirect_uri: str
    ) -> TokenResponse:
        """
        Exchange an authorization code for tokens.

        Raises:
            ProviderFailure: If the token endpoint rejects the exchange
            requests.RequestException: On transport failure
        """
        logger.info("Exchanging authorization code for tokens")
        data = self._post(
            self.config.token_url,
            {
                "grant_type": "authorization_code",
                "code": authorization_code,
                "redirect_uri": redirect_uri,
                "code_verifier": verifier,
            },
        )
        return self._token_response(data)

    def refresh(
        self, renewal_secret: str, scopes: Optional[Iterable[str]] = None
    ) -> TokenResponse:
        """
        Obtain a new access secret with a renewal secret.

        Raises:
            ProviderFailure: If the token endpoint rejects the renewal
            requests.RequestException: On transport failure
        """
        logger.info("Renewing access secret")
        form = {
            "grant_type": "refresh_token",
            "refresh_token": renewal_secret,
        }
        if scopes:
            form["scope"] = " ".join(sorted(scopes))
        data = self._post(self.config.token_url, form)
        return self._token_response(data)

    def request_device_code(
        self, scopes: Iterable[str], challenge: str
    ) -> DeviceAuthorization:
        """
        Start a device-code flow.

        Raises:
            ProviderFailure: If the device endpoint rejects the request
            requests.RequestException: On transport failure
        """
        if not self.config.device_authorization_url:
            raise ProviderFailure(400, "invalid_request", "device flow not configured")

        logger.info("Requesting device code")
        data = self._post(
            self.config.device_authorization_url,
            {
                "scope": " ".join(sorted(scopes)),
                "code_challenge": challenge,
                "code_challenge_method": "S256",
            },
        )
        try:
            return DeviceAuthorization.from_json(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.error(f"Invalid response from device authorization endpoint: {type(e).__name__}")
            raise ProviderFailure(200, "invalid_response") from e

    def poll_device_token(self, device_code: str, verifier: str) -> TokenResponse:
        """
        Poll the token endpoint once for a device-code grant.

        ``authorization_pending`` and ``slow_down`` arrive as
        ``ProviderFailure`` so the caller can drive the polling loop.
        """
        data = self._post(
            self.config.token_url,
            {
                "grant_type": DEVICE_CODE_GRANT,
                "device_code": device_code,
                "code_verifier": verifier,
            },
            quiet_errors=("authorization_pending", "slow_down"),
        )
        return self._token_response(data)

    def revoke(self, token: str, token_type_hint: str = "refresh_token") -> bool:
        """
        Revoke a token at the provider (best effort).

        Returns:
            True if the provider acknowledged the revocation
        """
        if not self.config.revocation_url:
            return False
        try:
            self._post(
                self.config.revocation_url,
                {"token": token, "token_type_hint": token_type_hint},
            )
            logger.info("Token revoked at provider")
            return True
        except (ProviderFailure, requests.RequestException) as e:
            logger.warning(f"Remote revocation failed: {type(e).__name__}")
            return False

    def _token_response(self, data: dict[str, Any]) -> TokenResponse:
        try:
            return TokenResponse.from_json(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.error(f"Invalid response from token endpoint: missing or bad {e}")
            raise ProviderFailure(200, "invalid_response") from e

    def _post(
        self,
        url: str,
        form: dict[str, Any],
        quiet_errors: tuple = (),
    ) -> dict[str, Any]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        form = dict(form)
        if self.config.client_secret:
            credentials = f"{self.config.client_id}:{self.config.client_secret}"
            headers["Authorization"] = f"Basic {base64.b64encode(credentials.encode()).decode()}"
        else:
            form["client_id"] = self.config.client_id

        response = requests.post(
            url,
            headers=headers,
            data=form,
            timeout=self.config.http_timeout,
        )

        if response.status_code != 200:
            failure = _failure_from(response)
            if failure.error in quiet_errors:
                logger.debug(f"Provider responded {failure.error}")
            else:
                logger.error(
                    f"Provider request failed: {response.status_code} - "
                    f"{failure.error or 'no error code'}"
                )
            raise failure

        try:
            data = response.json()
        except ValueError as e:
            logger.error("Provider returned a non-JSON response")
            raise ProviderFailure(response.status_code, "invalid_response") from e
        if not isinstance(data, dict):
            raise ProviderFailure(response.status_code, "invalid_response")
        return data


def _failure_from(response) -> ProviderFailure:
    error = None
    description = None
    try:
        body = response.json()
        if isinstance(body, dict):
            error = body.get("error")
            description = body.get("error_description")
    except ValueError:
        pass

    retry_after = None
    headers = getattr(response, "headers", None)
    if isinstance(headers, Mapping) and "Retry-After" in headers:
        try:
            retry_after = float(headers["Retry-After"])
        except (TypeError, ValueError):
            retry_after = None

    return ProviderFailure(
        response.status_code,
        error=error,
        error_description=description,
        retry_after=retry_after,
    )
