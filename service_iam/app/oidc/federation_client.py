"""
OIDC federation: authorization code exchange with external providers.

The token endpoint and JWKS calls go through the resilience policy.
Only transport failures are retried; a 4xx from the provider is a
rejected credential and a 5xx is reported as the provider being
unavailable, neither is retried.
"""

from typing import Any, Dict, List, Optional

import httpx
from jose import jwk, jwt
from jose.exceptions import JWTError

from shared.clock import Clock, SystemClock
from shared.config import OidcProviderSettings
from shared.errors import AuthenticationFailure, ExternalServiceUnavailable
from shared.logging import get_logger
from shared.resilience import ResiliencePolicy
from shared.retry import RetryConfig

OIDC_TRANSIENT_ERRORS = (httpx.TransportError,)


class OidcFederationClient:
    """Exchange codes with one provider and verify the returned ID token."""

    def __init__(self,
                 provider: OidcProviderSettings,
                 http_client: httpx.AsyncClient,
                 policy: Optional[ResiliencePolicy] = None,
                 jwks_cache_ttl: int = 3600,
                 clock: Optional[Clock] = None):
        self.provider = provider
        self.http_client = http_client
        self.policy = policy or ResiliencePolicy(f"oidc.{provider.name}",
                                                 transient_exceptions=OIDC_TRANSIENT_ERRORS)
        self.jwks_cache_ttl = jwks_cache_ttl
        self.clock = clock or SystemClock()
        self.logger = get_logger(f"iam.oidc.{provider.name}")

        self._jwks_cache: Optional[Dict[str, Any]] = None
        self._cache_timestamp: float = 0

    @property
    def name(self) -> str:
        return self.provider.name

    async def exchange_code(self, code: str, redirect_uri: Optional[str] = None,
                            nonce: Optional[str] = None) -> Dict[str, Any]:
        """Trade an authorization code for verified ID token claims."""
        if not code:
            raise AuthenticationFailure()
        body = await self.policy.execute(self._post_token, code, redirect_uri or self.provider.redirect_uri)

        id_token = body.get("id_token")
        if not id_token:
            self.logger.warning("Token response carried no id_token")
            raise AuthenticationFailure()

        claims = await self.verify_id_token(id_token, access_token=body.get("access_token"))
        if nonce is not None and claims.get("nonce") != nonce:
            self.logger.warning("ID token nonce mismatch")
            raise AuthenticationFailure()
        return claims

    async def _post_token(self, code: str, redirect_uri: Optional[str]) -> Dict[str, Any]:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.provider.client_id,
            "client_secret": self.provider.client_secret,
        }
        if redirect_uri:
            data["redirect_uri"] = redirect_uri
        response = await self.http_client.post(self.provider.token_endpoint, data=data,
                                               headers={"Accept": "application/json"})
        return self._json(response, "token")

    def _json(self, response: httpx.Response, what: str) -> Dict[str, Any]:
        if response.status_code >= 500:
            self.logger.error("Provider error", endpoint=what, status_code=response.status_code)
            raise ExternalServiceUnavailable(self.policy.service, "remote_error",
                                             details={"status_code": response.status_code})
        if response.status_code >= 400:
            self.logger.info("Provider rejected request", endpoint=what, status_code=response.status_code)
            raise AuthenticationFailure()
        try:
            return response.json()
        except ValueError:
            raise ExternalServiceUnavailable(self.policy.service, "remote_error",
                                             message="Malformed provider response")

    async def get_jwks(self) -> Dict[str, Any]:
        """Get JWKS from cache or fetch from the provider."""
        current_time = self.clock.now()
        if self._jwks_cache is not None and current_time - self._cache_timestamp < self.jwks_cache_ttl:
            return self._jwks_cache

        async def _fetch_jwks():
            return self._json(await self.http_client.get(self.provider.jwks_uri), "jwks")

        self._jwks_cache = await self.policy.execute(_fetch_jwks)
        self._cache_timestamp = current_time
        self.logger.info("JWKS refreshed", keys_count=len(self._jwks_cache.get("keys", [])))
        return self._jwks_cache

    async def _signing_key(self, header: Dict[str, Any]) -> Any:
        algorithm = header.get("alg", "")
        if algorithm.startswith("HS"):
            return self.provider.client_secret
        if not self.provider.jwks_uri:
            raise JWTError("Provider has no JWKS endpoint")

        kid = header.get("kid")
        keys: List[Dict[str, Any]] = (await self.get_jwks()).get("keys", [])
        for key in keys:
            if kid is None or key.get("kid") == kid:
                return jwk.construct(key, algorithm)
        raise JWTError(f"Key not found: {kid}")

    async def verify_id_token(self, id_token: str, access_token: Optional[str] = None) -> Dict[str, Any]:
        try:
            header = jwt.get_unverified_header(id_token)
            if header.get("alg") not in self.provider.algorithms:
                raise JWTError(f"Algorithm not allowed: {header.get('alg')}")
            key = await self._signing_key(header)
            claims = jwt.decode(
                id_token,
                key,
                algorithms=self.provider.algorithms,
                audience=self.provider.client_id,
                issuer=self.provider.issuer,
                access_token=access_token,
            )
        except JWTError as e:
            self.logger.warning("ID token verification failed", error=str(e))
            raise AuthenticationFailure()

        if not claims.get("sub"):
            raise AuthenticationFailure()
        return claims


class OidcProviderRegistry:
    """Federation clients by provider name."""

    def __init__(self, clients: Optional[List[OidcFederationClient]] = None):
        self._clients: Dict[str, OidcFederationClient] = {c.name: c for c in clients or []}

    @classmethod
    def from_settings(cls, providers: List[OidcProviderSettings], http_client: httpx.AsyncClient,
                      retry: Optional[RetryConfig] = None, **kwargs) -> "OidcProviderRegistry":
        clients = [
            OidcFederationClient(
                provider,
                http_client,
                policy=ResiliencePolicy(f"oidc.{provider.name}", retry_config=retry,
                                        transient_exceptions=OIDC_TRANSIENT_ERRORS,
                                        on_unavailable=kwargs.get("on_unavailable")),
                clock=kwargs.get("clock"),
            )
            for provider in providers
        ]
        return cls(clients)

    def get(self, name: str) -> Optional[OidcFederationClient]:
        return self._clients.get(name)

    def register(self, client: OidcFederationClient) -> None:
        self._clients[client.name] = client

    def names(self) -> List[str]:
        return sorted(self._clients)
