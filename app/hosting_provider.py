"""HTTP client for the hosting provider's project-domain API.

Custom domains are attached to the hosting project and the provider reports
whether their DNS records point at it. Three calls are used:

::
    POST   /v10/projects/{project}/domains            add (returns CNAME hints)
    GET    /v10/projects/{project}/domains/{domain}   verification status
    DELETE /v10/projects/{project}/domains/{domain}   remove

Any transport error or non-2xx answer (other than 404 on delete) surfaces as
``HostingProviderError`` so callers can record it and retry later.
"""

from dataclasses import dataclass

import httpx

from app.config import Settings
from app.errors import DomainConflictError, HostingProviderError

__all__ = ["DomainCheckResult", "HostingProviderClient"]


@dataclass(frozen=True)
class DomainCheckResult:
    verified: bool
    reason: str | None = None


class HostingProviderClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        project_id: str,
        default_cname_target: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._project_id = project_id
        self._token = token
        self._default_cname_target = default_cname_target
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "HostingProviderClient":
        return cls(
            base_url=settings.HOSTING_PROVIDER_API_URL,
            token=settings.HOSTING_PROVIDER_TOKEN,
            project_id=settings.HOSTING_PROVIDER_PROJECT_ID,
            default_cname_target=settings.DEFAULT_CNAME_TARGET,
            timeout=settings.HOSTING_PROVIDER_TIMEOUT_SECONDS,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._token and self._project_id)

    @property
    def default_cname_target(self) -> str:
        return self._default_cname_target

    def _domains_path(self, domain: str | None = None) -> str:
        path = f"/v10/projects/{self._project_id}/domains"
        return f"{path}/{domain}" if domain else path

    async def add_domain(self, domain: str) -> str:
        """Attach ``domain`` to the project and return the CNAME target to publish."""
        try:
            response = await self._client.post(self._domains_path(), json={"name": domain})
        except httpx.HTTPError as exc:
            raise HostingProviderError(f"Failed to communicate with hosting provider: {exc}") from exc

        payload = _json_or_empty(response)
        if response.is_error:
            error_code = (payload.get("error") or {}).get("code")
            if error_code == "domain_already_in_use":
                raise DomainConflictError("This domain is already configured on another project")
            raise HostingProviderError(f"Hosting provider returned {response.status_code}")

        cnames = payload.get("cnames") or []
        return cnames[0] if cnames else self._default_cname_target

    async def check_domain(self, domain: str) -> DomainCheckResult:
        try:
            response = await self._client.get(self._domains_path(domain))
        except httpx.HTTPError as exc:
            raise HostingProviderError(f"Failed to communicate with hosting provider: {exc}") from exc

        if response.is_error:
            raise HostingProviderError(f"Hosting provider returned {response.status_code}")

        payload = _json_or_empty(response)
        if payload.get("verified") is True:
            return DomainCheckResult(verified=True)

        challenges = payload.get("verification") or []
        reason = challenges[0].get("reason") if challenges else None
        return DomainCheckResult(verified=False, reason=reason or "DNS not configured yet")

    async def remove_domain(self, domain: str) -> None:
        try:
            response = await self._client.delete(self._domains_path(domain))
        except httpx.HTTPError as exc:
            raise HostingProviderError(f"Failed to communicate with hosting provider: {exc}") from exc
        if response.is_error and response.status_code != 404:
            raise HostingProviderError(f"Hosting provider returned {response.status_code}")

    async def close(self) -> None:
        await self._client.aclose()


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}
