"""Outbound identity integrations: SCIM 2.0 client and directory connectors.

Each connector lists users from an external directory and normalizes them
into DirectoryUserRecord, so SCIM and connector syncs share one upsert path
(see identity.service).

Connectors:
- SCIMClient: `{base_url}/Users`, startIndex/itemsPerPage/totalResults paging
- EntraConnector: Microsoft Graph, client-credentials token, @odata.nextLink paging
- GoogleWorkspaceConnector: Admin SDK Directory API, pre-issued OAuth token, nextPageToken paging
- OktaConnector: Okta Users API, SSWS token, Link rel="next" paging

Every HTTP failure is raised as ExternalServiceError.
"""

from typing import Any

import httpx

from complianceos.common.errors import ExternalServiceError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import DirectoryUserRecord

logger = get_logger(__name__)

SCIM_CONTENT_TYPE = "application/scim+json"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
GOOGLE_DIRECTORY_URL = "https://admin.googleapis.com/admin/directory/v1/users"

# Guards against a server that never stops returning a next page.
_MAX_PAGES = 1000


class _HttpIntegration:
    """Shared request handling for outbound identity calls.

    Args:
        service: Name used in logs and ExternalServiceError.
        timeout_seconds: Per-request timeout.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        service: str,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._service = service
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport)

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Identity request timed out", service=self._service, url=url)
            raise ExternalServiceError(service=self._service, message="Request timed out") from exc
        except httpx.RequestError as exc:
            logger.error("Identity request failed", service=self._service, url=url, error=str(exc))
            raise ExternalServiceError(service=self._service, message=f"Request error: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "Identity service returned an error status",
                service=self._service,
                url=url,
                status_code=response.status_code,
            )
            raise ExternalServiceError(
                service=self._service,
                message=f"{method} {url} returned status {response.status_code}",
            )
        return response

    async def test_connection(self) -> bool:
        """Return True if one page of users can be fetched."""
        try:
            await self._check_access()
        except ExternalServiceError as exc:
            logger.warning("Identity connection test failed", service=self._service, error=exc.message)
            return False
        return True

    def _page_limit_reached(self) -> None:
        logger.warning("Identity paging stopped at page limit", service=self._service, max_pages=_MAX_PAGES)

    async def _check_access(self) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# SCIM 2.0
# ---------------------------------------------------------------------------


def scim_user_to_record(resource: dict[str, Any]) -> DirectoryUserRecord:
    """Normalize a SCIM User resource.

    The email is the one flagged primary, else the first listed, else None.
    """
    emails = resource.get("emails") or []
    primary = next((e for e in emails if e.get("primary")), emails[0] if emails else None)
    name = resource.get("name") or {}
    display_name = resource.get("displayName") or name.get("formatted") or resource.get("userName")
    return DirectoryUserRecord(
        external_id=str(resource.get("id", "")),
        email=primary.get("value") if primary else None,
        display_name=display_name,
        active=bool(resource.get("active", True)),
    )


class SCIMClient(_HttpIntegration):
    """Pulls users from a remote SCIM 2.0 service provider.

    Args:
        base_url: SCIM base URL (the `/Users` resource is appended).
        bearer_token: Plaintext bearer token.
        page_size: `count` requested per page.
        timeout_seconds: Per-request timeout.
        transport: Optional httpx transport.
    """

    source = "scim"

    def __init__(
        self,
        base_url: str,
        bearer_token: str,
        page_size: int = 100,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__("scim", timeout_seconds, transport)
        self._base_url = base_url.rstrip("/")
        self._bearer_token = bearer_token
        self._page_size = page_size

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._bearer_token}", "Accept": SCIM_CONTENT_TYPE}

    async def list_users(self) -> list[dict[str, Any]]:
        """Return every SCIM User resource, following startIndex pagination."""
        resources: list[dict[str, Any]] = []
        start_index = 1
        async with self._client() as client:
            for _ in range(_MAX_PAGES):
                response = await self._send(
                    client,
                    "GET",
                    f"{self._base_url}/Users",
                    headers=self._headers(),
                    params={"startIndex": start_index, "count": self._page_size},
                )
                body = response.json()
                page = body.get("Resources") or []
                resources.extend(page)
                total = int(body.get("totalResults", len(resources)))
                per_page = int(body.get("itemsPerPage", len(page)))
                if not page or per_page == 0:
                    break
                start_index = int(body.get("startIndex", start_index)) + per_page
                if start_index > total:
                    break
            else:
                self._page_limit_reached()
        logger.debug("SCIM users listed", base_url=self._base_url, count=len(resources))
        return resources

    async def _check_access(self) -> None:
        async with self._client() as client:
            await self._send(
                client,
                "GET",
                f"{self._base_url}/Users",
                headers=self._headers(),
                params={"startIndex": 1, "count": 1},
            )


# ---------------------------------------------------------------------------
# Directory connectors
# ---------------------------------------------------------------------------


class EntraConnector(_HttpIntegration):
    """Microsoft Entra ID (Azure AD) users via Microsoft Graph.

    Args:
        directory_tenant_id: The Entra tenant (directory) id.
        client_id: App registration client id.
        client_secret: App registration client secret.
        timeout_seconds: Per-request timeout.
        transport: Optional httpx transport.
    """

    source = "microsoft_entra"

    def __init__(
        self,
        directory_tenant_id: str,
        client_id: str,
        client_secret: str,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__("microsoft_entra", timeout_seconds, transport)
        self._directory_tenant_id = directory_tenant_id
        self._client_id = client_id
        self._client_secret = client_secret

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        response = await self._send(
            client,
            "POST",
            f"https://login.microsoftonline.com/{self._directory_tenant_id}/oauth2/v2.0/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "scope": GRAPH_SCOPE,
            },
        )
        token = response.json().get("access_token")
        if not token:
            raise ExternalServiceError(service=self._service, message="Token response has no access_token")
        return str(token)

    async def list_users(self) -> list[DirectoryUserRecord]:
        records: list[DirectoryUserRecord] = []
        async with self._client() as client:
            headers = {"Authorization": f"Bearer {await self._access_token(client)}"}
            url: str | None = f"{GRAPH_BASE_URL}/users"
            params: dict[str, str] | None = {"$select": "id,userPrincipalName,displayName,mail,accountEnabled"}
            for _ in range(_MAX_PAGES):
                if url is None:
                    break
                body = (await self._send(client, "GET", url, headers=headers, params=params)).json()
                for user in body.get("value", []):
                    records.append(
                        DirectoryUserRecord(
                            external_id=str(user.get("id", "")),
                            email=user.get("mail") or user.get("userPrincipalName"),
                            display_name=user.get("displayName"),
                            active=bool(user.get("accountEnabled", True)),
                        )
                    )
                # nextLink already carries the query string
                url, params = body.get("@odata.nextLink"), None
            else:
                if url is not None:
                    self._page_limit_reached()
        return records

    async def _check_access(self) -> None:
        async with self._client() as client:
            await self._access_token(client)


class GoogleWorkspaceConnector(_HttpIntegration):
    """Google Workspace users via the Admin SDK Directory API.

    Args:
        access_token: Pre-issued OAuth access token with directory read scope.
        domain: Workspace primary domain.
        timeout_seconds: Per-request timeout.
        transport: Optional httpx transport.
    """

    source = "google_workspace"

    def __init__(
        self,
        access_token: str,
        domain: str,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__("google_workspace", timeout_seconds, transport)
        self._access_token = access_token
        self._domain = domain

    async def _page(self, client: httpx.AsyncClient, page_token: str | None, max_results: int) -> dict[str, Any]:
        params: dict[str, Any] = {"domain": self._domain, "maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token
        response = await self._send(
            client,
            "GET",
            GOOGLE_DIRECTORY_URL,
            headers={"Authorization": f"Bearer {self._access_token}"},
            params=params,
        )
        return response.json()

    async def list_users(self) -> list[DirectoryUserRecord]:
        records: list[DirectoryUserRecord] = []
        page_token: str | None = None
        async with self._client() as client:
            for _ in range(_MAX_PAGES):
                body = await self._page(client, page_token, 500)
                for user in body.get("users", []):
                    records.append(
                        DirectoryUserRecord(
                            external_id=str(user.get("id", "")),
                            email=user.get("primaryEmail"),
                            display_name=(user.get("name") or {}).get("fullName"),
                            active=not user.get("suspended", False),
                        )
                    )
                page_token = body.get("nextPageToken")
                if not page_token:
                    break
            else:
                self._page_limit_reached()
        return records

    async def _check_access(self) -> None:
        async with self._client() as client:
            await self._page(client, None, 1)


class OktaConnector(_HttpIntegration):
    """Okta users via the Okta Users API.

    Args:
        org_url: Okta org URL, e.g. https://example.okta.com.
        api_token: Okta API token (sent as `SSWS <token>`).
        timeout_seconds: Per-request timeout.
        transport: Optional httpx transport.
    """

    source = "okta"

    def __init__(
        self,
        org_url: str,
        api_token: str,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__("okta", timeout_seconds, transport)
        self._org_url = org_url.rstrip("/")
        self._api_token = api_token

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"SSWS {self._api_token}", "Accept": "application/json"}

    async def list_users(self) -> list[DirectoryUserRecord]:
        records: list[DirectoryUserRecord] = []
        url: str | None = f"{self._org_url}/api/v1/users"
        params: dict[str, Any] | None = {"limit": 200}
        async with self._client() as client:
            for _ in range(_MAX_PAGES):
                if url is None:
                    break
                response = await self._send(client, "GET", url, headers=self._headers(), params=params)
                for user in response.json():
                    profile = user.get("profile") or {}
                    name = " ".join(p for p in (profile.get("firstName"), profile.get("lastName")) if p)
                    records.append(
                        DirectoryUserRecord(
                            external_id=str(user.get("id", "")),
                            email=profile.get("email") or profile.get("login"),
                            display_name=name or None,
                            active=user.get("status") == "ACTIVE",
                        )
                    )
                url, params = response.links.get("next", {}).get("url"), None
            else:
                if url is not None:
                    self._page_limit_reached()
        return records

    async def _check_access(self) -> None:
        async with self._client() as client:
            await self._send(
                client, "GET", f"{self._org_url}/api/v1/users", headers=self._headers(), params={"limit": 1}
            )
