"""
Identity platform HTTP client.

Wraps the platform REST API with:
- OAuth client-credentials authentication (token cached until expiry)
- standardized error classification (fusion.core.api_errors)
- every call routed through the ApiExecutionQueue, which owns rate
  limiting, concurrency, timeouts and retries
- offset and search-after pagination

Domain methods return plain JSON dictionaries; callers convert them into
models.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from fusion.core.api_errors import APIError, AuthenticationError, RetryableError, classify_http_error
from fusion.core.api_queue import ApiExecutionQueue, QueuePriority
from fusion.core.config import Settings
from fusion.core.pagination import PLATFORM_MAX_PAGE_SIZE, Paginator

logger = logging.getLogger(__name__)

SOURCE_NAME = "identity-platform"


class IdentityPlatformClient:
    """
    Client for the identity platform API.

    Usage:
        async with IdentityPlatformClient.from_settings(get_settings()) as client:
            identities = await client.list_identities()
    """

    DEFAULT_TIMEOUT: float = 60.0
    DEFAULT_CONNECT_TIMEOUT: float = 10.0
    TOKEN_EXPIRY_MARGIN: float = 60.0

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        queue: Optional[ApiExecutionQueue] = None,
        page_size: int = PLATFORM_MAX_PAGE_SIZE,
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the platform client.

        Args:
            base_url: API base URL
            client_id: OAuth client id
            client_secret: OAuth client secret
            queue: Execution queue; None calls the platform directly
            page_size: Page size for list endpoints (capped at 250)
            timeout: HTTP read timeout in seconds
            connect_timeout: HTTP connect timeout in seconds
            http_client: Preconfigured httpx client (mainly for tests)
        """
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.queue = queue
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.paginator = Paginator(queue, page_size=page_size)

        self._client = http_client
        self._owns_client = http_client is None
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

        logger.info(
            f"Initialized {SOURCE_NAME} client: base_url={self.base_url}, "
            f"queue={'on' if queue else 'off'}"
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdentityPlatformClient":
        """Build a client and its execution queue from Settings."""
        settings.require_credentials()
        queue = None
        if settings.enable_queue:
            queue = ApiExecutionQueue(
                requests_per_second=settings.requests_per_second,
                max_concurrent_requests=settings.max_concurrent_requests,
                max_retries=settings.max_retries,
                request_timeout=settings.request_timeout,
                enable_retry=settings.enable_retry,
                stats_interval=settings.stats_interval,
            )
        return cls(
            base_url=settings.base_url,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            queue=queue,
            page_size=settings.page_size,
        )

    # =========================================================================
    # Transport
    # =========================================================================

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        """Close the queue and the HTTP client."""
        if self.queue is not None:
            await self.queue.close()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
            logger.debug(f"{SOURCE_NAME} client closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            client = await self._get_client()
            try:
                response = await client.post(
                    f"{self.base_url}/oauth/token",
                    data={
                        "grant_type": "client_credentials",
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                    },
                )
            except httpx.TransportError as e:
                raise RetryableError(f"Token request failed: {e}", source=SOURCE_NAME)

            if response.status_code >= 400:
                if response.status_code in (400, 401):
                    raise AuthenticationError(
                        f"Token request rejected: {response.text[:200]}", source=SOURCE_NAME
                    )
                raise classify_http_error(
                    response.status_code, response.text, SOURCE_NAME, response.headers
                )

            payload = response.json()
            self._token = payload["access_token"]
            expires_in = float(payload.get("expires_in", 3600))
            self._token_expires_at = time.monotonic() + max(0.0, expires_in - self.TOKEN_EXPIRY_MARGIN)
            logger.debug(f"Obtained access token (expires in {expires_in:.0f}s)")
            return self._token

    def _build_headers(self, token: str) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {token}",
            "User-Agent": "identity-fusion/client",
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        resource_id: str = "unknown",
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Make one HTTP request (no retries; the queue retries).

        Raises:
            APIError: Classified failure
        """
        token = await self._get_token()
        headers = self._build_headers(token)
        if extra_headers:
            headers.update(extra_headers)

        client = await self._get_client()
        logger.debug(f"[{SOURCE_NAME}] {method} {resource_id}")
        try:
            response = await client.request(
                method,
                f"{self.base_url}/{path.lstrip('/')}",
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.TransportError as e:
            raise RetryableError(f"Request failed: {e}", source=resource_id)

        if response.status_code >= 400:
            if response.status_code == 401:
                self._token = None
            raise classify_http_error(
                response.status_code, response.text, resource_id, response.headers
            )
        return response

    async def _json(self, method: str, path: str, **kwargs) -> Any:
        response = await self._request(method, path, **kwargs)
        if not response.content:
            return None
        return response.json()

    async def execute(
        self,
        func: Callable[[], Awaitable[Any]],
        priority: QueuePriority = QueuePriority.NORMAL,
        context: str = "request",
        optional: bool = True,
    ) -> Any:
        """
        Run a platform call through the queue.

        Args:
            func: Zero-argument coroutine function making the call
            priority: Queue priority
            context: Operation name for logs
            optional: When True a final failure is logged and None returned;
                when False it is re-raised

        Returns:
            The call's result, or None for a failed optional call
        """
        try:
            if self.queue is not None:
                return await self.queue.enqueue(func, priority=priority, context=context)
            return await func()
        except Exception as e:
            if isinstance(e, APIError) and e.status_code:
                detail = f"HTTP {e.status_code} - {e.message}"
            else:
                detail = str(e)
            logger.error(f"Error in {context}: {detail}")
            if optional:
                return None
            raise

    def get_queue_stats(self) -> Optional[Dict[str, Any]]:
        return self.queue.get_stats().to_dict() if self.queue is not None else None

    # =========================================================================
    # Identities
    # =========================================================================

    async def _search(
        self, index: str, query: str, limit: int, search_after: Optional[List[str]], count: bool
    ) -> List[Dict[str, Any]]:
        body: Dict[str, Any] = {
            "indices": [index],
            "query": {"query": query},
            "sort": ["id"],
        }
        if search_after:
            body["searchAfter"] = search_after
        response = await self._request(
            "POST",
            "v3/search",
            params={"limit": limit, "count": str(count).lower()},
            json_body=body,
            resource_id=f"search:{index}",
        )
        if count:
            logger.debug(f"search:{index} total={response.headers.get('X-Total-Count')}")
        return response.json()

    async def list_identities(self, query: str = "*") -> List[Dict[str, Any]]:
        """All identity documents (with their accounts) matching a query."""
        return await self.paginator.paginate_search(
            lambda limit, after, count: self._search("identities", query, limit, after, count),
            context="listIdentities",
        )

    async def search_identities(self, query: str, limit: int = 1) -> Optional[List[Dict[str, Any]]]:
        return await self.execute(
            lambda: self._search("identities", query, limit, None, False),
            context="getIdentityBySearch",
        )

    async def get_identity(self, identity_id: str) -> Optional[Dict[str, Any]]:
        results = await self.search_identities(f'id:"{identity_id}"')
        return results[0] if results else None

    async def get_identity_by_uid(self, uid: str) -> Optional[Dict[str, Any]]:
        results = await self.search_identities(f'attributes.uid.exact:"{uid}"')
        return results[0] if results else None

    # =========================================================================
    # Accounts
    # =========================================================================

    async def list_accounts(self, filters: Optional[str] = None) -> List[Dict[str, Any]]:
        def fetch(offset: int, limit: int) -> Awaitable[Any]:
            params: Dict[str, Any] = {"offset": offset, "limit": limit}
            if filters:
                params["filters"] = filters
            return self._json("GET", "v3/accounts", params=params, resource_id="listAccounts")

        return await self.paginator.paginate(fetch, context="listAccounts")

    async def list_accounts_by_source(self, source_id: str) -> List[Dict[str, Any]]:
        return await self.list_accounts(f'sourceId eq "{source_id}"')

    async def get_accounts_by_identity(self, identity_id: str) -> List[Dict[str, Any]]:
        return await self.list_accounts(f'identityId eq "{identity_id}"')

    async def get_account_by_source_and_native_identity(
        self, source_id: str, native_identity: str
    ) -> Optional[Dict[str, Any]]:
        accounts = await self.execute(
            lambda: self._json(
                "GET",
                "v3/accounts",
                params={
                    "limit": 1,
                    "filters": f'sourceId eq "{source_id}" and nativeIdentity eq "{native_identity}"',
                },
                resource_id="getAccountBySourceAndNativeIdentity",
            ),
            context="getAccountBySourceAndNativeIdentity",
        )
        return accounts[0] if accounts else None

    async def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        return await self.execute(
            lambda: self._json("GET", f"v3/accounts/{account_id}", resource_id="getAccount"),
            context=f"getAccount({account_id})",
        )

    async def correlate_account(self, account_id: str, identity_id: str) -> Any:
        """
        Link an account to an identity.

        Raises:
            APIError: When the platform rejects the correlation
        """
        patch = [{"op": "replace", "path": "/identityId", "value": identity_id}]
        return await self.execute(
            lambda: self._json(
                "PATCH",
                f"v3/accounts/{account_id}",
                json_body=patch,
                resource_id="correlateAccount",
                extra_headers={"Content-Type": "application/json-patch+json"},
            ),
            priority=QueuePriority.HIGH,
            context=f"correlateAccount({account_id})",
            optional=False,
        )

    # =========================================================================
    # Sources and aggregation
    # =========================================================================

    async def list_sources(self) -> List[Dict[str, Any]]:
        return await self.paginator.paginate(
            lambda offset, limit: self._json(
                "GET", "v3/sources", params={"offset": offset, "limit": limit}, resource_id="listSources"
            ),
            context="listSources",
        )

    async def get_source(self, source_id: str) -> Optional[Dict[str, Any]]:
        return await self.execute(
            lambda: self._json("GET", f"v3/sources/{source_id}", resource_id="getSource"),
            context=f"getSource({source_id})",
        )

    async def list_source_schemas(self, source_id: str) -> Optional[List[Dict[str, Any]]]:
        return await self.execute(
            lambda: self._json("GET", f"v3/sources/{source_id}/schemas", resource_id="listSourceSchemas"),
            context=f"listSourceSchemas({source_id})",
        )

    async def aggregate_accounts(self, source_id: str) -> Optional[Dict[str, Any]]:
        return await self.execute(
            lambda: self._json("POST", f"v3/sources/{source_id}/load-accounts", resource_id="aggregateAccounts"),
            priority=QueuePriority.URGENT,
            context=f"aggregateAccounts({source_id})",
        )

    async def get_latest_account_aggregation(self, source_name: str) -> Optional[Dict[str, Any]]:
        """Most recent completed account aggregation event for a source."""
        query = f'operation:AGGREGATE AND status:PASSED AND objects:ACCOUNT AND attributes.sourceName:"{source_name}"'
        events = await self.execute(
            lambda: self._request(
                "POST",
                "v3/search",
                params={"limit": 1},
                json_body={"indices": ["events"], "query": {"query": query}, "sort": ["-created"]},
                resource_id="getLatestAccountAggregation",
            ),
            context=f"getLatestAccountAggregation({source_name})",
        )
        if events is None:
            return None
        results = events.json()
        return results[0] if results else None

    async def list_transforms(self) -> Optional[List[Dict[str, Any]]]:
        return await self.execute(
            lambda: self._json("GET", "v3/transforms", resource_id="listTransforms"),
            context="listTransforms",
        )

    # =========================================================================
    # Forms and workflows
    # =========================================================================

    async def list_forms(self) -> Optional[List[Dict[str, Any]]]:
        response = await self.execute(
            lambda: self._json("GET", "beta/form-definitions", resource_id="listForms"),
            context="listForms",
        )
        if isinstance(response, dict):
            return response.get("results") or []
        return response

    async def create_form(self, definition: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self.execute(
            lambda: self._json("POST", "beta/form-definitions", json_body=definition, resource_id="createForm"),
            priority=QueuePriority.HIGH,
            context="createForm",
            optional=False,
        )

    async def delete_form(self, form_id: str) -> None:
        await self.execute(
            lambda: self._json("DELETE", f"beta/form-definitions/{form_id}", resource_id="deleteForm"),
            context=f"deleteForm({form_id})",
            optional=False,
        )

    async def list_form_instances(self) -> Optional[List[Dict[str, Any]]]:
        response = await self.execute(
            lambda: self._json("GET", "beta/form-instances", resource_id="listFormInstances"),
            context="listFormInstances",
        )
        if isinstance(response, dict):
            return response.get("results") or []
        return response

    async def create_form_instance(
        self, form_id: str, recipients: List[str], form_input: Dict[str, Any], expire: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        body: Dict[str, Any] = {
            "formDefinitionId": form_id,
            "recipients": [{"type": "IDENTITY", "id": recipient} for recipient in recipients],
            "formInput": form_input,
            "createdBy": {"type": "WORKFLOW_EXECUTION", "id": self.client_id},
        }
        if expire:
            body["expire"] = expire
        return await self.execute(
            lambda: self._json("POST", "beta/form-instances", json_body=body, resource_id="createFormInstance"),
            priority=QueuePriority.HIGH,
            context="createFormInstance",
            optional=False,
        )

    async def list_workflows(self) -> Optional[List[Dict[str, Any]]]:
        return await self.execute(
            lambda: self._json("GET", "v3/workflows", resource_id="listWorkflows"),
            context="listWorkflows",
        )

    async def test_workflow(self, workflow_id: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Trigger a workflow with an input payload (used for outbound email)."""
        return await self.execute(
            lambda: self._json(
                "POST", f"v3/workflows/{workflow_id}/test", json_body={"input": payload}, resource_id="testWorkflow"
            ),
            context=f"testWorkflow({workflow_id})",
        )
