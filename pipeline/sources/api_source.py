"""
REST API source with authentication and HTTP error classification.

The adapter makes exactly one request per fetch; retries with exponential
backoff are applied by the pipeline coordinator around the whole
extraction, based on whether the raised error is retryable:

- Timeouts, network errors, HTTP 429 and 5xx -> SourceUnavailable (retryable)
- HTTP 401, 403 and 404                      -> SourceAccessDenied (fatal)
- Malformed JSON or missing id/timestamp     -> SourceSchemaError (fatal)
"""

import httpx
from typing import List, Dict, Any, Optional, Tuple
from models.base import BoundaryType
from schemas.records import Boundary, SourceRecord
from pipeline.extractor import take_batch
from pipeline.sources.base import RowSource
from core.config import settings
from core.exceptions import SourceAccessDenied, SourceSchemaError, SourceUnavailable
import logging

logger = logging.getLogger(__name__)


class APISource(RowSource):
    """
    Extract change rows from a REST endpoint.

    Features:
    - Bearer token authentication
    - Incremental loading via `since` and `limit` query parameters
    - Response bodies as a JSON list or an object with a `data` list

    Attributes:
        timeout: Request timeout in seconds (default: 30.0)
    """

    def __init__(
        self,
        source_name: str,
        api_url: str,
        api_key: Optional[str] = None,
        id_column: str = "id",
        timestamp_column: str = "updated_at",
        ordering: BoundaryType = BoundaryType.TIMESTAMP,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(source_name, id_column, timestamp_column, ordering)
        self.api_url = api_url
        self.api_key = api_key or settings.API_KEY
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _params(self, since: Boundary, limit: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": limit}
        if since is not None:
            params["since"] = since.isoformat() if hasattr(since, "isoformat") else since
        return params

    async def fetch(self, since: Boundary, limit: int) -> Tuple[List[SourceRecord], Boundary]:
        """
        Fetch records changed after `since`.

        Raises:
            SourceUnavailable: For timeouts, network errors, 429 and 5xx answers
            SourceAccessDenied: For authentication failures and missing resources
            SourceSchemaError: For unparseable bodies and rows without id/timestamp
        """
        context = {"source": self.source_name, "api_url": self.api_url}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                logger.info(f"Fetching {self.api_url} since {since}")
                response = await client.get(
                    self.api_url,
                    headers=self._headers(),
                    params=self._params(since, limit)
                )
        except httpx.TimeoutException as e:
            raise SourceUnavailable(
                f"Request timeout for {self.api_url}",
                context={**context, "timeout": self.timeout},
                original_exception=e
            )
        except httpx.TransportError as e:
            raise SourceUnavailable(
                f"Network error for {self.api_url}",
                context=context,
                original_exception=e
            )

        self._check_status(response, context)

        try:
            data = response.json()
        except ValueError as e:
            raise SourceSchemaError(
                "Failed to parse JSON response",
                context={**context, "response_body": response.text[:500]},
                original_exception=e
            )

        # Handle different API response formats
        if isinstance(data, list):
            rows = data
        elif isinstance(data, dict) and isinstance(data.get("data"), list):
            rows = data["data"]
        else:
            raise SourceSchemaError(
                "Response body is neither a list nor an object with a 'data' list",
                context=context
            )

        records = []
        for row in rows:
            if not isinstance(row, dict):
                raise SourceSchemaError(
                    "Response row is not an object",
                    context={**context, "row_type": type(row).__name__}
                )
            records.append(self.to_record(row))

        batch, next_boundary = take_batch(records, since, limit, self.boundary_of)
        logger.info(f"Fetched {len(rows)} records from {self.source_name}, {len(batch)} after {since}")
        return batch, next_boundary

    def _check_status(self, response: httpx.Response, context: Dict[str, Any]) -> None:
        status = response.status_code

        if status in (401, 403):
            raise SourceAccessDenied(
                f"Authentication failed for {self.api_url}",
                context={**context, "status_code": status}
            )

        if status == 404:
            raise SourceAccessDenied(
                f"Resource not found: {self.api_url}",
                context={**context, "status_code": status}
            )

        if status == 429:
            raise SourceUnavailable(
                f"Rate limit exceeded for {self.api_url}",
                context={
                    **context,
                    "status_code": status,
                    "retry_after": response.headers.get("Retry-After")
                }
            )

        if status >= 500:
            raise SourceUnavailable(
                f"Server error {status} from {self.api_url}",
                context={**context, "status_code": status, "response_body": response.text[:500]}
            )

        if status >= 400:
            raise SourceSchemaError(
                f"Unexpected status {status} from {self.api_url}",
                context={**context, "status_code": status, "response_body": response.text[:500]}
            )
