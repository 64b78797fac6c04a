"""Public record operations for one container / environment / database scope.

`DatabaseClient` composes the codec, operation builder, asset uploader, query
translator and response mapper into save / fetch / delete / query calls. Every
method is a coroutine performing its own requests; the client keeps no
per-call state, so concurrently running calls (each wrapped in its own task,
which is that call's cancellation handle) cannot interfere with one another.

Batched forms return one `ItemResult` per record. Single-item forms run the
batched form with a batch of one and unwrap the result, raising the item's
error.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import AsyncIterator, List, Optional, Sequence, Union

import httpx

from .assets import AssetUploader
from .codec import check_encodable
from .config import Settings
from .errors import InternalItemError
from .models.records import Record, ZoneID
from .operations import (
    OperationType,
    build_delete_request,
    build_lookup_request,
    build_modify_request,
)
from .query import Cursor, Query, QueryPage, build_query_request, map_query_page
from .responses import ItemResult, map_delete_results, map_record_results
from .signing import RequestSigner, load_private_key
from .transport import CloudKitTransport, database_path

logger = logging.getLogger(__name__)


class DatabaseScope(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    SHARED = "shared"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class DatabaseClient:
    def __init__(
        self,
        transport: CloudKitTransport,
        container: str,
        *,
        scope: Union[DatabaseScope, str] = DatabaseScope.PUBLIC,
        environment: Union[Environment, str] = Environment.DEVELOPMENT,
        zone_id: Optional[ZoneID] = None,
    ) -> None:
        self.transport = transport
        self.container = container
        self.scope = DatabaseScope(scope)
        self.environment = Environment(environment)
        self.zone_id = zone_id
        self.assets = AssetUploader(transport, self.path)

    @classmethod
    def from_settings(
        cls, settings: Settings, *, http_client: Optional[httpx.AsyncClient] = None
    ) -> "DatabaseClient":
        """Build signer, transport and client from configuration."""
        private_key = None
        if settings.CLOUDKIT_PRIVATE_KEY:
            private_key = load_private_key(settings.CLOUDKIT_PRIVATE_KEY)
        else:
            logger.info("no private key configured; requests are sent unsigned")
        transport = CloudKitTransport(
            RequestSigner(settings.CLOUDKIT_KEY_ID, private_key),
            host=settings.CLOUDKIT_HOST,
            client=http_client,
            timeout=settings.HTTP_TIMEOUT,
            allow_unsigned_on_signing_error=settings.ALLOW_UNSIGNED_ON_SIGNING_ERROR,
            debug=settings.DEBUG,
        )
        return cls(
            transport,
            settings.CLOUDKIT_CONTAINER,
            scope=settings.CLOUDKIT_SCOPE,
            environment=settings.CLOUDKIT_ENVIRONMENT,
        )

    def path(self, operation: str) -> str:
        return database_path(self.container, self.environment.value, self.scope.value, operation)

    # ------------------------------------------------------------ save

    async def save_records(
        self,
        records: Sequence[Record],
        operation_type: Optional[Union[OperationType, str]] = None,
        *,
        desired_keys: Optional[Sequence[str]] = None,
    ) -> List[ItemResult]:
        """Save records in one modify request, uploading their assets first.

        Results follow the server's order; records whose asset transfer failed
        are not sent and are reported after them with the transfer error.
        """
        if not records:
            return []
        for record in records:
            check_encodable(record.fields)

        outcomes = await self.assets.upload(records, self.zone_id)
        failed = [
            ItemResult(name, error=outcome.error)
            for name, outcome in outcomes.items()
            if outcome.error is not None
        ]
        ready = [r for r in records if r.record_name not in {f.record_name for f in failed}]
        if not ready:
            return failed
        receipts = {name: outcome.receipts for name, outcome in outcomes.items()}
        request = build_modify_request(
            ready, operation_type, receipts, desired_keys=desired_keys, zone_id=self.zone_id
        )
        payload = await self.transport.post_signed(self.path("records/modify"), request)
        return map_record_results(payload) + failed

    async def save_record(
        self, record: Record, operation_type: Optional[Union[OperationType, str]] = None
    ) -> Record:
        results = await self.save_records([record], operation_type)
        return _single(record.record_name, results)

    # ------------------------------------------------------------ fetch

    async def fetch_records(
        self, record_names: Sequence[str], *, desired_keys: Optional[Sequence[str]] = None
    ) -> List[ItemResult]:
        if not record_names:
            return []
        request = build_lookup_request(record_names, desired_keys, zone_id=self.zone_id)
        payload = await self.transport.post_signed(self.path("records/lookup"), request)
        return map_record_results(payload)

    async def fetch_record(
        self, record_name: str, *, desired_keys: Optional[Sequence[str]] = None
    ) -> Record:
        results = await self.fetch_records([record_name], desired_keys=desired_keys)
        return _single(record_name, results)

    # ------------------------------------------------------------ delete

    async def delete_records(
        self,
        targets: Sequence[Union[str, Record]],
        operation_type: Optional[Union[OperationType, str]] = None,
    ) -> List[ItemResult]:
        if not targets:
            return []
        request = build_delete_request(targets, operation_type, zone_id=self.zone_id)
        payload = await self.transport.post_signed(self.path("records/modify"), request)
        return map_delete_results(payload)

    async def delete_record(
        self,
        target: Union[str, Record],
        operation_type: Optional[Union[OperationType, str]] = None,
    ) -> str:
        name = target.record_name if isinstance(target, Record) else target
        results = await self.delete_records([target], operation_type)
        _single(name, results)
        return name

    # ------------------------------------------------------------ query

    async def perform_query(
        self,
        query: Query,
        *,
        desired_keys: Optional[Sequence[str]] = None,
        results_limit: Optional[int] = None,
        zone_id: Optional[ZoneID] = None,
    ) -> QueryPage:
        """First page of a query."""
        return await self._query_page(query, None, desired_keys, results_limit, zone_id)

    async def fetch_more(
        self,
        query: Query,
        cursor: Cursor,
        *,
        desired_keys: Optional[Sequence[str]] = None,
        results_limit: Optional[int] = None,
        zone_id: Optional[ZoneID] = None,
    ) -> QueryPage:
        """Resume `query` from a cursor returned by a previous page of the same query."""
        return await self._query_page(query, cursor, desired_keys, results_limit, zone_id)

    async def iterate_query(
        self,
        query: Query,
        *,
        desired_keys: Optional[Sequence[str]] = None,
        results_limit: Optional[int] = None,
        zone_id: Optional[ZoneID] = None,
        cursor: Optional[Cursor] = None,
    ) -> AsyncIterator[ItemResult]:
        """Yield every match across pages until the server returns no cursor.

        Per-item failures are yielded like successes and do not stop paging.
        """
        while True:
            page = await self._query_page(query, cursor, desired_keys, results_limit, zone_id)
            for result in page.results:
                yield result
            if page.cursor is None:
                return
            cursor = page.cursor

    async def _query_page(
        self,
        query: Query,
        cursor: Optional[Cursor],
        desired_keys: Optional[Sequence[str]],
        results_limit: Optional[int],
        zone_id: Optional[ZoneID],
    ) -> QueryPage:
        request, fingerprint = build_query_request(
            query,
            zone_id=zone_id or self.zone_id,
            desired_keys=desired_keys,
            results_limit=results_limit,
            cursor=cursor,
        )
        payload = await self.transport.post_signed(self.path("records/query"), request)
        page = map_query_page(payload, fingerprint)
        logger.debug(
            "query %s page: %d result(s) more=%s",
            query.record_type,
            len(page.results),
            page.cursor is not None,
        )
        return page


def _single(record_name: str, results: List[ItemResult]) -> Record:
    if not results:
        raise InternalItemError(record_name, "EMPTY_RESPONSE", "server returned no entry")
    return results[0].unwrap()  # type: ignore[return-value]


__all__ = ["DatabaseClient", "DatabaseScope", "Environment"]
