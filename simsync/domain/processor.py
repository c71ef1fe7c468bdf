import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from simsync.domain.accounts import AccountRecord, ErrorLabel, SoldAccountRecord, utc_now_iso
from simsync.domain.api_client import SimApiClient
from simsync.domain.cancellation import CancellationToken
from simsync.domain.outcomes import (
    Cancelled,
    ProcessingOutcome,
    SessionExpired,
    Success,
    TransientFailure,
)
from simsync.domain.retry import RetryPolicy
from simsync.domain.tokens import TokenLifecycleManager
from simsync.errors import ApiError, OperationCancelled
from simsync.utils.account_utils import sanitize_record

log = logging.getLogger("processor")


@dataclass(frozen=True)
class ReadFailure:
    endpoint: str
    status: Optional[int]
    error: str

    @property
    def unauthorized(self) -> bool:
        return self.status == 401

    def describe(self) -> str:
        return f"{self.endpoint} ({self.status or 'no-status'}): {self.error}"


class AccountProcessor:
    """
    Brings one account up to date: token refresh, the four account reads in
    parallel, merge, then write-through to the local store and every mirror.

    I/O failures come back as data (an error-flagged record inside a
    ``ProcessingOutcome``); cancellation comes back as ``Cancelled``.
    """

    def __init__(
        self,
        api_client: SimApiClient,
        token_manager: TokenLifecycleManager,
        repository,
        mirrors: Sequence = (),
        read_policy: Optional[RetryPolicy] = None,
    ):
        self._api = api_client
        self._tokens = token_manager
        self._repository = repository
        self._mirrors = tuple(mirrors)
        self._read_policy = read_policy or RetryPolicy()

    async def process(
        self,
        record: AccountRecord,
        force_refresh: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[AccountRecord]:
        outcome = await self.process_outcome(record, force_refresh, cancel_token)
        return outcome.record

    async def process_outcome(
        self,
        record: AccountRecord,
        force_refresh: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProcessingOutcome:
        try:
            return await self._process(record, force_refresh, cancel_token)
        except OperationCancelled:
            log.info(f"Processing of {record.msisdn} cancelled")
            return Cancelled()

    async def _prepare(self, record, force_refresh, cancel_token) -> AccountRecord:
        return await self._tokens.refresh_token(record, force_refresh, cancel_token)

    async def _process(self, record, force_refresh, cancel_token) -> ProcessingOutcome:
        current = await self._prepare(record, force_refresh, cancel_token)
        if current.has_error:
            return self._token_failure(current)

        results = await self._read_all(current, cancel_token)

        if any(isinstance(r, ReadFailure) and r.unauthorized for r in results):
            log.warning(f"{record.msisdn} access token rejected (401), forcing a token refresh")
            current = await self._tokens.refresh_token(current, True, cancel_token)
            if current.has_error:
                return self._token_failure(current)
            results = await self._read_all(current, cancel_token)
            if any(isinstance(r, ReadFailure) and r.unauthorized for r in results):
                log.error(f"{record.msisdn} still unauthorized after token refresh")
                expired = current.with_error(
                    "Session rejected by server after token refresh", ErrorLabel.SESSION_EXPIRED
                )
                return SessionExpired(self._stamp(expired))

        failures = [r for r in results if isinstance(r, ReadFailure)]
        if failures:
            reason = "API errors: " + "; ".join(f.describe() for f in failures)
            log.error(f"Processing error for {record.msisdn} ({record.user_id}): {reason}")
            # Previously fetched balance and points stay on the record
            return TransientFailure(self._stamp(current.with_error(reason)), reason)

        merged = self._merge(current, results)
        updated = type(current).model_validate(sanitize_record(merged))
        await self.persist(updated)
        log.info(f"Processed {updated.msisdn}: {updated.total_point} points, label '{updated.label}'")
        return Success(updated)

    def _token_failure(self, record: AccountRecord) -> ProcessingOutcome:
        record = self._stamp(record)
        if record.error_label is ErrorLabel.SESSION_EXPIRED:
            return SessionExpired(record)
        return TransientFailure(record, record.error_message or "Token refresh failed")

    @staticmethod
    def _stamp(record: AccountRecord) -> AccountRecord:
        return record.model_copy(update={"last_updated": utc_now_iso()})

    def _reads(self, record, cancel_token) -> dict:
        return {
            "dashboard": lambda: self._api.get_dashboard(record, cancel_token),
            "pointDashboard": lambda: self._api.get_point_dashboard(record, cancel_token),
            "balance": lambda: self._api.get_balance(record, cancel_token),
            "claimList": lambda: self._api.get_claim_list(record, cancel_token),
        }

    async def _read(self, endpoint, operation, record, cancel_token):
        try:
            return await self._read_policy.run(
                operation, cancel_token, description=f"{endpoint} read for {record.msisdn}"
            )
        except ApiError as e:
            return ReadFailure(endpoint=endpoint, status=e.status, error=e.message)

    async def _read_all(self, record, cancel_token) -> list:
        reads = self._reads(record, cancel_token)
        results = await asyncio.gather(
            *(self._read(endpoint, operation, record, cancel_token) for endpoint, operation in reads.items()),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return results

    def _merge(self, record: AccountRecord, results) -> AccountRecord:
        dashboard, point_dashboard, balance, claim_list = results
        # First claim-list entry is authoritative; claimability is never carried over
        points = claim_list[0] if claim_list else None
        return record.without_error().model_copy(
            update={
                "main_balance": balance.main_balance,
                "total_point": point_dashboard.total_point,
                "start_status_label": dashboard.start_status_label,
                "points": points,
                "label": (points.label if points else None) or "",
                "last_updated": utc_now_iso(),
            }
        )

    async def persist(self, record: AccountRecord) -> None:
        stores = (self._repository,) + self._mirrors
        results = await asyncio.gather(*(store.save(record) for store in stores), return_exceptions=True)
        for store, result in zip(stores, results):
            if isinstance(result, Exception):
                log.error(f"Failed to save {record.msisdn} to {store.__class__.__name__}: {result}")
            elif isinstance(result, BaseException):
                raise result


class SoldAccountProcessor(AccountProcessor):
    """
    Refreshes a sold account's balance, points and loyalty entries.

    Sold accounts are not refreshed proactively; a token refresh only happens
    when the operator rejects the stored token with a 401.
    """

    async def _prepare(self, record, force_refresh, cancel_token) -> AccountRecord:
        if force_refresh:
            return await self._tokens.refresh_token(record, True, cancel_token)
        return record

    def _reads(self, record, cancel_token) -> dict:
        return {
            "dashboard": lambda: self._api.get_dashboard(record, cancel_token),
            "pointDashboard": lambda: self._api.get_point_dashboard(record, cancel_token),
            "balance": lambda: self._api.get_balance(record, cancel_token),
        }

    def _merge(self, record: SoldAccountRecord, results) -> SoldAccountRecord:
        dashboard, point_dashboard, balance = results
        return record.without_error().model_copy(
            update={
                "main_balance": balance.main_balance,
                "total_point": point_dashboard.total_point,
                "start_status_label": dashboard.start_status_label,
                "loyalty_data": balance.loyalty_entries,
                "last_updated": utc_now_iso(),
            }
        )
