"""
Batch Orchestration Overview:

SECTION 1: LOAD
    - Catch the local store up with the mirror (one-way, additive only).
    - Read one page of local accounts (highest points first) and process each
      account in order, reporting progress after every item.

SECTION 2: REFRESH
    - Same as load, but over every local account with a forced token refresh.
    - An account that fails is kept in the collection, error-flagged.

SECTION 3: CLAIM-ALL
    - Pick the accounts whose freshly read claim descriptor is enabled and has an id.
    - Fan out one claim per account, at most CLAIM_CONCURRENCY in flight.
    - Summarise as success / partial / failed once every claim has finished.

SECTION 4: CLAIM-SINGLE
    - Claim for one account, then re-read it so the collection shows the new state.

SECTION 5: DELETION
    - Single delete removes from the local store, then the mirrors, then the collection.
    - Delete-all only resets the local store; mirrors and sold inventory are left alone.

SECTION 6: INTAKE, SOLD INVENTORY AND TRANSFERS
    - Accept verified accounts, copy accounts into sold inventory and refresh
      them, and start point transfers.

Every batch runs under its own CancellationToken, registered in ``active_tokens``
for its lifetime. ``accounts`` is only ever replaced as a whole.
"""

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

from simsync.domain.accounts import AccountRecord, SoldAccountRecord, utc_now_iso
from simsync.domain.cancellation import CancellationToken
from simsync.domain.responses import TransferResult
from simsync.domain.retry import RetryPolicy
from simsync.errors import (
    AccountLimitReached,
    ApiError,
    AuthException,
    OperationCancelled,
    StoreError,
    ValidationError,
)
from simsync.utils.account_utils import validate_amount, validate_msisdn, validate_price

log = logging.getLogger("core")


@dataclass(frozen=True)
class Progress:
    current: int = 0
    total: int = 0
    message: str = ""


class ClaimStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    NOTHING_TO_CLAIM = "nothing_to_claim"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ClaimFailure:
    msisdn: str
    user_id: str
    error: str


@dataclass(frozen=True)
class ClaimSummary:
    total: int
    succeeded: int = 0
    failures: tuple = field(default_factory=tuple)
    cancelled: int = 0

    @property
    def status(self) -> ClaimStatus:
        if self.total == 0:
            return ClaimStatus.NOTHING_TO_CLAIM
        if self.succeeded == self.total:
            return ClaimStatus.SUCCESS
        if self.succeeded > 0:
            return ClaimStatus.PARTIAL
        if not self.failures:
            return ClaimStatus.CANCELLED
        return ClaimStatus.FAILED

    @property
    def message(self) -> str:
        if self.total == 0:
            return "No claimable points"
        message = f"Claimed {self.succeeded}/{self.total} accounts"
        if self.failures:
            message += f", {len(self.failures)} failed"
        if self.cancelled:
            message += f", {self.cancelled} cancelled"
        return message


class AccountOrchestrator:
    def __init__(
        self,
        api_client,
        token_manager,
        processor,
        repository,
        mirror=None,
        admin_mirror=None,
        reconciliation=None,
        sold_processor=None,
        sold_repository=None,
        sold_mirror=None,
        claim_concurrency: int = 20,
        page_size: int = 10,
        account_limit: int = 50,
        progress_callback: Optional[Callable[[Progress], None]] = None,
        claim_policy: Optional[RetryPolicy] = None,
    ):
        self.api_client = api_client
        self.token_manager = token_manager
        self.processor = processor
        self.repository = repository
        self.mirrors = tuple(m for m in (mirror, admin_mirror) if m is not None)
        self.reconciliation = reconciliation
        self.sold_processor = sold_processor
        self.sold_repository = sold_repository
        self.sold_mirror = sold_mirror

        self.claim_concurrency = claim_concurrency
        self.page_size = page_size
        self.account_limit = account_limit
        self.progress_callback = progress_callback
        self.claim_policy = claim_policy or RetryPolicy()

        self.accounts: tuple = ()
        self.sold_accounts: tuple = ()
        self.progress = Progress()
        self.active_tokens: set = set()

        self.is_loading = False
        self.is_refreshing = False
        self.is_claiming = False
        self.current_page = 0
        self.has_more = True
        self._closed = False

    # ------------------------------------------------------------------
    # Cancellation and collection state
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(self):
        token = CancellationToken()
        self.active_tokens.add(token)
        try:
            yield token
        finally:
            self.active_tokens.discard(token)

    def cancel_all(self) -> None:
        if self.active_tokens:
            log.info(f"Cancelling {len(self.active_tokens)} in-flight operation(s)")
        for token in list(self.active_tokens):
            token.cancel()

    def close(self) -> None:
        self.cancel_all()
        self._closed = True

    def _report(self, progress: Progress) -> None:
        self.progress = progress
        if self.progress_callback is not None:
            self.progress_callback(progress)

    def _set_accounts(self, records: Iterable[AccountRecord]) -> None:
        if self._closed:
            log.debug("Orchestrator closed; discarding collection update")
            return
        self.accounts = tuple(records)

    def _upsert_accounts(self, records: Iterable[AccountRecord]) -> None:
        by_id = {record.user_id: record for record in records}
        kept = tuple(by_id.pop(record.user_id, record) for record in self.accounts)
        self._set_accounts(kept + tuple(by_id.values()))

    @staticmethod
    def _overlay(originals, results) -> tuple:
        # Accounts that were not reached (cancelled) keep their previous state
        by_id = {record.user_id: record for record in results}
        return tuple(by_id.get(record.user_id, record) for record in originals)

    async def _process_guarded(self, processor, record, force_refresh, token) -> Optional[AccountRecord]:
        try:
            return await processor.process(record, force_refresh, token)
        except Exception as e:
            log.exception(f"Unexpected error processing {record.msisdn}")
            return record.with_error(str(e)).model_copy(update={"last_updated": utc_now_iso()})

    async def _process_sequentially(
        self, records, force_refresh: bool, token: CancellationToken, announce: bool = False
    ) -> list:
        results = []
        total = len(records)
        for index, record in enumerate(records, start=1):
            if token.cancelled:
                log.info(f"Batch cancelled after {index - 1}/{total} accounts")
                break
            # One report per item keeps current strictly increasing
            if announce:
                self._report(Progress(index, total, f"Updating {record.msisdn}"))
            result = await self._process_guarded(self.processor, record, force_refresh, token)
            if result is not None:
                results.append(result)
            if not announce:
                self._report(Progress(index, total, f"Processing {index}/{total}"))
        return results

    # ------------------------------------------------------------------
    # SECTION 1 and 2: load and refresh
    # ------------------------------------------------------------------

    async def reconcile_sync(self) -> int:
        if self.reconciliation is None:
            return 0
        try:
            return await self.reconciliation.sync()
        except StoreError as e:
            log.error(f"Mirror reconciliation failed, continuing with local data: {e}")
            return 0

    async def batch_load(self, force_refresh: bool = False) -> list:
        self.is_loading = True
        try:
            with self._operation() as token:
                self._report(Progress(0, 0, "Loading accounts..."))
                await self.reconcile_sync()
                page = await self.repository.get_page(1, self.page_size)
                results = await self._process_sequentially(page, force_refresh, token)
            self.current_page = 1
            self.has_more = len(page) == self.page_size
            self._set_accounts(self._overlay(page, results))
            log.info(f"Loaded {len(results)}/{len(page)} accounts")
            return results
        finally:
            self.is_loading = False

    async def load_more(self) -> list:
        if self.is_loading or not self.has_more:
            return []
        self.is_loading = True
        try:
            with self._operation() as token:
                next_page = self.current_page + 1
                page = await self.repository.get_page(next_page, self.page_size)
                results = await self._process_sequentially(page, False, token)
            self.current_page = next_page
            self.has_more = len(page) == self.page_size
            self._upsert_accounts(self._overlay(page, results))
            return results
        finally:
            self.is_loading = False

    async def load_all(self) -> list:
        self.is_loading = True
        try:
            with self._operation() as token:
                await self.reconcile_sync()
                records = await self.repository.get_all()
                results = await self._process_sequentially(records, False, token)
            self.current_page = -(-len(records) // self.page_size)
            self.has_more = False
            self._set_accounts(self._overlay(records, results))
            return results
        finally:
            self.is_loading = False

    async def batch_refresh(self) -> list:
        if self.is_refreshing:
            log.warning("Refresh already in progress; ignoring request")
            return []
        self.is_refreshing = True
        try:
            with self._operation() as token:
                self._report(Progress(0, 0, "Refreshing data..."))
                await self.reconcile_sync()
                records = await self.repository.get_all()
                results = await self._process_sequentially(records, True, token, announce=True)
            failed = sum(1 for record in results if record.has_error)
            log.info(f"Refreshed {len(results) - failed}/{len(records)} accounts, {failed} with errors")
            self._set_accounts(self._overlay(records, results))
            return results
        finally:
            self.is_refreshing = False

    async def process_account(self, record: AccountRecord, force_refresh: bool = False) -> Optional[AccountRecord]:
        with self._operation() as token:
            result = await self._process_guarded(self.processor, record, force_refresh, token)
        if result is not None:
            self._upsert_accounts([result])
        return result

    async def refresh_token(self, record: AccountRecord, force_refresh: bool = False) -> AccountRecord:
        with self._operation() as token:
            try:
                result = await self.token_manager.refresh_token(record, force_refresh, token)
            except OperationCancelled:
                return record
        if not result.has_error and result.token != record.token:
            await self.processor.persist(result)
        self._upsert_accounts([result])
        return result

    async def fetch_single(self, msisdn: str) -> Optional[AccountRecord]:
        record = next((r for r in self.accounts if r.msisdn == str(msisdn)), None)
        if record is None:
            raise ValidationError(f"No account found for {msisdn}")
        return await self.process_account(record)

    # ------------------------------------------------------------------
    # SECTION 3 and 4: claims
    # ------------------------------------------------------------------

    async def _fresh(self, record: AccountRecord, token: CancellationToken) -> AccountRecord:
        current = await self.token_manager.refresh_token(record, cancel_token=token)
        if current.has_error:
            raise AuthException(current.error_message or "Token refresh failed")
        # A rotated refresh token must be stored before the old one is reused
        if current.token != record.token:
            await self.processor.persist(current)
        return current

    async def _claim(self, record: AccountRecord, token: CancellationToken) -> AccountRecord:
        await self.claim_policy.run(
            lambda: self.api_client.claim(record, record.points.id, token),
            token,
            description=f"Claim for {record.msisdn}",
        )
        return record.mark_claimed()

    async def batch_claim_all(self, accounts: Optional[Iterable[AccountRecord]] = None) -> ClaimSummary:
        records = tuple(self.accounts if accounts is None else accounts)
        eligible = [record for record in records if record.is_claimable]
        if not eligible:
            summary = ClaimSummary(total=0)
            log.info(summary.message)
            self._report(Progress(0, 0, summary.message))
            return summary

        total = len(eligible)
        semaphore = asyncio.Semaphore(self.claim_concurrency)
        claimed, failures, flagged = [], [], []
        completed = cancelled = 0

        async def claim_one(record: AccountRecord) -> None:
            nonlocal completed, cancelled
            current = record
            try:
                async with semaphore:
                    token.raise_if_cancelled()
                    current = await self._fresh(record, token)
                    claimed.append(await self._claim(current, token))
            except OperationCancelled:
                cancelled += 1
            except (ApiError, AuthException) as e:
                log.error(f"Claim failed for {record.msisdn}: {e}")
                failures.append(ClaimFailure(record.msisdn, record.user_id, str(e)))
                flagged.append(current.with_error(f"Claim failed: {e}"))
            finally:
                completed += 1
                self._report(Progress(completed, total, f"Claiming {completed}/{total}"))

        self.is_claiming = True
        try:
            with self._operation() as token:
                self._report(Progress(0, total, f"Claiming {total} accounts"))
                await asyncio.gather(*(claim_one(record) for record in eligible))
                for record in claimed:
                    await self.processor.persist(record)
        finally:
            self.is_claiming = False

        self._upsert_accounts(claimed + flagged)

        summary = ClaimSummary(total, len(claimed), tuple(failures), cancelled)
        log.info(summary.message)
        self._report(Progress(total, total, summary.message))
        return summary

    async def claim_single(self, record: AccountRecord) -> bool:
        self.is_claiming = True
        try:
            if not record.is_claimable:
                log.info(f"{record.msisdn} has no claimable points")
                return False
            with self._operation() as token:
                current = record
                try:
                    current = await self._fresh(record, token)
                    claimed = await self._claim(current, token)
                except OperationCancelled:
                    return False
                except (ApiError, AuthException) as e:
                    log.error(f"Claim failed for {record.msisdn}: {e}")
                    self._upsert_accounts([current.with_error(f"Claim failed: {e}")])
                    return False

                await self.processor.persist(claimed)
                refreshed = await self._process_guarded(self.processor, claimed, False, token)
            if refreshed is None or refreshed.has_error:
                refreshed = claimed
            self._upsert_accounts([refreshed])
            return True
        finally:
            self.is_claiming = False

    # ------------------------------------------------------------------
    # SECTION 5: deletion
    # ------------------------------------------------------------------

    async def delete_account(self, user_id: str) -> None:
        user_id = str(user_id)
        try:
            await self.repository.delete(user_id)
            for mirror in self.mirrors:
                await mirror.delete(user_id)
        except StoreError as e:
            log.error(f"Failed to delete account {user_id}: {e}")
            raise
        self._set_accounts(r for r in self.accounts if r.user_id != user_id)
        log.info(f"Deleted account {user_id}")

    async def delete_all_local(self) -> None:
        await self.repository.delete_all()
        self._set_accounts(())
        self.current_page = 0
        self.has_more = True
        log.info("Cleared local account store")

    # ------------------------------------------------------------------
    # SECTION 6: intake, sold inventory and transfers
    # ------------------------------------------------------------------

    async def _save_to_mirrors(self, mirrors, record) -> None:
        for mirror in mirrors:
            try:
                await mirror.save(record)
            except StoreError as e:
                log.error(f"Failed to mirror {record.msisdn}: {e}")

    async def add_account(self, record: AccountRecord) -> AccountRecord:
        msisdn = validate_msisdn(record.msisdn)
        existing = await self.repository.get_all()
        if not any(r.user_id == record.user_id for r in existing):
            if any(r.msisdn == msisdn for r in existing):
                raise ValidationError("Phone number already exists")
            if len(existing) >= self.account_limit:
                raise AccountLimitReached(f"Account limit of {self.account_limit} reached")

        record = record.model_copy(update={"msisdn": msisdn, "last_updated": utc_now_iso()})
        await self.repository.save(record)
        await self._save_to_mirrors(self.mirrors, record)
        self._upsert_accounts([record])
        log.info(f"Added account {msisdn} ({record.user_id})")
        return record

    async def mark_sold(self, record: AccountRecord, sale_price, buyer_info=None, sale_date=None) -> SoldAccountRecord:
        price = validate_price(sale_price)
        sold = SoldAccountRecord.from_account(record, price, buyer_info, sale_date)
        await self.sold_repository.save(sold)
        if self.sold_mirror is not None:
            await self._save_to_mirrors([self.sold_mirror], sold)
        self.sold_accounts = tuple(r for r in self.sold_accounts if r.user_id != sold.user_id) + (sold,)
        log.info(f"Marked {record.msisdn} as sold for {price}")
        return sold

    async def refresh_sold_inventory(self) -> list:
        records = await self.sold_repository.get_all()
        semaphore = asyncio.Semaphore(self.claim_concurrency)

        async def refresh_one(record):
            async with semaphore:
                return await self._process_guarded(self.sold_processor, record, False, token)

        with self._operation() as token:
            outcomes = await asyncio.gather(*(refresh_one(record) for record in records))
        results = [record for record in outcomes if record is not None]
        if not self._closed:
            self.sold_accounts = self._overlay(records, results)
        return results

    async def delete_sold(self, user_id: str) -> None:
        user_id = str(user_id)
        await self.sold_repository.delete(user_id)
        if self.sold_mirror is not None:
            await self.sold_mirror.delete(user_id)
        self.sold_accounts = tuple(r for r in self.sold_accounts if r.user_id != user_id)

    async def transfer_points(self, record: Optional[AccountRecord], transferee_msisdn, amount) -> TransferResult:
        if record is None:
            raise ValidationError("Please select an account to transfer from")
        transferee = validate_msisdn(transferee_msisdn)
        value = validate_amount(amount)

        with self._operation() as token:
            try:
                current = await self._fresh(record, token)
                if current.token != record.token:
                    self._upsert_accounts([current])
                result = await self.api_client.transfer_points(current, transferee, value, token)
            except OperationCancelled:
                return TransferResult(success=False, message="Transfer cancelled")
            except AuthException as e:
                return TransferResult(success=False, message=str(e))
            except ApiError as e:
                log.error(f"Point transfer from {record.msisdn} failed: {e}")
                return TransferResult(success=False, message=e.message)

        log.info(f"Transfer of {value} points from {record.msisdn} to {transferee}: {result.message}")
        return result
