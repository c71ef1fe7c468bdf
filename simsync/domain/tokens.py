import logging
from time import time
from typing import Optional

from simsync.domain.accounts import TOKEN_EXPIRY_MARGIN_SECONDS, AccountRecord, ErrorLabel
from simsync.domain.api_client import SimApiClient
from simsync.domain.cancellation import CancellationToken
from simsync.domain.retry import RetryPolicy, is_transient_api_error
from simsync.errors import ApiError, AuthException

log = logging.getLogger("tokens")


class TokenLifecycleManager:
    """
    Keeps each account's access token usable.

    ``refresh_token`` always hands back a record. A rejected refresh token marks
    the record SESSION_EXPIRED straight away; any other failure is retried by
    the retry policy and, once exhausted, marks the record REFRESH_FAILED.
    Cancellation is the one thing that propagates (as ``OperationCancelled``).
    """

    def __init__(
        self,
        api_client: SimApiClient,
        retry_policy: Optional[RetryPolicy] = None,
        expiry_margin: int = TOKEN_EXPIRY_MARGIN_SECONDS,
        clock=time,
    ):
        self._api = api_client
        self._retry_policy = retry_policy or RetryPolicy(retryable=is_transient_api_error)
        self.expiry_margin = expiry_margin
        self._clock = clock

    def needs_refresh(self, record: AccountRecord) -> bool:
        return record.is_token_within_expiry_window(now=self._clock(), margin=self.expiry_margin)

    async def refresh_token(
        self,
        record: AccountRecord,
        force_refresh: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AccountRecord:
        if not force_refresh and not self.needs_refresh(record):
            return record

        if not record.refresh_token:
            log.error(f"No refresh token stored for {record.msisdn}; session cannot be renewed")
            return record.with_error("No refresh token stored", ErrorLabel.SESSION_EXPIRED)

        log.info(f"{record.msisdn} access token is within expiry window, refreshing tokens")
        try:
            tokens = await self._retry_policy.run(
                lambda: self._api.refresh_token(record, cancel_token),
                cancel_token,
                description=f"Token refresh for {record.msisdn}",
            )
        except AuthException as e:
            log.error(f"Refresh token rejected for {record.msisdn}: {e}")
            return record.with_error(str(e), ErrorLabel.SESSION_EXPIRED)
        except ApiError as e:
            log.error(f"Failed to refresh access token for {record.msisdn}: {e}")
            return record.with_error(f"Token refresh failed: {e}", ErrorLabel.REFRESH_FAILED)

        update = {
            "token": tokens.token,
            "access_token_expire_at": tokens.access_token_expire_at,
        }
        # Keep the stored refresh token when the server does not rotate it
        if tokens.refresh_token:
            update["refresh_token"] = tokens.refresh_token
        if tokens.refresh_token_expire_at is not None:
            update["refresh_token_expire_at"] = tokens.refresh_token_expire_at

        log.info(f"Successfully refreshed {record.msisdn} access token, new expiry time is {tokens.access_token_expire_at}")
        return record.model_copy(update=update).without_error()
