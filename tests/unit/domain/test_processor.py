import asyncio
import json
from time import time

import httpx
import pytest

from simsync.domain.accounts import ErrorLabel, SoldAccountRecord
from simsync.domain.api_client import (
    BALANCE_ENDPOINT,
    CLAIM_LIST_ENDPOINT,
    DASHBOARD_ENDPOINT,
    POINT_DASHBOARD_ENDPOINT,
    REFRESH_TOKEN_ENDPOINT,
)
from simsync.domain.cancellation import CancellationToken
from simsync.domain.outcomes import Cancelled, SessionExpired, Success, TransientFailure
from simsync.domain.processor import ReadFailure
from simsync.utils.account_utils import RECORD_FIELDS

SIMS = "users/owner/sims"


def test_read_failure_describe():
    assert ReadFailure("balance", 503, "busy").describe() == "balance (503): busy"
    assert ReadFailure("dashboard", None, "timed out").describe() == "dashboard (no-status): timed out"

@pytest.mark.asyncio
async def test_process_merges_reads_and_persists(app, fake_api, fake_mirror, record_factory):
    fake_api.set(CLAIM_LIST_ENDPOINT, {"data": {"attribute": [{"enable": True, "id": "p1", "label": "Claim"}]}})
    record = record_factory("1")

    outcome = await app.processor.process_outcome(record)

    assert isinstance(outcome, Success)
    updated = outcome.record
    assert updated.total_point == 120
    assert updated.main_balance.available_total_balance == 1500
    assert updated.start_status_label == "Active"
    assert updated.points.id == "p1"
    assert updated.label == "Claim"
    assert updated.last_updated is not None
    assert not updated.has_error

    stored = await app.repository.get("1")
    assert stored.total_point == 120
    assert fake_mirror.records(SIMS)["1"]["totalPoint"] == 120

@pytest.mark.asyncio
async def test_mirror_write_has_no_missing_fields(app, fake_mirror, record_factory):
    await app.processor.process(record_factory("1"))

    put = next(r for r in fake_mirror.requests if r.method == "PUT")
    body = json.loads(put.content)
    for key in RECORD_FIELDS:
        assert key in body
    assert body["errorMessage"] is None
    assert body["refresh_token_expire_at"] is None

@pytest.mark.asyncio
async def test_first_claim_list_entry_is_authoritative(app, fake_api, record_factory):
    fake_api.set(
        CLAIM_LIST_ENDPOINT,
        {"data": {"attribute": [{"enable": False, "id": "p9", "label": ""}, {"enable": True, "id": "p1", "label": "Claim"}]}},
    )

    updated = await app.processor.process(record_factory("1"))

    assert updated.points.id == "p9"
    assert not updated.is_claimable
    assert updated.label == ""

@pytest.mark.asyncio
async def test_empty_claim_list_clears_stale_claimability(app, fake_api, record_factory):
    fake_api.set(CLAIM_LIST_ENDPOINT, {"data": {"attribute": []}})
    record = record_factory("1", points={"enable": True, "id": "p1"}, label="Claim")

    updated = await app.processor.process(record)

    assert updated.points is None
    assert updated.label == ""

@pytest.mark.asyncio
async def test_service_unavailable_read_is_retried(app, fake_api, record_factory):
    fake_api.queue(POINT_DASHBOARD_ENDPOINT, 503)

    outcome = await app.processor.process_outcome(record_factory("1"))

    assert isinstance(outcome, Success)
    assert len(fake_api.calls(POINT_DASHBOARD_ENDPOINT)) == 2

@pytest.mark.asyncio
async def test_failed_read_flags_record_and_keeps_previous_data(app, fake_api, record_factory):
    fake_api.set(BALANCE_ENDPOINT, 503)
    record = record_factory("1", total_point=75, mainBalance={"availableTotalBalance": 900, "currency": "Ks"})

    outcome = await app.processor.process_outcome(record)

    assert isinstance(outcome, TransientFailure)
    failed = outcome.record
    assert failed.has_error
    assert failed.error_message.startswith("API errors: balance (503)")
    assert outcome.reason == failed.error_message
    assert failed.total_point == 75
    assert failed.main_balance.available_total_balance == 900
    assert failed.last_updated is not None
    assert len(fake_api.calls(BALANCE_ENDPOINT)) == 3
    assert await app.repository.get_all() == []

@pytest.mark.asyncio
async def test_non_retryable_read_fails_without_retry(app, fake_api, record_factory):
    fake_api.set(DASHBOARD_ENDPOINT, 500)

    outcome = await app.processor.process_outcome(record_factory("1"))

    assert isinstance(outcome, TransientFailure)
    assert len(fake_api.calls(DASHBOARD_ENDPOINT)) == 1

@pytest.mark.asyncio
async def test_unauthorized_read_refreshes_token_once(app, fake_api, record_factory):
    fake_api.queue(DASHBOARD_ENDPOINT, 401)

    outcome = await app.processor.process_outcome(record_factory("1"))

    assert isinstance(outcome, Success)
    assert outcome.record.token == "new_token"
    assert len(fake_api.calls(REFRESH_TOKEN_ENDPOINT)) == 1
    assert len(fake_api.calls(DASHBOARD_ENDPOINT)) == 2
    assert fake_api.calls(BALANCE_ENDPOINT)[-1].headers["Authorization"] == "Bearer new_token"

@pytest.mark.asyncio
async def test_repeated_unauthorized_expires_session(app, fake_api, record_factory):
    fake_api.set(DASHBOARD_ENDPOINT, 401)

    outcome = await app.processor.process_outcome(record_factory("1"))

    assert isinstance(outcome, SessionExpired)
    assert outcome.record.error_label is ErrorLabel.SESSION_EXPIRED
    assert outcome.record.status_label == "Invalid Session"
    assert len(fake_api.calls(REFRESH_TOKEN_ENDPOINT)) == 1

@pytest.mark.asyncio
async def test_expired_session_skips_reads(app, fake_api, record_factory):
    fake_api.set(REFRESH_TOKEN_ENDPOINT, httpx.Response(400, json={"message": "Invalid refresh token"}))
    record = record_factory("1", access_token_expire_at=int(time()))

    outcome = await app.processor.process_outcome(record)

    assert isinstance(outcome, SessionExpired)
    assert outcome.record.has_error
    assert fake_api.calls(DASHBOARD_ENDPOINT) == []
    assert fake_api.calls(BALANCE_ENDPOINT) == []

@pytest.mark.asyncio
async def test_refresh_failure_is_transient(app, fake_api, record_factory):
    fake_api.set(REFRESH_TOKEN_ENDPOINT, 502)
    record = record_factory("1", access_token_expire_at=int(time()))

    outcome = await app.processor.process_outcome(record)

    assert isinstance(outcome, TransientFailure)
    assert outcome.record.error_label is ErrorLabel.REFRESH_FAILED

@pytest.mark.asyncio
async def test_cancelled_before_start_returns_none(app, fake_api, record_factory):
    token = CancellationToken()
    token.cancel()

    outcome = await app.processor.process_outcome(record_factory("1"), cancel_token=token)

    assert isinstance(outcome, Cancelled)
    assert outcome.record is None
    assert fake_api.requests == []

@pytest.mark.asyncio
async def test_cancelled_mid_flight_returns_none(app, fake_api, record_factory):
    started = asyncio.Event()

    async def slow_balance(request):
        started.set()
        await asyncio.sleep(10)
        return {}

    fake_api.set(BALANCE_ENDPOINT, slow_balance)
    token = CancellationToken()

    task = asyncio.create_task(app.processor.process(record_factory("1"), cancel_token=token))
    await started.wait()
    token.cancel()

    assert await task is None
    assert await app.repository.get_all() == []

@pytest.mark.asyncio
async def test_sold_processor_reads_loyalty_data_without_refresh(app, fake_api, fake_mirror, record_factory):
    fake_api.set(
        BALANCE_ENDPOINT,
        {
            "data": {
                "attribute": {
                    "mainBalance": {"availableTotalBalance": 42, "currency": "Ks"},
                    "packsPieData": {"data": {"packsList": [{"title": "Data", "remainingAmount": 2, "totalAmount": 5}]}},
                }
            }
        },
    )
    account = record_factory("1", access_token_expire_at=int(time()) + 10)
    sold = SoldAccountRecord.from_account(account, 1000)

    updated = await app.sold_processor.process(sold)

    assert isinstance(updated, SoldAccountRecord)
    assert updated.loyalty_data[0].title == "Data"
    assert updated.main_balance.available_total_balance == 42
    assert updated.sale_details.sale_price == 1000
    assert fake_api.calls(REFRESH_TOKEN_ENDPOINT) == []
    assert fake_api.calls(CLAIM_LIST_ENDPOINT) == []
    assert (await app.sold_repository.get_all())[0].loyalty_data[0].title == "Data"
    assert fake_mirror.records("users/owner/sold")["1"]["inventory_status"] == "sold"
