import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from simsync.domain.accounts import AccountRecord, ClaimablePoints
from simsync.domain.cancellation import CancellationToken
from simsync.domain.responses import (
    BalanceAttributes,
    DashboardAttributes,
    PointDashboardAttributes,
    TokenAttributes,
    TransferResult,
    extract_attribute,
    extract_message,
    parse_claim_list,
)
from simsync.errors import ApiError, AuthException

log = logging.getLogger("api_client")

REFRESH_TOKEN_ENDPOINT = "/v3/my/oauth/refresh-token"
DASHBOARD_ENDPOINT = "/v1/my/dashboard"
POINT_DASHBOARD_ENDPOINT = "/v1/my/point-system/dashboard"
BALANCE_ENDPOINT = "/v1/my/lightweight-balance"
CLAIM_LIST_ENDPOINT = "/v1/my/point-system/claim-list"
CLAIM_ENDPOINT = "/v1/my/point-system/claim"
TRANSFER_ENDPOINT = "/v1/my/point-system/point-transfer"


def is_invalid_refresh_token(message: Optional[str]) -> bool:
    if not message:
        return False
    message = message.lower()
    return "invalid refresh token" in message or (
        "refresh token" in message and ("expired" in message or "invalid" in message)
    )


def _error_message(response: httpx.Response) -> str:
    try:
        message = extract_message(response.json())
    except ValueError:
        message = None
    return message or response.text or f"HTTP {response.status_code}"


class SimApiClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        version: str = "4.11",
        user_agent: str = "MyTM/4.11.1/Android/35",
        device_name: str = "simsync",
    ):
        self._http = http_client
        self.base_url = base_url.rstrip("/")
        self.version = version
        self.user_agent = user_agent
        self.device_name = device_name

    def get_common_headers(self, token: Optional[str] = None) -> dict:
        headers = {
            "Content-Type": "application/json; charset=UTF-8",
            "Accept-Encoding": "gzip",
            "X-Server-Select": "production",
            "User-Agent": self.user_agent,
            "Device-Name": self.device_name,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def get_account_params(self, record: AccountRecord) -> dict:
        return {"msisdn": record.msisdn, "userid": record.user_id, "v": self.version}

    async def _request(
        self,
        method: str,
        path: str,
        record: AccountRecord,
        endpoint: str,
        token: Optional[str] = None,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Any:
        request = self._http.request(
            method,
            f"{self.base_url}{path}",
            params=self.get_account_params(record) | (params or {}),
            headers=self.get_common_headers(token),
            json=json,
        )
        try:
            response = await (cancel_token.guard(request) if cancel_token else request)
        except httpx.TimeoutException as e:
            raise ApiError("Request timed out", endpoint=endpoint) from e
        except httpx.RequestError as e:
            raise ApiError(str(e) or e.__class__.__name__, endpoint=endpoint) from e

        if response.status_code == 410:
            raise ApiError("Resource no longer available (410 Gone)", status=410, endpoint=endpoint)
        if response.status_code >= 400:
            raise ApiError(_error_message(response), status=response.status_code, endpoint=endpoint)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            raise ApiError("Invalid JSON in response body", status=response.status_code, endpoint=endpoint)

    async def refresh_token(
        self, record: AccountRecord, cancel_token: Optional[CancellationToken] = None
    ) -> TokenAttributes:
        log.info(f"Requesting new access token for {record.msisdn}")
        try:
            payload = await self._request(
                "POST",
                REFRESH_TOKEN_ENDPOINT,
                record,
                endpoint="refreshToken",
                json={"refresh_token": record.refresh_token},
                cancel_token=cancel_token,
            )
        except ApiError as e:
            if is_invalid_refresh_token(e.message):
                raise AuthException(e.message) from e
            raise

        attribute = extract_attribute(payload)
        if attribute is None:
            message = extract_message(payload)
            if is_invalid_refresh_token(message):
                raise AuthException(message)
            raise ApiError(message or "No access token returned", endpoint="refreshToken")
        try:
            return TokenAttributes.model_validate(attribute)
        except PydanticValidationError as e:
            log.error(f"Token refresh response for {record.msisdn} missing fields: {sorted(attribute)}")
            raise ApiError("Access token refresh response missing required fields", endpoint="refreshToken") from e

    async def _get_attribute(self, path, record, endpoint, cancel_token, params=None) -> Any:
        payload = await self._request(
            "GET",
            path,
            record,
            endpoint=endpoint,
            token=record.token,
            params=params,
            cancel_token=cancel_token,
        )
        return extract_attribute(payload)

    async def get_dashboard(self, record, cancel_token=None) -> DashboardAttributes:
        attribute = await self._get_attribute(
            DASHBOARD_ENDPOINT, record, "dashboard", cancel_token, params={"isFirstTime": 1}
        )
        return self._decode(DashboardAttributes, attribute, "dashboard")

    async def get_point_dashboard(self, record, cancel_token=None) -> PointDashboardAttributes:
        attribute = await self._get_attribute(POINT_DASHBOARD_ENDPOINT, record, "pointDashboard", cancel_token)
        return self._decode(PointDashboardAttributes, attribute, "pointDashboard")

    async def get_balance(self, record, cancel_token=None) -> BalanceAttributes:
        attribute = await self._get_attribute(BALANCE_ENDPOINT, record, "balance", cancel_token)
        return self._decode(BalanceAttributes, attribute, "balance")

    async def get_claim_list(self, record, cancel_token=None) -> list[ClaimablePoints]:
        attribute = await self._get_attribute(CLAIM_LIST_ENDPOINT, record, "claimList", cancel_token)
        try:
            return parse_claim_list(attribute)
        except PydanticValidationError as e:
            raise ApiError("Malformed claim list", endpoint="claimList") from e

    @staticmethod
    def _decode(model, attribute, endpoint):
        try:
            return model.model_validate(attribute if isinstance(attribute, dict) else {})
        except PydanticValidationError as e:
            raise ApiError(f"Malformed {endpoint} response", endpoint=endpoint) from e

    async def claim(self, record: AccountRecord, point_id, cancel_token=None) -> None:
        payload = await self._request(
            "POST",
            CLAIM_ENDPOINT,
            record,
            endpoint="claim",
            token=record.token,
            json={"id": point_id},
            cancel_token=cancel_token,
        )
        status = payload.get("status") if isinstance(payload, dict) else None
        if status not in (None, "success"):
            raise ApiError(extract_message(payload) or f"Claim returned status '{status}'", endpoint="claim")
        log.info(f"Claimed points {point_id} for {record.msisdn}")

    async def transfer_points(self, record: AccountRecord, transferee_id: str, amount: int, cancel_token=None) -> TransferResult:
        payload = await self._request(
            "POST",
            TRANSFER_ENDPOINT,
            record,
            endpoint="pointTransfer",
            token=record.token,
            json={"transfereeId": transferee_id, "amount": amount},
            cancel_token=cancel_token,
        )
        attribute = extract_attribute(payload)
        attribute = attribute if isinstance(attribute, dict) else {}
        response = attribute.get("response") if isinstance(attribute.get("response"), dict) else {}
        message = response.get("message") or extract_message(payload) or ""
        otp_required = "otp" in message.lower()
        request_id = attribute.get("requestId")
        status = payload.get("status") if isinstance(payload, dict) else None
        return TransferResult(
            success=status == "success" or otp_required,
            message=message,
            otp_required=otp_required,
            request_id=str(request_id) if request_id is not None else None,
        )
