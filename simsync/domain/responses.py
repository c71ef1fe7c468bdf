"""
Parsed response types for the SIM operator API.

Every endpoint wraps its payload as ``{"data": {"attribute": ...}}``. The
models here decode that attribute once, at the client boundary, with the
defaults the rest of the package relies on when a field is missing.
"""

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from simsync.domain.accounts import ClaimablePoints, LoyaltyEntry, MainBalance


def extract_attribute(payload: Any) -> Any:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    return data.get("attribute")


def extract_message(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for candidate in (payload, payload.get("data"), payload.get("error")):
        if isinstance(candidate, dict) and candidate.get("message"):
            return str(candidate["message"])
    if isinstance(payload.get("error"), str):
        return payload["error"]
    return None


class _Attribute(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TokenAttributes(_Attribute):
    token: str
    access_token_expire_at: int
    refresh_token: Optional[str] = None
    refresh_token_expire_at: Optional[int] = None


class DashboardAttributes(_Attribute):
    start_status_label: str = Field("", alias="startStatusLabel")

    @field_validator("start_status_label", mode="before")
    @classmethod
    def _empty_label(cls, value):
        return "" if value is None else value


class PointDashboardAttributes(_Attribute):
    total_point: int = Field(0, alias="totalPoint")

    @field_validator("total_point", mode="before")
    @classmethod
    def _zero_points(cls, value):
        return 0 if value is None else value


class _PacksList(_Attribute):
    packs_list: Optional[list[LoyaltyEntry]] = Field(None, alias="packsList")


class _PacksPieData(_Attribute):
    data: Optional[_PacksList] = None


class BalanceAttributes(_Attribute):
    main_balance: MainBalance = Field(default_factory=MainBalance, alias="mainBalance")
    packs_pie_data: Optional[_PacksPieData] = Field(None, alias="packsPieData")

    @field_validator("main_balance", mode="before")
    @classmethod
    def _default_balance(cls, value):
        return {} if value is None else value

    @property
    def loyalty_entries(self) -> Optional[list[LoyaltyEntry]]:
        if self.packs_pie_data is None or self.packs_pie_data.data is None:
            return None
        return self.packs_pie_data.data.packs_list


def parse_claim_list(attribute: Any) -> list[ClaimablePoints]:
    if not isinstance(attribute, list):
        return []
    return [ClaimablePoints.model_validate(item) for item in attribute if isinstance(item, dict)]


@dataclass(frozen=True)
class TransferResult:
    success: bool
    message: str = ""
    otp_required: bool = False
    request_id: Optional[str] = None
