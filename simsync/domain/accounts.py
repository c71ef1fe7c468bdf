import logging
from datetime import datetime, timezone
from enum import Enum
from time import time
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

log = logging.getLogger("account")

TOKEN_EXPIRY_MARGIN_SECONDS = 300


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ErrorLabel(str, Enum):
    SESSION_EXPIRED = "SESSION_EXPIRED"
    REFRESH_FAILED = "REFRESH_FAILED"


class MainBalance(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    available_total_balance: float = Field(0, alias="availableTotalBalance")
    currency: str = "Ks"


class ClaimablePoints(BaseModel):
    """First entry of the operator's claim list; describes whether points can be claimed now."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    enable: bool = False
    id: Union[str, int, None] = None
    label: Optional[str] = ""


class AccountRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    user_id: str
    msisdn: str
    token: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token_expire_at: Optional[int] = None
    refresh_token_expire_at: Optional[int] = None

    main_balance: Optional[MainBalance] = Field(None, alias="mainBalance")
    total_point: int = Field(0, alias="totalPoint")
    points: Optional[ClaimablePoints] = None
    label: Optional[str] = ""
    start_status_label: Optional[str] = Field("", alias="startStatusLabel")

    last_updated: Optional[str] = Field(None, alias="lastUpdated")
    has_error: bool = Field(False, alias="hasError")
    error_message: Optional[str] = Field(None, alias="errorMessage")
    error_label: Optional[ErrorLabel] = Field(None, alias="errorLabel")

    @field_validator("user_id", "msisdn", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("total_point", mode="before")
    @classmethod
    def _default_total_point(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("has_error", mode="before")
    @classmethod
    def _default_has_error(cls, value: Any) -> Any:
        return False if value is None else value

    def is_token_within_expiry_window(self, now=None, margin=TOKEN_EXPIRY_MARGIN_SECONDS) -> bool:
        # True if the access token expires within the margin, has expired, or was never issued.
        if self.access_token_expire_at is None:
            return True
        now = time() if now is None else now
        return self.access_token_expire_at - now <= margin

    @property
    def is_claimable(self) -> bool:
        return bool(self.points and self.points.enable and self.points.id)

    @property
    def status_label(self) -> str:
        if self.error_label is ErrorLabel.SESSION_EXPIRED:
            return "Invalid Session"
        if self.error_label is ErrorLabel.REFRESH_FAILED:
            return "Refresh Failed"
        if self.has_error:
            return "Error"
        return self.label or ""

    def get_auth_header(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}

    def with_error(self, message: str, label: Optional[ErrorLabel] = None) -> "AccountRecord":
        return self.model_copy(
            update={"has_error": True, "error_message": message, "error_label": label}
        )

    def without_error(self) -> "AccountRecord":
        return self.model_copy(
            update={"has_error": False, "error_message": None, "error_label": None}
        )

    def mark_claimed(self) -> "AccountRecord":
        points = self.points.model_copy(update={"enable": False, "label": "Claimed"}) if self.points else None
        return self.model_copy(update={"points": points, "label": "Claimed"})


class LoyaltyEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    title: Optional[str] = None
    expire_at: Optional[str] = Field(None, alias="expireAt")
    remaining_amount: Union[float, str, None] = Field(None, alias="remainingAmount")
    total_amount: Union[float, str, None] = Field(None, alias="totalAmount")


class SaleDetails(BaseModel):
    sale_date: Optional[str] = None
    sale_price: float = 0
    buyer_info: Optional[str] = None


class SoldAccountRecord(AccountRecord):
    inventory_status: Literal["sold"] = "sold"
    sold_at: Optional[str] = None
    sale_details: Optional[SaleDetails] = None
    loyalty_data: Optional[list[LoyaltyEntry]] = Field(None, alias="loyaltyData")

    @classmethod
    def from_account(cls, account: AccountRecord, sale_price: float, buyer_info=None, sale_date=None):
        """Copy an account into the sold inventory shape; the original record is left untouched."""
        sold_at = utc_now_iso()
        data = account.model_dump(by_alias=True)
        data.update(
            inventory_status="sold",
            sold_at=sold_at,
            sale_details={
                "sale_date": sale_date or sold_at,
                "sale_price": sale_price,
                "buyer_info": buyer_info,
            },
        )
        return cls.model_validate(data)
