from dataclasses import dataclass
from typing import Optional, Union

from simsync.domain.accounts import AccountRecord


@dataclass(frozen=True)
class Success:
    record: AccountRecord


@dataclass(frozen=True)
class SessionExpired:
    record: AccountRecord


@dataclass(frozen=True)
class TransientFailure:
    record: AccountRecord
    reason: str


@dataclass(frozen=True)
class Cancelled:
    @property
    def record(self) -> Optional[AccountRecord]:
        return None


ProcessingOutcome = Union[Success, SessionExpired, TransientFailure, Cancelled]
