import json

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from simsync.domain.accounts import SoldAccountRecord
from simsync.errors import StoreError
from simsync.models.sold_account import SoldAccountModel
from simsync.utils.account_utils import sanitize_record


class SqlAlchemySoldAccountRepository:
    """Sold inventory: copies of accounts that were sold, newest sale first."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    def _to_model(self, account: SoldAccountRecord) -> SoldAccountModel:
        return SoldAccountModel(
            user_id=account.user_id,
            msisdn=account.msisdn,
            sold_at=account.sold_at,
            data=json.dumps(sanitize_record(account)),
        )

    def _to_domain(self, model: SoldAccountModel) -> SoldAccountRecord:
        return SoldAccountRecord.model_validate(json.loads(model.data))

    async def get_all(self) -> list[SoldAccountRecord]:
        query = select(SoldAccountModel).order_by(SoldAccountModel.sold_at.desc(), SoldAccountModel.user_id)
        try:
            async with self._session_factory() as session:
                results = (await session.execute(query)).scalars().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read sold inventory: {e}") from e
        return list(map(self._to_domain, results))

    async def save(self, account: SoldAccountRecord) -> None:
        try:
            async with self._session_factory() as session:
                await session.merge(self._to_model(account))
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to save sold account {account.user_id}: {e}") from e

    async def delete(self, user_id: str) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(delete(SoldAccountModel).where(SoldAccountModel.user_id == str(user_id)))
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete sold account {user_id}: {e}") from e
