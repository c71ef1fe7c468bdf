import json

from sqlalchemy import delete, select
from sqlalchemy.exc import NoResultFound, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from simsync.domain.accounts import AccountRecord
from simsync.errors import StoreError
from simsync.models.account import AccountModel
from simsync.utils.account_utils import sanitize_record


class SqlAlchemyAccountRepository:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    def _to_model(self, account: AccountRecord) -> AccountModel:
        return AccountModel(
            user_id=account.user_id,
            msisdn=account.msisdn,
            total_point=account.total_point or 0,
            data=json.dumps(sanitize_record(account)),
        )

    def _to_domain(self, model: AccountModel) -> AccountRecord:
        return AccountRecord.model_validate(json.loads(model.data))

    def _ordered(self):
        return select(AccountModel).order_by(AccountModel.total_point.desc(), AccountModel.user_id)

    async def get_all(self) -> list[AccountRecord]:
        try:
            async with self._session_factory() as session:
                results = (await session.execute(self._ordered())).scalars().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read accounts: {e}") from e
        return list(map(self._to_domain, results))

    async def get_page(self, page: int, page_size: int) -> list[AccountRecord]:
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")
        query = self._ordered().offset((page - 1) * page_size).limit(page_size)
        try:
            async with self._session_factory() as session:
                results = (await session.execute(query)).scalars().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read accounts page {page}: {e}") from e
        return list(map(self._to_domain, results))

    async def get(self, user_id: str) -> AccountRecord:
        async with self._session_factory() as session:
            result = await session.get(AccountModel, str(user_id))
        if result is None:
            raise NoResultFound(f"Account with user_id '{user_id}' not found.")
        return self._to_domain(result)

    async def save(self, account: AccountRecord) -> None:
        # Insert or replace the row keyed by user_id
        try:
            async with self._session_factory() as session:
                await session.merge(self._to_model(account))
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to save account {account.user_id}: {e}") from e

    async def delete(self, user_id: str) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(delete(AccountModel).where(AccountModel.user_id == str(user_id)))
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete account {user_id}: {e}") from e

    async def delete_all(self) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(delete(AccountModel))
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to clear accounts: {e}") from e
