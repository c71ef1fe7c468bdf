import logging
from typing import Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from simsync.domain.accounts import AccountRecord
from simsync.errors import StoreError
from simsync.utils.account_utils import normalize_to_record_list, sanitize_record

log = logging.getLogger("mirror")


class FirebaseMirrorRepository:
    """
    Remote copy of account records kept in a Firebase Realtime Database tree.

    Records live at ``<base_url>/<namespace>/<user_id>.json`` and are read and
    written through the database's REST interface.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        namespace: str,
        auth: Optional[str] = None,
        record_type=AccountRecord,
    ) -> None:
        self._http = http_client
        self.base_url = base_url.rstrip("/")
        self.namespace = namespace.strip("/")
        self._auth = auth
        self._record_type = record_type

    def _url(self, key: Optional[str] = None) -> str:
        path = self.namespace if key is None else f"{self.namespace}/{key}"
        return f"{self.base_url}/{path}.json"

    def _params(self) -> dict:
        return {"auth": self._auth} if self._auth else {}

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.request(method, url, params=self._params(), **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StoreError(f"Mirror {method} {self.namespace} failed: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise StoreError(f"Mirror {method} {self.namespace} failed: {e}") from e
        return response

    async def save(self, record: AccountRecord) -> None:
        await self._send("PUT", self._url(record.user_id), json=sanitize_record(record))

    async def get_all(self) -> list[AccountRecord]:
        response = await self._send("GET", self._url())
        try:
            raw = response.json() if response.content else None
        except ValueError as e:
            raise StoreError(f"Mirror {self.namespace} returned invalid JSON") from e

        records = []
        for item in normalize_to_record_list(raw):
            try:
                records.append(self._record_type.model_validate(item))
            except PydanticValidationError:
                log.warning(f"Skipping malformed mirror entry in {self.namespace}: {sorted(item)}")
        return records

    async def delete(self, user_id: str) -> None:
        await self._send("DELETE", self._url(user_id))
