import logging

log = logging.getLogger("sync")


class ReconciliationSync:
    """
    One-way catch-up from the remote mirror into the local store.

    Mirror records whose user_id is missing locally are copied in, one at a
    time. Records already present locally are never overwritten or deleted.
    """

    def __init__(self, repository, mirror):
        self._repository = repository
        self._mirror = mirror

    async def sync(self) -> int:
        local = await self._repository.get_all()
        remote = await self._mirror.get_all()

        known = {record.user_id for record in local}
        copied = 0
        for record in remote:
            if record.user_id in known:
                continue
            await self._repository.save(record)
            known.add(record.user_id)
            copied += 1

        if copied:
            log.info(f"Copied {copied} account(s) from mirror into local store")
        else:
            log.debug("Local store already holds every mirrored account")
        return copied
