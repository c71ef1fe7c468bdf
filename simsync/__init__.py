import logging

import httpx

from simsync.config import Config


class SimSyncApp:
    """The wired components for one owner's account set."""

    def __init__(self, config, engine, http_client, orchestrator, **components):
        self.config = config
        self.engine = engine
        self.http_client = http_client
        self.orchestrator = orchestrator
        for name, component in components.items():
            setattr(self, name, component)

    async def close(self):
        self.orchestrator.close()
        await self.http_client.aclose()
        await self.engine.dispose()


def _config_from_object(obj) -> dict:
    return {key: getattr(obj, key) for key in dir(obj) if key.isupper()}


async def create_app(test_config=None, transport=None) -> SimSyncApp:
    logging.basicConfig(level=logging.INFO)

    config = _config_from_object(Config)
    if test_config is not None:
        config.update(test_config)

    from .core import AccountOrchestrator
    from .domain.api_client import SimApiClient
    from .domain.processor import AccountProcessor, SoldAccountProcessor
    from .domain.retry import RetryPolicy, is_transient_api_error
    from .domain.sync import ReconciliationSync
    from .domain.accounts import SoldAccountRecord
    from .domain.tokens import TokenLifecycleManager
    from .extensions import create_all, create_engine, create_session_factory
    from .models.account_repository import SqlAlchemyAccountRepository
    from .models.mirror_repository import FirebaseMirrorRepository
    from .models.sold_account_repository import SqlAlchemySoldAccountRepository

    engine = create_engine(config["DATABASE_URI"])
    # Create tables (if migrations are not yet set up)
    await create_all(engine)
    session_factory = create_session_factory(engine)

    http_client = httpx.AsyncClient(timeout=config["REQUEST_TIMEOUT"], transport=transport)

    api_client = SimApiClient(
        http_client,
        config["API_BASE_URL"],
        version=config["API_VERSION"],
        user_agent=config["USER_AGENT"],
        device_name=config["DEVICE_NAME"],
    )
    token_manager = TokenLifecycleManager(
        api_client,
        retry_policy=RetryPolicy(
            max_attempts=config["RETRY_MAX_ATTEMPTS"],
            base_delay=config["RETRY_BASE_DELAY"],
            retryable=is_transient_api_error,
        ),
        expiry_margin=config["TOKEN_EXPIRY_MARGIN"],
    )
    read_policy = RetryPolicy(
        max_attempts=config["RETRY_MAX_ATTEMPTS"], base_delay=config["RETRY_BASE_DELAY"]
    )

    repository = SqlAlchemyAccountRepository(session_factory)
    sold_repository = SqlAlchemySoldAccountRepository(session_factory)

    owner = config["MIRROR_OWNER"]
    mirror = FirebaseMirrorRepository(
        http_client, config["MIRROR_URL"], f"users/{owner}/sims", auth=config["MIRROR_AUTH"]
    )
    admin_mirror = None
    if config["MIRROR_ADMIN_NAMESPACE"]:
        admin_mirror = FirebaseMirrorRepository(
            http_client, config["MIRROR_URL"], config["MIRROR_ADMIN_NAMESPACE"], auth=config["MIRROR_AUTH"]
        )
    sold_mirror = FirebaseMirrorRepository(
        http_client,
        config["MIRROR_URL"],
        f"users/{owner}/sold",
        auth=config["MIRROR_AUTH"],
        record_type=SoldAccountRecord,
    )

    mirrors = [m for m in (mirror, admin_mirror) if m is not None]
    processor = AccountProcessor(api_client, token_manager, repository, mirrors, read_policy)
    sold_processor = SoldAccountProcessor(api_client, token_manager, sold_repository, [sold_mirror], read_policy)
    reconciliation = ReconciliationSync(repository, mirror)

    orchestrator = AccountOrchestrator(
        api_client,
        token_manager,
        processor,
        repository,
        mirror=mirror,
        admin_mirror=admin_mirror,
        reconciliation=reconciliation,
        sold_processor=sold_processor,
        sold_repository=sold_repository,
        sold_mirror=sold_mirror,
        claim_concurrency=config["CLAIM_CONCURRENCY"],
        page_size=config["PAGE_SIZE"],
        account_limit=config["ACCOUNT_LIMIT"],
        claim_policy=read_policy,
    )

    return SimSyncApp(
        config,
        engine,
        http_client,
        orchestrator,
        api_client=api_client,
        token_manager=token_manager,
        processor=processor,
        sold_processor=sold_processor,
        repository=repository,
        sold_repository=sold_repository,
        mirror=mirror,
        admin_mirror=admin_mirror,
        sold_mirror=sold_mirror,
        reconciliation=reconciliation,
    )
