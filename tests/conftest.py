"""
Pytest fixtures for relgraph tests. Each test gets a fresh temporary SQLite DB.
"""

from __future__ import annotations

import httpx
import pytest

from backend_relgraph.config.settings import Settings, reset_settings_cache
from backend_relgraph.database import RelationStore, get_database
from backend_relgraph.ethereum.rpc import EthereumRpc
from backend_relgraph.relations.service import RelationsService

DAY = 86400
T0 = 1_700_000_000  # 2023-11-14T22:13:20Z


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Unset DATABASE_URL / RPC URLs so nothing points at a real backend."""
    for name in ("DATABASE_URL", "ETH_RPC_URL", "INFURA_RPC_URL"):
        monkeypatch.delenv(name, raising=False)
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'relgraph.db'}",
        eth_rpc_url="http://node.test",
        rpc_max_retries=2,
        rpc_backoff_base_sec=0.0,
        rpc_max_backoff_sec=0.0,
        indexer_block_batch=10,
        pipeline_in_api=False,
        token_prices={"0x" + "aa" * 20: {"decimals": 6, "usd": 1.0}},
    )


@pytest.fixture
def db(settings):
    database = get_database(settings.database_url)
    yield database
    database.dispose()


@pytest.fixture
def store(db) -> RelationStore:
    return RelationStore(db)


@pytest.fixture
def service(store) -> RelationsService:
    return RelationsService(store)


def make_rpc(handler, **kwargs) -> EthereumRpc:
    """EthereumRpc over an httpx.MockTransport; handler(request) -> httpx.Response."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    opts = {"max_retries": 2, "max_rate_limit_retries": 3, "backoff_base_sec": 0.0, "max_backoff_sec": 0.0}
    opts.update(kwargs)
    return EthereumRpc("http://node.test", client=client, **opts)


@pytest.fixture
def rpc_factory():
    return make_rpc


@pytest.fixture
def client(settings, db):
    """FastAPI TestClient over the temporary DB; pipeline jobs are not started."""
    from fastapi.testclient import TestClient

    from backend_relgraph.agent_worker.jobs import create_pipeline
    from backend_relgraph.api_server.server import create_app

    pipeline = create_pipeline(settings.model_copy(update={"eth_rpc_url": ""}), db=db)
    app = create_app(pipeline, start_pipeline=False)
    with TestClient(app) as c:
        yield c
