"""
Tests for the HTTP trigger using FastAPI's TestClient with container overrides.
"""
import pytest
from dependency_injector import providers
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, Mock

from rebalance_engine import __version__
from rebalance_engine.api import create_app
from rebalance_engine.config.models import AppConfig
from rebalance_engine.container import build_container
from rebalance_engine.engine import EngineResult
from rebalance_engine.exceptions import ErrorType

TRIGGER = {
    "rebalanceRequestId": "rb-1",
    "userId": "user-1",
    "tickers": ["AAPL"],
    "apiSettings": {"ai_api_key": "k"},
}


@pytest.fixture
def container():
    container = build_container(AppConfig())
    yield container
    container.reset_override()


@pytest.fixture
def engine(container):
    engine = Mock()
    engine.run = AsyncMock(return_value=EngineResult(success=True, plan={"ordersCreated": 1},
                                                     retry_info={"attempt": 1, "maxAttempts": 1,
                                                                 "willRetry": False}))
    engine.fail_request = AsyncMock()
    container.engine.override(providers.Object(engine))
    return engine


@pytest.fixture
def task_queue(container):
    queue = Mock()
    queue.enqueue = AsyncMock(return_value=True)
    container.task_queue.override(providers.Object(queue))
    return queue


@pytest.fixture
def client(container, engine, task_queue):
    return TestClient(create_app(container))


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "version": __version__, "storeBackend": "memory"}


def test_missing_user_id_is_bad_request(client, engine):
    body = {key: value for key, value in TRIGGER.items() if key != "userId"}

    response = client.post("/rebalance", json=body)

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "userId" in response.json()["error"]
    engine.run.assert_not_awaited()


def test_sync_run_returns_plan(client, engine):
    response = client.post("/rebalance", json=TRIGGER)

    assert response.status_code == 200
    assert response.json()["plan"] == {"ordersCreated": 1}
    task = engine.run.await_args.args[0]
    assert task.rebalance_request_id == "rb-1"
    assert task.tickers == ["AAPL"]
    assert engine.run.await_args.kwargs["max_attempts"] == 1


def test_sync_run_failure_is_server_error(client, engine):
    engine.run.return_value = EngineResult(success=False, error="Portfolio Manager error (api_key): bad key",
                                           error_type=ErrorType.API_KEY)

    response = client.post("/rebalance", json=TRIGGER)

    assert response.status_code == 500
    assert response.json()["errorType"] == "api_key"


def test_stopped_run_is_not_an_error(client, engine):
    engine.run.return_value = EngineResult(success=False, error="Rebalance request was cancelled", stopped=True)

    response = client.post("/rebalance", json=TRIGGER)

    assert response.status_code == 200
    assert response.json()["stopped"] is True


def test_enqueue_accepts_task(client, engine, task_queue):
    response = client.post("/rebalance", json={**TRIGGER, "enqueue": True})

    assert response.status_code == 202
    assert response.json()["queued"] is True
    assert response.json()["retryInfo"]["maxAttempts"] == 3
    task_queue.enqueue.assert_awaited_once()
    engine.run.assert_not_awaited()


def test_enqueue_duplicate_is_conflict(client, task_queue):
    task_queue.enqueue.return_value = False

    response = client.post("/rebalance", json={**TRIGGER, "enqueue": True})

    assert response.status_code == 409
    assert "already queued" in response.json()["error"]


def test_non_json_body_is_bad_request(client):
    response = client.post("/rebalance", content=b"not json", headers={"content-type": "application/json"})

    assert response.status_code == 400
