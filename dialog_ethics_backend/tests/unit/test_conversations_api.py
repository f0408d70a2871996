import csv
from io import StringIO

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from dialog_ethics_backend import conversations_api
from dialog_ethics_backend.llm_api import get_gateway
from dialog_ethics_backend.services.conversation_store import ConversationStore, StoreConfig
from dialog_ethics_backend.services.llm_client import GatewayError, InvalidCredentialError
from dialog_ethics_backend.services.registries import get_category_registry, get_principle_registry


@pytest.fixture
def store():
    return ConversationStore(
        get_category_registry(),
        get_principle_registry(),
        config=StoreConfig(batch_delay_seconds=0),
    )


@pytest.fixture
def client(store):
    app = FastAPI()
    app.include_router(conversations_api.router)
    app.dependency_overrides[conversations_api.get_conversation_store] = lambda: store
    with TestClient(app) as test_client:
        yield test_client


def _connect(client, **extra):
    payload = {"apiKey": "test", "categorySet": "mental-health"}
    payload.update(extra)
    response = client.post("/api/session/connect", json=payload)
    assert response.status_code == 200
    return response.json()


def test_connect_configures_session(client, store):
    body = _connect(client, additionalContext="Wellbeing companion app")

    assert body["connected"] is True
    assert body["demo"] is True
    assert body["categories"]["name"] == "mental-health"
    assert len(body["principles"]) == 4
    assert store.category_registry.name == "mental-health"
    assert store.config.additional_context == "Wellbeing companion app"
    assert store.config.batch_delay_seconds == 0
    assert store.analysis_enabled is True


def test_connect_rejects_bad_key(store, fake_gateway):
    app = FastAPI()
    app.include_router(conversations_api.router)
    app.dependency_overrides[conversations_api.get_conversation_store] = lambda: store
    app.dependency_overrides[get_gateway] = lambda: fake_gateway(models=InvalidCredentialError())

    response = TestClient(app).post("/api/session/connect", json={"apiKey": "sk-bad"})

    assert response.status_code == 401
    assert store.settings is None


def test_messages_require_connection(client):
    response = client.post("/api/session/messages", json={"content": "hello"})

    assert response.status_code == 400


def test_send_message_runs_analyses(client, store):
    _connect(client)

    response = client.post("/api/session/messages?wait=true", json={"content": "I feel overwhelmed lately"})

    assert response.status_code == 200
    body = response.json()
    assert body["error"] is None
    assert body["userMessage"]["type"] == "user"
    assert body["assistantMessage"]["type"] == "assistant"

    messages = client.get("/api/session/messages").json()["messages"]
    assert len(messages) == 2
    assert messages[0]["flaggingAnalysis"] is not None
    assert messages[0]["principleScoring"] is not None
    assert "emotional-distress" in {flag["type"] for flag in messages[0]["flags"]}
    assert store.pending_tasks == 0


def test_send_message_rejects_blank_content(client):
    _connect(client)

    assert client.post("/api/session/messages", json={"content": "   "}).status_code == 400


def test_chat_failure_still_appends_assistant_turn(store, fake_gateway):
    gateway = fake_gateway(GatewayError(503, "upstream down"))
    app = FastAPI()
    app.include_router(conversations_api.router)
    app.dependency_overrides[conversations_api.get_conversation_store] = lambda: store
    app.dependency_overrides[get_gateway] = lambda: gateway

    with TestClient(app) as client:
        client.post("/api/session/connect", json={"apiKey": "sk-live", "scoringEnabled": False})
        body = client.post("/api/session/messages?wait=true", json={"content": "hello"}).json()

    assert body["error"] == "upstream down"
    assert "upstream down" in body["assistantMessage"]["content"]
    assert [m.role.value for m in store.messages] == ["user", "assistant"]


def test_flags_filters_and_options(client):
    _connect(client)
    client.post("/api/session/messages?wait=true", json={"content": "I feel so alone and hopeless"})

    all_flags = client.get("/api/session/flags").json()
    user_flags = client.get("/api/session/flags", params={"message_type": "user"}).json()
    high_flags = client.get("/api/session/flags", params={"severity": "high"}).json()
    options = client.get("/api/session/flags/options").json()

    assert all_flags["count"] >= 2
    assert user_flags["count"] <= all_flags["count"]
    assert high_flags["count"] == 0
    assert {"social-withdrawal-lack-of-support", "hopelessness-reduced-future-orientation"} <= set(
        options["categories"]
    )
    assert all_flags["flags"][0]["messageIndex"] == 0


def test_cutoff_and_visualization(client):
    _connect(client)
    client.post("/api/session/messages?wait=true", json={"content": "first"})
    client.post("/api/session/messages?wait=true", json={"content": "second"})

    response = client.put("/api/session/cutoff", json={"cutoff": 2})
    assert response.json() == {"cutoff": 2, "filteredMessageCount": 2}

    series = client.get("/api/session/visualization").json()["series"]
    transparency = series[0]
    assert [p["messageIndex"] for p in transparency["userScores"]] == [0]
    assert [p["messageIndex"] for p in transparency["aiScores"]] == [1]

    messages = client.get("/api/session/messages").json()["messages"]
    assert [m["included"] for m in messages] == [True, True, False, False]


def test_analyze_single_message(client, store):
    _connect(client)
    client.post("/api/session/messages?wait=true", json={"content": "hello"})
    message_id = store.messages[0].id

    assert client.post(f"/api/session/messages/{message_id}/analyze").status_code == 200
    assert client.post("/api/session/messages/missing/analyze").status_code == 404


def test_summary_and_export(client):
    _connect(client)
    client.post("/api/session/messages?wait=true", json={"content": "I feel overwhelmed lately"})

    summary = client.post("/api/session/summary", json={"format": "bullets"}).json()
    assert summary["summary"].startswith("- The conversation has 2 messages")

    csv_response = client.get("/api/session/export", params={"format": "csv"})
    assert csv_response.status_code == 200
    assert csv_response.headers["content-type"].startswith("text/csv")
    assert 'filename="conversation-analysis.csv"' in csv_response.headers["content-disposition"]
    assert len(list(csv.DictReader(StringIO(csv_response.text)))) == 2

    markdown = client.get("/api/session/export", params={"format": "markdown", "include_summary": "true"})
    assert "## Analysis Summary\n\n- The conversation has 2 messages" in markdown.text

    pdf = client.get("/api/session/export", params={"format": "pdf", "include_summary": "true"})
    assert pdf.status_code == 200
    assert pdf.headers["content-type"] == "application/pdf"
    assert 'filename="conversation-analysis.pdf"' in pdf.headers["content-disposition"]
    assert pdf.content.startswith(b"%PDF")

    assert client.get("/api/session/export", params={"format": "docx"}).status_code == 400


def test_clear_session(client):
    _connect(client)
    client.post("/api/session/messages?wait=true", json={"content": "hello"})

    assert client.delete("/api/session").json() == {"cleared": True}
    assert client.get("/api/session").json()["messageCount"] == 0
