"""HTTP API: /api/chat и служебные эндпоинты с подменённым контейнером."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

import main
from catalog import CatalogService
from conftest import ASK_REPLY, CRANE_FINAL_REPLY, FakeEngine, FakeProvider
from errors import AssistantError, ProtocolError
from llm_factory import EmbeddingCapability, ProviderFactory


@pytest.fixture
def groq():
    return FakeProvider("groq", reply=ASK_REPLY)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def container(groq, engine, index_cache):
    factory = ProviderFactory(
        {"groq": groq},
        embeddings=EmbeddingCapability(preferred="ollama", fallbacks=()),
        default_model="llama-3.3-70b-versatile",
        model_overrides={},
        silent=True,
    )
    return main.AppContainer(
        factory=factory,
        store=MagicMock(),
        index=index_cache,
        catalog=CatalogService(engine, index_cache),
    )


@pytest.fixture
def client(container):
    main._sessions.clear()
    main.app.dependency_overrides[main.get_container] = lambda: container
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
    main._sessions.clear()


def chat(client, message, session_id="s1"):
    resp = client.post("/api/chat", json={"message": message, "session_id": session_id})
    assert resp.status_code == 200
    return resp.json()


def system_texts(call):
    return [m.content for m in call["messages"] if m.role == "system"]


class TestChatEndpoint:
    def test_clarifying_question(self, client):
        data = chat(client, "Нужен кран")
        assert data["action"] == "ask_question"
        assert data["reply"] == "Какая грузоподъемность нужна?"
        assert data["items"] == []

    def test_final_query_runs_search(self, client, groq, engine):
        groq.reply = CRANE_FINAL_REPLY
        data = chat(client, "Нужен кран грузоподъемностью более 50 тонн")

        assert data["action"] == "show_results"
        assert data["query"]["category"] == "Кран"
        assert data["query"]["parameters"] == {"грузоподъемность_min": 50}
        assert data["total"] == 1
        assert data["strategy"] == "fts"
        assert data["items"][0]["name"] == "КС-55713"
        assert "12 500 000 ₽" in data["reply"]
        assert engine.queries[0].limit == 10

    def test_results_are_grounding_for_next_turn(self, client, groq):
        groq.reply = CRANE_FINAL_REPLY
        chat(client, "Нужен кран на 50 тонн")
        groq.reply = ASK_REPLY
        chat(client, "а подешевле?")

        notes = system_texts(groq.chat_calls[-1])
        assert any("найдено 1" in note and "КС-55713" in note for note in notes)
        users = [m.content for m in groq.chat_calls[-1]["messages"] if m.role == "user"]
        assert users == ["Нужен кран на 50 тонн", "а подешевле?"]

    def test_category_grounding_from_seed(self, client, groq):
        chat(client, "мне нужен кран")
        notes = system_texts(groq.chat_calls[0])
        assert any("Вероятная категория запроса: «Кран»" in note for note in notes)
        assert any("Грузоподъемность (12)" in note for note in notes)
        assert any("1. Экскаватор (30 шт.)" in note for note in notes)

    def test_no_results_with_suggestions(self, client, groq, engine):
        engine.items = []
        groq.reply = '{"action":"final","query":{"category":"Холодильник"}}'
        data = chat(client, "холодильник")
        assert data["action"] == "no_results"
        assert data["total"] == 0
        assert data["suggestions"]["popular_categories"][0]["name"] == "Экскаватор"
        assert "ничего не найдено" in data["reply"]

    def test_protocol_violation_is_generic_error(self, client, groq):
        groq.reply = "Конечно, вот кран"
        data = chat(client, "Нужен кран")
        assert data["action"] == "error"
        assert data["reply"] == ProtocolError.user_message
        assert [m.content for m in main._sessions["s1"].history] == ["Нужен кран"]

    def test_chat_provider_down_does_not_leak_details(self, client, groq):
        groq.alive = False
        data = chat(client, "Нужен кран")
        assert data["action"] == "error"
        assert "ping" not in data["reply"]
        assert "groq" not in data["reply"]

    def test_empty_message(self, client, groq):
        data = chat(client, "   ")
        assert data["action"] == "error"
        assert groq.chat_calls == []

    def test_search_failure_is_generic_error(self, client, groq, engine):
        groq.reply = CRANE_FINAL_REPLY
        engine.search = MagicMock(side_effect=RuntimeError("chroma is down"))
        data = chat(client, "кран")
        assert data["action"] == "error"
        assert data["reply"] == AssistantError.user_message

    def test_sessions_are_independent(self, client, groq):
        chat(client, "кран", session_id="a")
        chat(client, "бульдозер", session_id="b")
        users = [m.content for m in groq.chat_calls[-1]["messages"] if m.role == "user"]
        assert users == ["бульдозер"]


class TestServiceEndpoints:
    def test_reset(self, client):
        chat(client, "кран")
        resp = client.post("/api/reset", json={"session_id": "s1"})
        assert resp.json() == {"session_id": "s1", "reset": True}
        assert "s1" not in main._sessions

    def test_categories(self, client):
        resp = client.get("/api/categories", params={"limit": 2})
        assert resp.status_code == 200
        assert [c["name"] for c in resp.json()] == ["Экскаватор", "Кран"]

    def test_similar_categories(self, client):
        resp = client.get("/api/categories/similar", params={"q": "экскватор"})
        assert resp.json() == {"query": "экскватор", "similar": ["Экскаватор"]}

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert data["providers"] == {"groq": True}
        assert data["llm"]["chat_provider"] == "groq"
        assert data["catalog_index"]["ready"] is True
        assert data["catalog_index"]["total_items"] == 49
        assert data["catalog_index"]["stale"] is False

    def test_health_degraded(self, client, groq):
        groq.alive = False
        assert client.get("/health").json()["status"] == "degraded"
