"""Диалоговый построитель запроса: протокол ask/final, лимиты, контекст."""

import asyncio

import pytest

from config import DIALOG_FINAL_MARKER, DIALOG_SYSTEM_PROMPT, DIALOG_TURN_LIMIT_NUDGE
from conftest import ASK_REPLY, CRANE_FINAL_REPLY, ScriptedChat
from errors import InputError, ProtocolError, ProviderConnectionError, SchemaError
from models import AskStep, ChatMessage, FinalStep
from query_builder import InteractiveQueryBuilder, extract_json_object, parse_step_json


def non_system(messages):
    return [m for m in messages if m.role != "system"]


class TestExtractJson:
    def test_plain_object(self):
        assert extract_json_object('{"a":1}') == '{"a":1}'

    def test_surrounding_text(self):
        raw = 'Вот ответ: {"action":"ask","question":"Какой бренд?"} спасибо'
        assert extract_json_object(raw) == '{"action":"ask","question":"Какой бренд?"}'

    def test_nested_and_braces_in_strings(self):
        raw = 'x {"q":{"text":"скобка } внутри"},"n":{"m":{}}} y {"other":1}'
        assert extract_json_object(raw) == '{"q":{"text":"скобка } внутри"},"n":{"m":{}}}'

    def test_no_object(self):
        assert extract_json_object("Конечно, вот кран") is None
        assert extract_json_object('{"a": 1') is None


class TestParseStep:
    def test_ask(self):
        assert parse_step_json(ASK_REPLY) == ("ask", "Какая грузоподъемность нужна?")

    def test_final(self):
        action, query = parse_step_json('```json\n{"action":"final","query":{"category":"Кран"}}\n```')
        assert action == "final"
        assert query == {"category": "Кран"}

    @pytest.mark.parametrize("raw", [
        "Конечно, вот кран",
        '{"action":"ask"}',
        '{"action":"ask","question":"   "}',
        '{"action":"final"}',
        '{"action":"final","query":"кран"}',
        '{"action":"search","query":{}}',
        "{'action': 'ask'}",
    ])
    def test_protocol_violations(self, raw):
        with pytest.raises(ProtocolError):
            parse_step_json(raw)


class TestNext:
    def test_ask_then_final(self):
        chat = ScriptedChat(ASK_REPLY, CRANE_FINAL_REPLY)
        builder = InteractiveQueryBuilder(chat)

        step = asyncio.run(builder.next("Нужен кран"))
        assert isinstance(step, AskStep)
        assert step.question == "Какая грузоподъемность нужна?"

        step = asyncio.run(builder.next("более 50 тонн"))
        assert isinstance(step, FinalStep)
        assert step.query.category == "Кран"

        history = builder.get_history()
        assert [m.role for m in history] == ["user", "assistant", "user", "assistant"]
        assert history[1].content == "Какая грузоподъемность нужна?"
        assert history[3].content == DIALOG_FINAL_MARKER

    def test_end_to_end_crane_scenario(self):
        chat = ScriptedChat(CRANE_FINAL_REPLY)
        builder = InteractiveQueryBuilder(chat)
        step = asyncio.run(builder.next("Нужен кран грузоподъемностью более 50 тонн"))

        assert isinstance(step, FinalStep)
        assert step.query.category == "Кран"
        assert step.query.parameters == {"грузоподъемность_min": 50}
        assert step.query.limit is None
        assert step.issues == []

        sent = chat.calls[0]
        assert sent[0].role == "system"
        assert sent[0].content == DIALOG_SYSTEM_PROMPT
        assert sent[-1].content == "Нужен кран грузоподъемностью более 50 тонн"

    def test_empty_input_rejected(self):
        chat = ScriptedChat()
        builder = InteractiveQueryBuilder(chat)
        with pytest.raises(InputError):
            asyncio.run(builder.next("   "))
        assert builder.get_history() == []
        assert chat.calls == []

    def test_protocol_violation_keeps_user_turn(self):
        chat = ScriptedChat("Конечно, вот кран", ASK_REPLY)
        builder = InteractiveQueryBuilder(chat)

        with pytest.raises(ProtocolError):
            asyncio.run(builder.next("Нужен кран"))
        assert [m.content for m in builder.get_history()] == ["Нужен кран"]

        asyncio.run(builder.next("Автокран, 25 тонн"))
        retried_context = non_system(chat.calls[1])
        assert [m.content for m in retried_context] == ["Нужен кран", "Автокран, 25 тонн"]

    def test_provider_failure_propagates_and_keeps_user_turn(self):
        chat = ScriptedChat(ProviderConnectionError("groq", "timeout"))
        builder = InteractiveQueryBuilder(chat)
        with pytest.raises(ProviderConnectionError):
            asyncio.run(builder.next("Нужен кран"))
        assert [m.role for m in builder.get_history()] == ["user"]

    def test_empty_final_query_is_schema_error(self):
        chat = ScriptedChat('{"action":"final","query":{"foo":"bar"}}')
        builder = InteractiveQueryBuilder(chat)
        with pytest.raises(SchemaError):
            asyncio.run(builder.next("что-нибудь"))

    def test_final_issues_reported(self):
        chat = ScriptedChat('{"action":"final","query":{"category":"Кран","limit":500}}')
        builder = InteractiveQueryBuilder(chat)
        step = asyncio.run(builder.next("все краны"))
        assert step.query.limit == 100
        assert step.issues


class TestTurnLimit:
    def test_nudge_after_limit(self):
        chat = ScriptedChat(*([ASK_REPLY] * 4))
        builder = InteractiveQueryBuilder(chat, max_turns=3)

        for text in ("один", "два", "три"):
            asyncio.run(builder.next(text))
        assert all(DIALOG_TURN_LIMIT_NUDGE not in (m.content for m in call) for call in chat.calls)

        asyncio.run(builder.next("четыре"))
        last_call = chat.calls[-1]
        assert last_call[-1].role == "system"
        assert last_call[-1].content == DIALOG_TURN_LIMIT_NUDGE

    def test_turns_reset_after_final(self):
        chat = ScriptedChat(ASK_REPLY, CRANE_FINAL_REPLY, ASK_REPLY)
        builder = InteractiveQueryBuilder(chat, max_turns=2)
        asyncio.run(builder.next("кран"))
        asyncio.run(builder.next("50 тонн"))
        assert builder.turns == 0
        asyncio.run(builder.next("а подешевле?"))
        assert builder.turns == 1
        assert DIALOG_TURN_LIMIT_NUDGE not in (m.content for m in chat.calls[-1])

    def test_nudge_not_carried_into_refinement(self):
        chat = ScriptedChat(ASK_REPLY, CRANE_FINAL_REPLY, ASK_REPLY)
        builder = InteractiveQueryBuilder(chat, max_turns=1)
        asyncio.run(builder.next("кран"))
        step = asyncio.run(builder.next("50 тонн"))
        assert isinstance(step, FinalStep)
        assert DIALOG_TURN_LIMIT_NUDGE in (m.content for m in chat.calls[1])

        asyncio.run(builder.next("а подешевле?"))
        assert builder.turns == 1
        assert DIALOG_TURN_LIMIT_NUDGE not in (m.content for m in chat.calls[2])
        assert DIALOG_TURN_LIMIT_NUDGE not in (m.content for m in builder.get_history())

    def test_restored_history_counts_open_turns(self):
        history = [
            {"role": "user", "content": "кран"},
            {"role": "assistant", "content": DIALOG_FINAL_MARKER},
            {"role": "user", "content": "подешевле"},
            {"role": "assistant", "content": "Какой бюджет?"},
        ]
        builder = InteractiveQueryBuilder(ScriptedChat(), history=history)
        assert builder.turns == 1


class TestContextCap:
    def test_non_system_history_never_exceeds_cap(self):
        chat = ScriptedChat(*([ASK_REPLY] * 10))
        builder = InteractiveQueryBuilder(chat, max_turns=3, max_context_messages=6)

        for i in range(10):
            asyncio.run(builder.next(f"реплика {i}"))
            assert len(non_system(builder.messages)) <= 6
            assert builder.messages[0].content == DIALOG_SYSTEM_PROMPT

        remaining = [m.content for m in non_system(builder.get_history()) if m.role == "user"]
        assert remaining == ["реплика 7", "реплика 8", "реплика 9"]

    def test_cap_holds_on_failure_path(self):
        chat = ScriptedChat(*(["не json"] * 5))
        builder = InteractiveQueryBuilder(chat, max_context_messages=3)
        for i in range(5):
            with pytest.raises(ProtocolError):
                asyncio.run(builder.next(f"реплика {i}"))
            assert len(non_system(builder.messages)) <= 3

    def test_extra_system_messages_are_never_evicted(self):
        chat = ScriptedChat(*([ASK_REPLY] * 6))
        builder = InteractiveQueryBuilder(
            chat, max_context_messages=2, extra_system_messages=["Параметры категории: вес"],
        )
        for i in range(6):
            asyncio.run(builder.next(f"реплика {i}"))
        assert [m.content for m in builder.messages[:2]] == [DIALOG_SYSTEM_PROMPT, "Параметры категории: вес"]
        assert all(m.content != "Параметры категории: вес" for m in builder.get_history())

    def test_restored_history_is_trimmed(self):
        history = [ChatMessage(role="user", content=str(i)) for i in range(30)]
        builder = InteractiveQueryBuilder(ScriptedChat(), history=history, max_context_messages=20)
        assert len(builder.get_history()) == 20
        assert builder.get_history()[0].content == "10"


class TestSearchResults:
    def test_summary_added_and_truncated(self):
        builder = InteractiveQueryBuilder(ScriptedChat())
        builder.add_search_results(42, "x" * 5000)

        note = builder.get_history()[-1]
        assert note.role == "system"
        assert "найдено 42" in note.content
        assert "x" * 999 + "…" in note.content
        assert "x" * 1000 not in note.content

    def test_summary_visible_to_next_turn(self):
        chat = ScriptedChat(CRANE_FINAL_REPLY, ASK_REPLY)
        builder = InteractiveQueryBuilder(chat)
        asyncio.run(builder.next("кран"))
        builder.add_search_results(1, "1. КС-55713 — 12 500 000 ₽")
        asyncio.run(builder.next("а подешевле?"))
        assert any("КС-55713" in m.content for m in chat.calls[-1] if m.role == "system")
