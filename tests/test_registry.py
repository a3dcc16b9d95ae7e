"""Tests for the SessionRegistry and the Session data model.

Run:
    uv run pytest tests/test_registry.py -v
"""

import pytest

from tutor_engine.languages import get_language_config
from tutor_engine.pipeline.registry import SessionRegistry
from tutor_engine.utils import generate_connection_id, next_interaction_id, parse_interaction_id


class TestSessionRegistry:
    def test_create_get_remove(self):
        registry = SessionRegistry()
        session = registry.create("conn_1", language_code="ja")

        assert registry.get("conn_1") is session
        assert "conn_1" in registry
        assert len(registry) == 1
        assert session.voice_id == get_language_config("ja").voice_id

        assert registry.remove("conn_1") is True
        assert registry.get("conn_1") is None
        assert registry.remove("conn_1") is False

    def test_duplicate_id_is_rejected(self):
        registry = SessionRegistry()
        registry.create("conn_1")
        with pytest.raises(KeyError):
            registry.create("conn_1")

    def test_clear_and_iterate(self):
        registry = SessionRegistry()
        registry.create("a")
        registry.create("b")
        assert sorted(s.session_id for s in registry) == ["a", "b"]
        registry.clear()
        assert len(registry) == 0

    def test_clear_conversation_forgets_turn_markers(self):
        session = SessionRegistry().create("conn_1")
        session.add_message("user", "Hola")
        session.interaction_id = "abc#3"
        session.pending_transcript = "x"
        session.is_processing_interrupted = True

        session.clear_conversation()

        assert session.messages == []
        assert session.interaction_id == ""
        assert session.pending_transcript is None
        assert session.is_processing_interrupted is False

    def test_interrupted_flag_only_serialized_when_set(self):
        session = SessionRegistry().create("conn_1")
        plain = session.add_message("user", "Hola")
        cut = session.add_message("assistant", "¿Qué", interrupted=True)
        assert "interrupted" not in plain.to_dict()
        assert cut.to_dict()["interrupted"] is True


class TestInteractionIds:
    def test_empty_id_starts_iteration_one(self):
        base, iteration = parse_interaction_id(next_interaction_id(""))
        assert base
        assert iteration == 1

    def test_iteration_increments_and_keeps_base(self):
        assert next_interaction_id("abc#1") == "abc#2"
        assert next_interaction_id("abc#41") == "abc#42"

    def test_malformed_suffix_counts_as_zero(self):
        assert parse_interaction_id("abc") == ("abc", 0)
        assert parse_interaction_id("abc#x") == ("abc", 0)
        assert next_interaction_id("abc") == "abc#1"

    def test_connection_ids_are_unique(self):
        ids = {generate_connection_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(i.startswith("conn_") for i in ids)
