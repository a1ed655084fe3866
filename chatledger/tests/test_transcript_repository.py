"""Tests for the transcript persistence module.

Tests cover: database init, chat CRUD, message ordering, the streaming flush
patch, aborts, search, attachments and user isolation.
Uses a temporary DuckDB database for isolated tests.
"""

import os
from datetime import datetime, timezone

import pytest

from chatledger.domain.chats.models import Attachment, Chat
from chatledger.domain.messages.ledger import AppendVersion, UpdateVersionAt
from chatledger.domain.messages.models import Message, MessageRole, Version, VersionStatus
from chatledger.modules.chat_history import DEFAULT_DB_URL, TranscriptDatabase, resolve_db_url
from chatledger.modules.config import AppSettings


def _chat(repo, owner="user@test.com", title="Chat"):
    return repo.insert_chat(Chat(owner=owner, title=title))


def _assistant(chat_id, *contents):
    return Message(
        chat_id=chat_id,
        role=MessageRole.ASSISTANT,
        content=contents[-1] if contents else "",
        versions=[Version(content=c) for c in contents],
        current_version_index=len(contents) - 1 if contents else None,
        is_streaming=True,
    )


class TestDatabaseInit:
    def test_create_schema_creates_file(self, db_path):
        db = TranscriptDatabase(f"duckdb:///{db_path}")
        db.create_schema()
        assert os.path.exists(db_path)
        assert db.is_postgres is False
        db.dispose()

    def test_create_schema_idempotent(self, db_path):
        first = TranscriptDatabase(f"duckdb:///{db_path}")
        first.create_schema()
        first.repository().insert_chat(Chat(owner="user@test.com", title="kept"))
        first.dispose()

        second = TranscriptDatabase(f"duckdb:///{db_path}")
        second.create_schema()
        assert [c.title for c in second.repository().list_chats("user@test.com")] == ["kept"]
        second.dispose()

    def test_from_settings_uses_configured_url(self, db_path):
        settings = AppSettings(chat_history_db_url=f"duckdb:///{db_path}")
        db = TranscriptDatabase.from_settings(settings)
        assert db.url == f"duckdb:///{db_path}"
        db.dispose()

    def test_default_url_names_transcript_file(self):
        assert DEFAULT_DB_URL.endswith("transcripts.duckdb")
        assert AppSettings.model_fields["chat_history_db_url"].default == DEFAULT_DB_URL

    def test_relative_duckdb_path_is_anchored(self, tmp_path):
        resolved = resolve_db_url("duckdb:///nested/store.duckdb", base_dir=tmp_path)
        assert resolved == f"duckdb:///{tmp_path / 'nested' / 'store.duckdb'}"
        assert (tmp_path / "nested").is_dir()

    def test_memory_and_postgres_urls_pass_through(self):
        assert resolve_db_url("duckdb:///:memory:") == "duckdb:///:memory:"
        url = "postgresql://u:p@db/transcripts"
        assert resolve_db_url(url) == url


class TestChats:
    def test_insert_and_get(self, repo):
        chat = _chat(repo, title="Hello")
        stored = repo.get_chat(chat.id)
        assert stored.title == "Hello"
        assert stored.owner == "user@test.com"
        assert stored.created_at.tzinfo is not None

    def test_get_missing(self, repo):
        assert repo.get_chat("missing") is None

    def test_list_only_own_chats(self, repo):
        _chat(repo, owner="a@test.com", title="A")
        _chat(repo, owner="b@test.com", title="B")
        assert [c.title for c in repo.list_chats("a@test.com")] == ["A"]

    def test_update_title(self, repo):
        chat = _chat(repo)
        assert repo.update_chat_title(chat.id, "Renamed")
        assert repo.get_chat(chat.id).title == "Renamed"
        assert not repo.update_chat_title("missing", "x")

    def test_delete_cascades_messages(self, repo):
        chat = _chat(repo)
        repo.insert_message(Message(chat_id=chat.id, content="q"))
        repo.insert_message(_assistant(chat.id, "a"))
        assert repo.delete_chat(chat.id) == 2
        assert repo.get_chat(chat.id) is None
        assert repo.list_messages(chat.id) == []


class TestMessages:
    def test_sequence_numbers_break_ties(self, repo):
        chat = _chat(repo)
        same_instant = datetime(2026, 1, 1, tzinfo=timezone.utc)
        first = repo.insert_message(Message(chat_id=chat.id, content="first", created_at=same_instant))
        second = repo.insert_message(Message(chat_id=chat.id, content="second", created_at=same_instant))
        assert (first.sequence_number, second.sequence_number) == (0, 1)
        assert [m.content for m in repo.list_messages(chat.id)] == ["first", "second"]
        assert [m.content for m in repo.list_messages(chat.id, descending=True)] == ["second", "first"]

    def test_versions_round_trip(self, repo):
        chat = _chat(repo)
        message = repo.insert_message(_assistant(chat.id, "v1", "v2"))
        stored = repo.get_message(message.id)
        assert [v.content for v in stored.versions] == ["v1", "v2"]
        assert stored.current_version_index == 1
        assert stored.is_streaming is True

    def test_user_message_has_no_versions(self, repo):
        chat = _chat(repo)
        message = repo.insert_message(Message(chat_id=chat.id, content="q", attachments=["att-1"]))
        stored = repo.get_message(message.id)
        assert stored.versions == []
        assert stored.current_version_index is None
        assert stored.attachments == ["att-1"]

    def test_mutate_message(self, repo):
        chat = _chat(repo)
        message = repo.insert_message(Message(chat_id=chat.id, content="old"))

        def _edit(m):
            m.content = "new"

        updated = repo.mutate_message(message.id, _edit)
        assert updated.content == "new"
        assert repo.get_message(message.id).content == "new"
        assert repo.mutate_message("missing", _edit) is None

    def test_mutate_error_leaves_message(self, repo):
        chat = _chat(repo)
        message = repo.insert_message(Message(chat_id=chat.id, content="old"))

        def _explode(m):
            m.content = "half-written"
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            repo.mutate_message(message.id, _explode)
        assert repo.get_message(message.id).content == "old"

    def test_delete_messages(self, repo):
        chat = _chat(repo)
        a = repo.insert_message(Message(chat_id=chat.id, content="a"))
        b = repo.insert_message(Message(chat_id=chat.id, content="b"))
        assert repo.delete_messages([a.id, b.id]) == 2
        assert repo.delete_messages([]) == 0
        assert repo.count_messages(chat.id) == 0


class TestStreamingWrites:
    def test_append_chunk_update(self, repo):
        chat = _chat(repo)
        message = repo.insert_message(_assistant(chat.id, ""))
        assert repo.append_chunk(message.id, UpdateVersionAt(0), "Hel") == 0
        assert repo.append_chunk(message.id, UpdateVersionAt(0), "lo") == 0
        stored = repo.get_message(message.id)
        assert stored.content == "Hello"
        assert stored.versions[0].content == "Hello"

    def test_append_chunk_new_version(self, repo):
        chat = _chat(repo)
        message = repo.insert_message(_assistant(chat.id, "v1"))
        assert repo.append_chunk(message.id, AppendVersion(), "v2") == 1
        stored = repo.get_message(message.id)
        assert len(stored.versions) == 2
        assert stored.current_version_index == 1

    def test_append_chunk_rejected_target(self, repo):
        chat = _chat(repo)
        message = repo.insert_message(_assistant(chat.id, "v1"))
        assert repo.append_chunk(message.id, UpdateVersionAt(3), "x") is None
        assert repo.get_message(message.id).versions[0].content == "v1"

    def test_append_chunk_missing_message(self, repo):
        assert repo.append_chunk("missing", UpdateVersionAt(0), "x") is None

    def test_finalize_seals_version(self, repo):
        chat = _chat(repo)
        message = repo.insert_message(_assistant(chat.id, "done"))
        assert repo.finalize_generation(message.id, 0, VersionStatus.COMPLETE)
        stored = repo.get_message(message.id)
        assert stored.is_streaming is False
        assert stored.versions[0].status is VersionStatus.COMPLETE

    def test_finalize_without_version(self, repo):
        chat = _chat(repo)
        message = repo.insert_message(_assistant(chat.id))
        assert repo.finalize_generation(message.id, None, VersionStatus.ABORTED)
        stored = repo.get_message(message.id)
        assert stored.is_streaming is False
        assert stored.is_aborted is True

    def test_abort_flag(self, repo):
        chat = _chat(repo)
        message = repo.insert_message(_assistant(chat.id, ""))
        assert repo.is_message_aborted(message.id) is False
        assert repo.set_aborted(message.id)
        assert repo.is_message_aborted(message.id) is True
        assert repo.set_aborted("missing") is False
        assert repo.is_message_aborted("missing") is False


class TestSearch:
    def test_search_is_case_insensitive_and_scoped(self, repo):
        mine = _chat(repo, owner="a@test.com")
        theirs = _chat(repo, owner="b@test.com")
        repo.insert_message(Message(chat_id=mine.id, content="Tell me about Python"))
        repo.insert_message(Message(chat_id=theirs.id, content="python secrets"))

        hits = repo.search_messages("a@test.com", "PYTHON")
        assert len(hits) == 1
        message, chat = hits[0]
        assert chat.id == mine.id
        assert "Python" in message.content

    def test_search_filters_role(self, repo):
        chat = _chat(repo)
        repo.insert_message(Message(chat_id=chat.id, content="apples"))
        repo.insert_message(_assistant(chat.id, "apples too"))
        hits = repo.search_messages("user@test.com", "apples", role=MessageRole.ASSISTANT)
        assert [m.role for m, _ in hits] == [MessageRole.ASSISTANT]


class TestAttachments:
    def test_save_and_get_in_request_order(self, repo):
        a = repo.save_attachment(Attachment("s3://a", "a.txt", "text/plain", 3, "user@test.com"))
        b = repo.save_attachment(Attachment("s3://b", "b.pdf", "application/pdf", 9, "user@test.com"))
        found = repo.get_attachments([b.id, a.id, "missing"])
        assert [x.file_name for x in found] == ["b.pdf", "a.txt"]
        assert repo.get_attachments([]) == []
