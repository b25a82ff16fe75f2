"""Tests for per-source ingestion: room resolution, fetching and checkpoints."""

from collections.abc import Callable
from datetime import datetime, timedelta
from unittest.mock import Mock, call

import pytest
import pytz

from src.adapters.sqlite_repository import SQLiteRepository
from src.domain.exceptions import FatalSourceError, LLMAPIError, TelegramAPIError
from src.domain.models import (
    EventCandidate,
    RawMessage,
    ScrapingTarget,
    SourceEntity,
    SourceRunResult,
)
from src.use_cases.ingest_telegram_messages import (
    fetch_new_messages,
    process_scraping_target,
    resolve_room_id,
    validate_topics,
)

NOW = datetime(2030, 5, 1, 12, 0, tzinfo=pytz.UTC)

MessageFactory = Callable[..., RawMessage]
TargetFactory = Callable[..., ScrapingTarget]


@pytest.fixture
def telegram_client() -> Mock:
    client = Mock()
    client.get_source_entity.side_effect = lambda room_id: SourceEntity(
        room_id=room_id, name="Berlin Yoga Chat"
    )
    client.fetch_messages.return_value = []
    return client


@pytest.fixture
def extractor() -> Mock:
    message_extractor = Mock()
    message_extractor.process_messages.return_value = []
    return message_extractor


def _run(
    target: ScrapingTarget,
    telegram_client: Mock,
    repository: SQLiteRepository,
    extractor: Mock,
) -> SourceRunResult:
    return process_scraping_target(
        target,
        telegram_client=telegram_client,
        repository=repository,
        extractor=extractor,
        clock=lambda: NOW,
    )


class TestResolveRoomId:
    def test_plain_room_id_is_kept(
        self, make_target: TargetFactory, repo: SQLiteRepository
    ) -> None:
        client = Mock()
        target = make_target()

        assert resolve_room_id(client, repo, target) is target
        client.find_dialog_id_by_name.assert_not_called()

    def test_dialog_name_is_resolved_and_stored(
        self, make_target: TargetFactory, repo: SQLiteRepository
    ) -> None:
        target = make_target(room_id="resolveName:Berlin Yoga Chat")
        repo.save_scraping_target(target)
        client = Mock()
        client.find_dialog_id_by_name.return_value = "-100777"

        resolved = resolve_room_id(client, repo, target)

        client.find_dialog_id_by_name.assert_called_once_with("Berlin Yoga Chat")
        assert resolved.room_id == "-100777"
        assert repo.get_scraping_target("-100777") is not None
        assert repo.get_scraping_target("resolveName:Berlin Yoga Chat") is None

    def test_unknown_dialog_raises(
        self, make_target: TargetFactory, repo: SQLiteRepository
    ) -> None:
        client = Mock()
        client.find_dialog_id_by_name.return_value = None

        with pytest.raises(TelegramAPIError):
            resolve_room_id(client, repo, make_target(room_id="resolveName:Nowhere"))


class TestValidateTopics:
    def test_forum_without_topics_is_fatal(self, make_target: TargetFactory) -> None:
        entity = SourceEntity(room_id="-100123", name="Forum", is_forum=True)

        with pytest.raises(FatalSourceError, match="no topic ids"):
            validate_topics(make_target(), entity)

    def test_topics_on_plain_chat_are_fatal(self, make_target: TargetFactory) -> None:
        entity = SourceEntity(room_id="-100123", name="Chat")

        with pytest.raises(FatalSourceError, match="non-forum"):
            validate_topics(make_target(topic_ids=[5]), entity)

    def test_matching_configuration_passes(self, make_target: TargetFactory) -> None:
        forum = SourceEntity(room_id="-100123", name="Forum", is_forum=True)

        validate_topics(make_target(topic_ids=[5]), forum)
        validate_topics(make_target(), SourceEntity(room_id="-100123", name="Chat"))


class TestFetchNewMessages:
    def test_reads_after_cursor(
        self, make_target: TargetFactory, make_message: MessageFactory
    ) -> None:
        client = Mock()
        client.fetch_messages.return_value = [make_message(42)]

        messages = fetch_new_messages(client, make_target(last_message_id=41), limit=10)

        assert [m.message_id for m in messages] == [42]
        client.fetch_messages.assert_called_once_with(
            "-100123", min_id=41, limit=10, topic_id=None
        )

    def test_forum_topics_are_read_separately_and_deduplicated(
        self, make_target: TargetFactory, make_message: MessageFactory
    ) -> None:
        client = Mock()
        client.fetch_messages.side_effect = [
            [make_message(1), make_message(2)],
            [make_message(2), make_message(3)],
        ]

        messages = fetch_new_messages(client, make_target(topic_ids=[5, 9]))

        assert [m.message_id for m in messages] == [1, 2, 3]
        assert client.fetch_messages.call_args_list == [
            call("-100123", min_id=None, limit=50, topic_id=5),
            call("-100123", min_id=None, limit=50, topic_id=9),
        ]

    def test_all_topics_marker(self, make_target: TargetFactory) -> None:
        client = Mock()
        client.fetch_messages.return_value = []

        fetch_new_messages(client, make_target(topic_ids=[-1]))

        assert client.fetch_messages.call_args.kwargs["topic_id"] is None


class TestProcessScrapingTarget:
    def test_empty_run_updates_name_only(
        self,
        make_target: TargetFactory,
        repo: SQLiteRepository,
        telegram_client: Mock,
        extractor: Mock,
    ) -> None:
        target = make_target(last_message_id=7, last_error="old failure")
        repo.save_scraping_target(target)

        result = _run(target, telegram_client, repo, extractor)

        assert result.success
        assert result.messages_consumed == 0
        stored = repo.get_scraping_target("-100123")
        assert stored is not None
        assert stored.name == "Berlin Yoga Chat"
        assert stored.last_message_id == 7
        assert stored.last_error is None
        assert stored.last_run_finished_at == NOW
        extractor.process_messages.assert_not_called()
        telegram_client.forget_room.assert_called_once_with("-100123")

    def test_candidates_are_stored_and_checkpoint_advances(
        self,
        make_target: TargetFactory,
        make_message: MessageFactory,
        make_candidate: Callable[..., EventCandidate],
        repo: SQLiteRepository,
        telegram_client: Mock,
        extractor: Mock,
    ) -> None:
        target = make_target(last_message_id=9, messages_consumed=5, scraped_events=1)
        repo.save_scraping_target(target)
        messages = [make_message(10), make_message(12, seconds=30), make_message(11, seconds=10)]
        telegram_client.fetch_messages.return_value = messages
        extractor.process_messages.return_value = [
            make_candidate(description="Yoga"),
            make_candidate(description="Yoga with live music"),
            make_candidate(name="Ecstatic Dance", start_at=NOW + timedelta(days=3)),
        ]

        result = _run(target, telegram_client, repo, extractor)

        assert result.success
        assert result.messages_consumed == 3
        assert result.events_saved == 2
        events = repo.list_events()
        assert len(events) == 2
        assert events[0].description == "Yoga with live music"
        assert all(event.telegram_room_ids == ["-100123"] for event in events)

        stored = repo.get_scraping_target("-100123")
        assert stored is not None
        assert stored.last_message_id == 12
        assert stored.last_message_time == messages[1].date
        assert stored.messages_consumed == 8
        assert stored.scraped_events == 3
        assert stored.last_error is None

    def test_resolve_name_target_runs_under_resolved_id(
        self,
        make_target: TargetFactory,
        repo: SQLiteRepository,
        telegram_client: Mock,
        extractor: Mock,
    ) -> None:
        target = make_target(room_id="resolveName:Berlin Yoga Chat")
        repo.save_scraping_target(target)
        telegram_client.find_dialog_id_by_name.return_value = "-100777"

        result = _run(target, telegram_client, repo, extractor)

        assert result.room_id == "-100777"
        telegram_client.get_source_entity.assert_called_once_with("-100777")
        stored = repo.get_scraping_target("-100777")
        assert stored is not None
        assert stored.name == "Berlin Yoga Chat"

    def test_unresolvable_name_is_a_failed_run(
        self,
        make_target: TargetFactory,
        repo: SQLiteRepository,
        telegram_client: Mock,
        extractor: Mock,
    ) -> None:
        target = make_target(room_id="resolveName:Nowhere")
        repo.save_scraping_target(target)
        telegram_client.find_dialog_id_by_name.return_value = None

        result = _run(target, telegram_client, repo, extractor)

        assert not result.success
        assert "Nowhere" in (result.error or "")
        stored = repo.get_scraping_target("resolveName:Nowhere")
        assert stored is not None
        assert stored.last_error == result.error

    def test_fatal_error_is_recorded_and_raised(
        self,
        make_target: TargetFactory,
        repo: SQLiteRepository,
        telegram_client: Mock,
        extractor: Mock,
    ) -> None:
        target = make_target()
        repo.save_scraping_target(target)
        telegram_client.get_source_entity.side_effect = None
        telegram_client.get_source_entity.return_value = SourceEntity(
            room_id="-100123", name="Forum", is_forum=True
        )

        with pytest.raises(FatalSourceError):
            _run(target, telegram_client, repo, extractor)

        stored = repo.get_scraping_target("-100123")
        assert stored is not None
        assert "forum" in (stored.last_error or "")
        assert stored.last_run_finished_at == NOW
        telegram_client.forget_room.assert_called_once_with("-100123")

    def test_extraction_failure_keeps_checkpoint(
        self,
        make_target: TargetFactory,
        make_message: MessageFactory,
        repo: SQLiteRepository,
        telegram_client: Mock,
        extractor: Mock,
    ) -> None:
        target = make_target(last_message_id=9)
        repo.save_scraping_target(target)
        telegram_client.fetch_messages.return_value = [make_message(10)]
        extractor.process_messages.side_effect = LLMAPIError("quota exceeded")

        result = _run(target, telegram_client, repo, extractor)

        assert not result.success
        stored = repo.get_scraping_target("-100123")
        assert stored is not None
        assert stored.last_message_id == 9
        assert stored.last_error == "quota exceeded"
