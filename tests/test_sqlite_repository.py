"""Tests for the SQLite repository."""

import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest
import pytz

from src.adapters.sqlite_repository import SQLiteRepository
from src.domain.exceptions import MergeConflictError, RepositoryError
from src.domain.models import EventCandidate, ScrapingTarget

CandidateFactory = Callable[..., EventCandidate]


class TestEvents:
    def test_upsert_inserts_and_reads_back(
        self, repo: SQLiteRepository, make_candidate: CandidateFactory
    ) -> None:
        candidate = make_candidate(
            description="  <p>Hatha yoga</p>  ",
            tags=["yoga"],
            image_urls=["https://cdn.example/a.jpg"],
            telegram_room_ids=["-100123"],
        )

        stored = repo.upsert_event(candidate)

        assert stored.id > 0
        assert stored.slug == candidate.slug
        assert stored.start_at == candidate.start_at
        assert stored.description == "<p>Hatha yoga</p>"
        assert stored.address == ["Yoga Loft", "Main St 5", "Berlin"]
        assert stored.tags == ["yoga"]
        assert stored.image_urls == ["https://cdn.example/a.jpg"]
        assert repo.get_event(stored.id) == stored

    def test_upsert_on_same_slug_keeps_id(
        self, repo: SQLiteRepository, make_candidate: CandidateFactory
    ) -> None:
        first = repo.upsert_event(make_candidate(description="first"))
        second = repo.upsert_event(make_candidate(description="second"))

        assert second.id == first.id
        assert second.created_at == first.created_at
        assert second.description == "second"
        assert len(repo.list_events()) == 1

    def test_slug_is_derived_from_trimmed_name(
        self, repo: SQLiteRepository, make_candidate: CandidateFactory
    ) -> None:
        stored = repo.upsert_event(
            make_candidate(name="  Yoga Workshop ", slug="stale-slug")
        )

        assert stored.name == "Yoga Workshop"
        assert stored.slug == make_candidate().slug

    def test_update_event(
        self, repo: SQLiteRepository, make_candidate: CandidateFactory
    ) -> None:
        stored = repo.upsert_event(make_candidate())

        repo.update_event(stored.model_copy(update={"price": "15 EUR"}))

        reloaded = repo.get_event(stored.id)
        assert reloaded is not None
        assert reloaded.price == "15 EUR"

    def test_update_of_deleted_event_conflicts(
        self, repo: SQLiteRepository, make_candidate: CandidateFactory
    ) -> None:
        stored = repo.upsert_event(make_candidate())
        assert repo.delete_event(stored.id)

        with pytest.raises(MergeConflictError):
            repo.update_event(stored)
        assert not repo.delete_event(stored.id)

    def test_referenced_image_urls(
        self, repo: SQLiteRepository, make_candidate: CandidateFactory
    ) -> None:
        repo.upsert_event(make_candidate(image_urls=["https://cdn.example/a.jpg"]))
        repo.upsert_event(
            make_candidate(
                name="Ecstatic Dance",
                image_urls=["https://cdn.example/a.jpg", "https://cdn.example/b.jpg"],
            )
        )

        assert repo.get_referenced_image_urls() == {
            "https://cdn.example/a.jpg",
            "https://cdn.example/b.jpg",
        }

    def test_list_events_in_id_order(
        self, repo: SQLiteRepository, make_candidate: CandidateFactory
    ) -> None:
        start = datetime(2030, 6, 1, 18, 0, tzinfo=pytz.UTC)
        repo.upsert_event(make_candidate(name="B", start_at=start))
        repo.upsert_event(make_candidate(name="A", start_at=start + timedelta(days=1)))

        assert [e.name for e in repo.list_events()] == ["B", "A"]


class TestScrapingTargets:
    def test_save_and_update(self, repo: SQLiteRepository) -> None:
        repo.save_scraping_target(
            ScrapingTarget(room_id="-100123", topic_ids=[5, 9], default_address=["Berlin"])
        )
        finished = datetime(2030, 5, 1, 12, 0, tzinfo=pytz.UTC)

        repo.update_scraping_target(
            "-100123",
            {"last_message_id": 42, "last_run_finished_at": finished, "name": "Chat"},
        )

        target = repo.get_scraping_target("-100123")
        assert target is not None
        assert target.last_message_id == 42
        assert target.last_run_finished_at == finished
        assert target.name == "Chat"
        assert target.topic_ids == [5, 9]
        assert target.default_address == ["Berlin"]

    def test_room_id_can_be_rewritten(self, repo: SQLiteRepository) -> None:
        repo.save_scraping_target(ScrapingTarget(room_id="resolveName:Yoga"))

        repo.update_scraping_target("resolveName:Yoga", {"room_id": "-100777"})

        assert [t.room_id for t in repo.get_scraping_targets()] == ["-100777"]

    def test_unknown_field_is_rejected(self, repo: SQLiteRepository) -> None:
        repo.save_scraping_target(ScrapingTarget(room_id="-100123"))

        with pytest.raises(RepositoryError, match="Unknown"):
            repo.update_scraping_target("-100123", {"cursor": 1})

    def test_missing_target(self, repo: SQLiteRepository) -> None:
        assert repo.get_scraping_target("-1") is None


def test_geocode_cache(repo: SQLiteRepository) -> None:
    assert repo.get_cached_geocode("Main St 5, Berlin") is None

    repo.save_geocode("Main St 5, Berlin", 52.52, 13.405)

    assert repo.get_cached_geocode("Main St 5, Berlin") == (52.52, 13.405)


@pytest.mark.parametrize(
    ("method", "args"),
    [
        ("get_event", (1,)),
        ("get_event_by_slug", ("2030-05-31-yoga-workshop",)),
        ("list_events", ()),
        ("get_scraping_targets", ()),
        ("get_scraping_target", ("-100123",)),
        ("get_referenced_image_urls", ()),
        ("get_cached_geocode", ("Main St 5, Berlin",)),
    ],
)
def test_failed_read_still_closes_connection(
    repo: SQLiteRepository, method: str, args: tuple[object, ...]
) -> None:
    conn = Mock()
    conn.execute.side_effect = sqlite3.OperationalError("database is locked")

    with patch.object(repo, "_get_connection", return_value=conn):
        with pytest.raises(RepositoryError, match="database is locked"):
            getattr(repo, method)(*args)

    conn.close.assert_called_once()
