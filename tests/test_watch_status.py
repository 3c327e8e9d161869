from __future__ import annotations

from datetime import datetime

import pytest

from app.models import CollectionType, MediaItem, MediaType, Season, User, WatchInfo
from app.watch_status import WatchStatusModel


def _users(count: int) -> list[User]:
    return [User(id=f"u{index}", name=f"User {index}") for index in range(1, count + 1)]


def _series(**overrides) -> MediaItem:
    payload = {
        "id": "series-1",
        "title": "Dark",
        "type": MediaType.SERIES,
        "seasons": [
            Season(season_number=1, episode_count=3),
            Season(season_number=2, episode_count=2),
        ],
    }
    payload.update(overrides)
    return MediaItem(**payload)


def _movie(**overrides) -> MediaItem:
    payload = {"id": "movie-1", "title": "Dune", "type": MediaType.MOVIE, "year": "2021"}
    payload.update(overrides)
    return MediaItem(**payload)


def test_model_requires_users():
    with pytest.raises(ValueError):
        WatchStatusModel([])


def test_series_progress_counts_watched_episodes():
    model = WatchStatusModel(_users(1))
    item = _series(user_status={"u1": WatchInfo(watched_episodes={"S1_E1", "S1_E2"})})

    progress = model.user_progress(item, "u1")

    assert progress.started
    assert not progress.finished
    assert progress.watched_episodes == 2
    assert progress.total_episodes == 5
    assert progress.percent == pytest.approx(40.0)


def test_series_without_seasons_is_never_finished():
    model = WatchStatusModel(_users(1))
    item = _series(seasons=[], user_status={"u1": WatchInfo(watched_episodes={"S1_E1"})})

    progress = model.user_progress(item, "u1")

    assert progress.started
    assert not progress.finished


def test_extra_episode_keys_still_finish_the_series():
    model = WatchStatusModel(_users(1))
    keys = {"S1_E1", "S1_E2", "S1_E3", "S2_E1", "S2_E2", "S9_E9"}
    item = _series(user_status={"u1": WatchInfo(watched_episodes=keys)})

    progress = model.user_progress(item, "u1")

    assert progress.finished
    assert progress.percent == 100


@pytest.mark.parametrize("user_count", [1, 2, 5])
def test_status_counts_scale_with_user_set(user_count: int):
    model = WatchStatusModel(_users(user_count))
    statuses = {"u1": WatchInfo(watched=True), "ghost": WatchInfo(watched=True)}
    item = _movie(user_status=statuses)

    counts = model.status_counts(item)

    assert counts.started == 1
    assert counts.finished == 1
    assert counts.total_users == user_count
    assert model.progress_percent(item) == pytest.approx(100 / user_count)


def test_toggle_episode_twice_restores_original_set():
    model = WatchStatusModel(_users(2))
    item = _series(user_status={"u1": WatchInfo(watched_episodes={"S1_E1"})})

    toggled = model.toggle_episode(item, "u1", 1, 2)
    restored = model.toggle_episode(toggled, "u1", 1, 2)

    assert toggled.user_status["u1"].watched_episodes == {"S1_E1", "S1_E2"}
    assert restored.user_status["u1"].watched_episodes == {"S1_E1"}
    assert item.user_status["u1"].watched_episodes == {"S1_E1"}


def test_toggle_episode_does_not_validate_against_seasons():
    model = WatchStatusModel(_users(1))

    updated = model.toggle_episode(_series(), "u1", 7, 40)

    assert updated.user_status["u1"].watched_episodes == {"S7_E40"}


def test_toggle_season_fills_then_clears():
    model = WatchStatusModel(_users(2))
    item = _series(user_status={"u2": WatchInfo(watched_episodes={"S1_E2", "S2_E1"})})

    filled = model.toggle_season(item, "u2", 1)
    assert filled.user_status["u2"].watched_episodes == {"S1_E1", "S1_E2", "S1_E3", "S2_E1"}

    cleared = model.toggle_season(filled, "u2", 1)
    assert cleared.user_status["u2"].watched_episodes == {"S2_E1"}


def test_toggle_unknown_season_is_a_no_op():
    model = WatchStatusModel(_users(1))
    item = _series()

    assert model.toggle_season(item, "u1", 9) is item


def test_set_movie_watched_keeps_first_date():
    model = WatchStatusModel(_users(2))
    first = datetime(2024, 1, 1)

    watched = model.set_movie_watched(_movie(), "u1", True, now=first)
    again = model.set_movie_watched(watched, "u1", True, now=datetime(2024, 2, 2))
    unwatched = model.set_movie_watched(again, "u1", False)

    assert watched.collection_id == CollectionType.WATCHED
    assert again.user_status["u1"].date == first
    assert not unwatched.user_status["u1"].watched
    assert unwatched.user_status["u1"].date is None
    assert unwatched.collection_id == CollectionType.WATCHLIST


def test_mark_fully_watched_series_unions_every_episode():
    model = WatchStatusModel(_users(2))
    now = datetime(2024, 5, 1)
    item = _series(user_status={"u1": WatchInfo(watched_episodes={"S9_E1"})})

    updated = model.mark_fully_watched(item, ["u1", "u2"], now=now)

    expected = {"S1_E1", "S1_E2", "S1_E3", "S2_E1", "S2_E2"}
    assert updated.user_status["u1"].watched_episodes == expected | {"S9_E1"}
    assert updated.user_status["u2"].watched_episodes == expected
    assert updated.user_status["u2"].date == now
    assert model.status_counts(updated).finished == 2


def test_derive_collection_ignores_empty_records():
    model = WatchStatusModel(_users(2))
    item = _series(user_status={"u1": WatchInfo(watched=True)})

    # A series counts as watched only through its episodes.
    assert model.derive_collection(item) == CollectionType.WATCHLIST


def test_derive_collection_ignores_unknown_users():
    model = WatchStatusModel(_users(2))
    item = _movie(user_status={"ghost": WatchInfo(watched=True)})

    assert model.status_counts(item).started == 0
    assert model.derive_collection(item) == CollectionType.WATCHLIST
