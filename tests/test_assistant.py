from __future__ import annotations

import asyncio

import pytest

from app.config import Settings
from app.database import Database
from app.models import MediaItem, MediaType, Rated, SearchResult, Season, WatchInfo
from app.services.assistant import (
    APOLOGY,
    Assistant,
    Recommendation,
    extract_recommendations,
    strip_recommendations,
)
from app.services.openrouter import Completion, ToolCall
from app.services.search import SearchAggregator
from app.services.store import MediaStore
from app.services.tracker import WatchTracker


class StubSearch:
    def __init__(self, results: list[SearchResult] | None = None) -> None:
        self.results = results or []
        self.queries: list[str] = []

    async def search(self, query: str) -> list[SearchResult]:
        self.queries.append(query)
        return list(self.results)

    async def fetch_details(self, result: SearchResult) -> SearchResult:
        return result

    score = staticmethod(SearchAggregator.score)

    def rank(self, results):
        return sorted(results, key=self.score, reverse=True)


class NullPipeline:
    def schedule(self, item: MediaItem) -> None:
        return None


class ScriptedAI:
    def __init__(self, *completions) -> None:
        self._completions = list(completions)
        self.calls: list[list[dict]] = []

    async def complete(self, messages, *, tools=None, **kwargs) -> Completion:
        self.calls.append(list(messages))
        reply = self._completions.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def _settings() -> Settings:
    return Settings(_env_file=None, USERS="u1:Jesús,u2:Julia")


async def _tracker(tmp_path, search: StubSearch) -> tuple[Database, WatchTracker]:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'assistant.db'}")
    await database.create_all()
    store = MediaStore(database.session_factory)
    tracker = WatchTracker(_settings(), store, search, NullPipeline())  # type: ignore[arg-type]
    return database, tracker


def _dune_result(year: str = "2021") -> SearchResult:
    return SearchResult(
        id=f"itunes-dune-{year}",
        source="itunes",
        title="Dune",
        type=MediaType.MOVIE,
        year=year,
        poster_url="https://p",
    )


def test_mark_existing_movie_for_both_users(tmp_path) -> None:
    async def runner() -> None:
        search = StubSearch()
        database, tracker = await _tracker(tmp_path, search)
        assistant = Assistant(_settings(), ScriptedAI(), tracker, search)  # type: ignore[arg-type]
        try:
            item = await tracker.add_from_result(_dune_result())
            message = await assistant.mark_as_watched("dune", "Ambos")
            await tracker.flush()
            await tracker.load()
            stored = tracker.require(item.id)
        finally:
            await database.dispose()

        assert "Dune" in message
        assert search.queries == []
        for user_id in ("u1", "u2"):
            assert stored.user_status[user_id].watched
            assert stored.user_status[user_id].date is not None

    asyncio.run(runner())


def test_unknown_title_without_results_creates_nothing(tmp_path) -> None:
    async def runner() -> None:
        search = StubSearch()
        database, tracker = await _tracker(tmp_path, search)
        assistant = Assistant(_settings(), ScriptedAI(), tracker, search)  # type: ignore[arg-type]
        try:
            message = await assistant.mark_as_watched("Dune", "ambos")
            stored = await tracker._store.list_items()
        finally:
            await database.dispose()

        assert message == 'Could not find "Dune".'
        assert stored == []
        assert tracker.items == ()

    asyncio.run(runner())


def test_search_result_is_added_pre_marked(tmp_path) -> None:
    async def runner() -> None:
        search = StubSearch([_dune_result("1984"), _dune_result("2021")])
        database, tracker = await _tracker(tmp_path, search)
        assistant = Assistant(_settings(), ScriptedAI(), tracker, search)  # type: ignore[arg-type]
        try:
            message = await assistant.mark_as_watched("Dune", "julia", year="2020")
        finally:
            await database.dispose()

        assert message.startswith('Added "Dune"')
        assert len(tracker.items) == 1
        added = tracker.items[0]
        assert added.year == "2021"
        assert added.user_status["u2"].watched
        assert "u1" not in added.user_status

    asyncio.run(runner())


@pytest.mark.parametrize(
    ("who", "expected"),
    [
        (None, ["u1"]),
        ("Jesus", ["u1"]),
        ("JULIA", ["u2"]),
        ("u2", ["u2"]),
        ("todos", ["u1", "u2"]),
        ("both", ["u1", "u2"]),
        ("Pedro", None),
    ],
)
def test_resolve_targets(who, expected) -> None:
    assistant = Assistant(_settings(), ScriptedAI(), None, StubSearch())  # type: ignore[arg-type]

    assert assistant.resolve_targets(who) == expected


def test_tool_call_round_trip_updates_history(tmp_path) -> None:
    async def runner() -> None:
        search = StubSearch()
        database, tracker = await _tracker(tmp_path, search)
        ai = ScriptedAI(
            Completion(
                text="",
                tool_calls=[
                    ToolCall(id="call_1", name="markAsWatched", arguments={"title": "Dune", "who": "both"})
                ],
                message={
                    "role": "assistant",
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "markAsWatched", "arguments": '{"title": "Dune"}'},
                        }
                    ],
                },
            ),
            Completion(text="Hecho, marcada para los dos."),
        )
        assistant = Assistant(_settings(), ai, tracker, search)  # type: ignore[arg-type]
        try:
            await tracker.add_from_result(_dune_result())
            reply = await assistant.ask("Hemos visto Dune")
            await tracker.flush()
        finally:
            await database.dispose()

        assert reply == "Hecho, marcada para los dos."
        tool_messages = [entry for entry in ai.calls[1] if entry["role"] == "tool"]
        assert tool_messages[0]["tool_call_id"] == "call_1"
        assert "Marked" in tool_messages[0]["content"]
        roles = [entry["role"] for entry in assistant.history]
        assert roles == ["user", "assistant", "tool", "assistant"]
        assert ai.calls[0][0]["role"] == "system"

    asyncio.run(runner())


def test_failed_turn_returns_apology_and_keeps_history() -> None:
    async def runner() -> None:
        ai = ScriptedAI(
            Completion(text="Te recomiendo Arrival."),
            RuntimeError("upstream down"),
        )
        tracker = WatchTracker(_settings(), None, StubSearch(), NullPipeline())  # type: ignore[arg-type]
        assistant = Assistant(_settings(), ai, tracker, StubSearch())  # type: ignore[arg-type]

        first = await assistant.ask("¿Qué vemos?")
        second = await assistant.ask("¿Y otra?")

        assert first == "Te recomiendo Arrival."
        assert second == APOLOGY
        assert [entry["content"] for entry in assistant.history] == [
            "¿Qué vemos?",
            "Te recomiendo Arrival.",
        ]

    asyncio.run(runner())


def test_system_prompt_lists_watched_history_and_users() -> None:
    tracker = WatchTracker(_settings(), None, StubSearch(), NullPipeline())  # type: ignore[arg-type]
    tracker.apply_remote_snapshot(
        [
            MediaItem(id="a", title="Dark", type=MediaType.SERIES, year="2017",
                      seasons=[Season(season_number=1, episode_count=10)],
                      user_status={"u1": WatchInfo(watched_episodes={"S1_E1"})}),
            MediaItem(id="b", title="Arrival", type=MediaType.MOVIE, year="2016", rating=Rated(score=4)),
            MediaItem(id="c", title="Unseen", type=MediaType.MOVIE),
        ]
    )
    assistant = Assistant(_settings(), ScriptedAI(), tracker, StubSearch())  # type: ignore[arg-type]

    prompt = assistant.system_prompt()

    assert "- Dark (2017) [series]" in prompt
    assert "- Arrival (2016) [movie] (Rated: 4/4)" in prompt
    assert "Unseen" not in prompt
    assert "User2 = Julia (id: u2)" in prompt
    assert assistant.tool_schema()["function"]["parameters"]["properties"]["who"]["enum"] == [
        "Jesús",
        "Julia",
        "both",
    ]


def test_recommendation_blocks_are_extracted() -> None:
    text = (
        'Prueba Arrival.\n:::{"title": "Arrival", "year": "2016", "type": "movie"}:::\n'
        'Y Dark. :::{"title": "Dark", "year": 2017, "type": "series"}:::\n'
        ":::{not json}:::"
    )

    assert extract_recommendations(text) == [
        Recommendation(title="Arrival", year="2016", type=MediaType.MOVIE),
        Recommendation(title="Dark", year="2017", type=MediaType.SERIES),
    ]
    assert strip_recommendations(text).startswith("Prueba Arrival.")
    assert ":::" not in strip_recommendations(text)


def test_system_prompt_skips_activity_of_unknown_users() -> None:
    tracker = WatchTracker(_settings(), None, StubSearch(), NullPipeline())  # type: ignore[arg-type]
    tracker.apply_remote_snapshot(
        [
            MediaItem(id="g", title="Ghosted", type=MediaType.MOVIE, year="2020",
                      user_status={"former-user": WatchInfo(watched=True)}),
        ]
    )
    assistant = Assistant(_settings(), ScriptedAI(), tracker, StubSearch())  # type: ignore[arg-type]

    assert "Ghosted" not in assistant.system_prompt()
