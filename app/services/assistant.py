"""Conversational assistant with a single side-effecting tool."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from ..config import Settings
from ..models import MediaType, Rated, SearchResult, User
from ..utils import fold_text
from .openrouter import OpenRouterClient, ToolCall
from .search import SearchAggregator
from .tracker import WatchTracker

logger = logging.getLogger(__name__)

MARK_AS_WATCHED = "markAsWatched"
BOTH_ALIASES = frozenset({"both", "ambos", "all", "todos"})
APOLOGY = "Sorry, something went wrong while processing that request. Please try again."
MAX_TOOL_ROUNDS = 3
HISTORY_CHAR_LIMIT = 10_000
RECOMMENDATION_RE = re.compile(r":::\s*(\{.*?\})\s*:::", re.DOTALL)


@dataclass(slots=True, frozen=True)
class Recommendation:
    """A title the model suggested, ready to be offered as an add action."""

    title: str
    year: str
    type: MediaType


def extract_recommendations(text: str) -> list[Recommendation]:
    recommendations: list[Recommendation] = []
    for match in RECOMMENDATION_RE.finditer(text or ""):
        try:
            payload = json.loads(match.group(1))
        except json.JSONDecodeError:
            logger.debug("Ignoring malformed recommendation block %s", match.group(1))
            continue
        if not isinstance(payload, dict):
            continue
        title = str(payload.get("title") or "").strip()
        if not title:
            continue
        try:
            media_type = MediaType(str(payload.get("type") or "movie").lower())
        except ValueError:
            media_type = MediaType.MOVIE
        recommendations.append(
            Recommendation(title=title, year=str(payload.get("year") or ""), type=media_type)
        )
    return recommendations


def strip_recommendations(text: str) -> str:
    return RECOMMENDATION_RE.sub("", text or "").strip()


class Assistant:
    """Answers questions about the collection and marks titles as watched."""

    def __init__(
        self,
        settings: Settings,
        ai: OpenRouterClient,
        tracker: WatchTracker,
        search: SearchAggregator,
        users: Sequence[User] | None = None,
    ):
        self._settings = settings
        self._ai = ai
        self._tracker = tracker
        self._search = search
        self._users = tuple(users or settings.users)
        self._history: list[dict[str, Any]] = []

    @property
    def history(self) -> tuple[dict[str, Any], ...]:
        return tuple(self._history)

    def reset(self) -> None:
        self._history.clear()

    def tool_schema(self) -> dict[str, Any]:
        names = [user.name for user in self._users]
        return {
            "type": "function",
            "function": {
                "name": MARK_AS_WATCHED,
                "description": (
                    "Marks a movie or series as watched. If it is not in the "
                    "collection it is searched for and added as watched."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "title": {
                            "type": "string",
                            "description": "The title of the movie or series.",
                        },
                        "who": {
                            "type": "string",
                            "enum": [*names, "both"],
                            "description": "Who watched it: " + ", ".join(names) + " or both.",
                        },
                        "year": {
                            "type": "string",
                            "description": "Optional release year to help filter results.",
                        },
                        "mediaType": {
                            "type": "string",
                            "enum": [MediaType.MOVIE.value, MediaType.SERIES.value],
                            "description": "Optional type: movie or series.",
                        },
                    },
                    "required": ["title"],
                },
            },
        }

    def system_prompt(self) -> str:
        status_model = self._tracker.status_model
        lines: list[str] = []
        for item in self._tracker.items:
            active = any(
                status_model.has_activity(item, user_id)
                for user_id in status_model.user_ids
            )
            if not active and not isinstance(item.rating, Rated):
                continue
            line = f"- {item.title} ({item.year}) [{item.type.value}]"
            if isinstance(item.rating, Rated):
                line += f" (Rated: {item.rating.score}/4)"
            lines.append(line)
        history = "\n".join(lines)[:HISTORY_CHAR_LIMIT]
        people = "\n".join(
            f"User{index} = {user.name} (id: {user.id})"
            for index, user in enumerate(self._users, start=1)
        )
        return (
            'You are "Whisper", a movie and series assistant.\n\n'
            f"CONTEXT (History):\n{history or '(nothing watched yet)'}\n\n"
            "RULES:\n"
            "1. Be direct and concise. Do not greet unless greeted.\n"
            "2. Recommend new content based on the history, never something already seen. Avoid spoilers.\n"
            f"3. When someone says they have seen a title, use the '{MARK_AS_WATCHED}' tool and identify who.\n"
            "4. When recommending a title, append "
            ':::{"title": "...", "year": "YYYY", "type": "movie" | "series"}::: after the paragraph.\n\n'
            f"{people}"
        )

    async def ask(self, message: str) -> str:
        """Run one conversational turn and return the model's final text."""

        turn: list[dict[str, Any]] = [{"role": "user", "content": message}]
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": self.system_prompt()},
            *self._history,
            *turn,
        ]
        tools = [self.tool_schema()]
        try:
            completion = await self._ai.complete(messages, tools=tools)
            rounds = 0
            while completion.tool_calls and rounds < MAX_TOOL_ROUNDS:
                rounds += 1
                assistant_message = {
                    "role": "assistant",
                    "content": completion.text or None,
                    "tool_calls": completion.message.get("tool_calls") or [],
                }
                messages.append(assistant_message)
                turn.append(assistant_message)
                for call in completion.tool_calls:
                    result = await self._run_tool(call)
                    tool_message = {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "name": call.name,
                        "content": result,
                    }
                    messages.append(tool_message)
                    turn.append(tool_message)
                completion = await self._ai.complete(messages, tools=tools)
        except Exception as exc:
            logger.exception("Assistant turn failed: %s", exc)
            return APOLOGY

        text = completion.text or "Done."
        turn.append({"role": "assistant", "content": text})
        self._history.extend(turn)
        return text

    async def _run_tool(self, call: ToolCall) -> str:
        if call.name != MARK_AS_WATCHED:
            logger.warning("Model requested unknown tool %s", call.name)
            return f"Unknown tool {call.name}"
        arguments = call.arguments
        title = str(arguments.get("title") or "").strip()
        if not title:
            return "A title is required."
        media_type: MediaType | None = None
        raw_type = arguments.get("mediaType")
        if isinstance(raw_type, str) and raw_type.lower() in {"movie", "series"}:
            media_type = MediaType(raw_type.lower())
        return await self.mark_as_watched(
            title,
            arguments.get("who"),
            year=arguments.get("year"),
            media_type=media_type,
        )

    def resolve_targets(self, who: str | None) -> list[str] | None:
        """Map ``who`` to user ids; ``None`` when nobody matches."""

        if who is None or not str(who).strip():
            return [self._users[0].id]
        wanted = fold_text(str(who))
        if wanted in BOTH_ALIASES:
            return [user.id for user in self._users]
        for user in self._users:
            if wanted in (fold_text(user.id), fold_text(user.name)):
                return [user.id]
        return None

    async def mark_as_watched(
        self,
        title: str,
        who: str | None,
        *,
        year: str | int | None = None,
        media_type: MediaType | None = None,
    ) -> str:
        targets = self.resolve_targets(who)
        if targets is None:
            names = ", ".join(user.name for user in self._users)
            return f'I do not know who "{who}" is. Use one of: {names} or both.'
        names = self._describe(targets)
        now = datetime.utcnow()

        existing = self._tracker.find_by_title(title)
        if existing is not None:
            self._tracker.mark_fully_watched(existing.id, targets, now=now)
            return f'Marked "{existing.title}" as watched for {names}.'

        results = await self._search.search(title)
        candidates = self._filter_candidates(results, year=year, media_type=media_type)
        if not candidates:
            return f'Could not find "{title}".'

        best = candidates[0]
        created = await self._tracker.add_from_result(best, watched_by=targets)
        if created is not None:
            return f'Added "{created.title}" and marked it as watched for {names}.'
        duplicate = self._tracker.find_duplicate(best.title, best.year)
        if duplicate is not None:
            self._tracker.mark_fully_watched(duplicate.id, targets, now=now)
            return f'Marked "{duplicate.title}" as watched for {names}.'
        return f'Could not save "{best.title}" right now.'

    def _filter_candidates(
        self,
        results: Sequence[SearchResult],
        *,
        year: str | int | None,
        media_type: MediaType | None,
    ) -> list[SearchResult]:
        wanted_year = _parse_year(year)
        candidates: list[SearchResult] = []
        for result in results:
            if media_type is not None and result.type != media_type:
                continue
            result_year = _parse_year(result.year)
            if (
                wanted_year is not None
                and result_year is not None
                and abs(result_year - wanted_year) > 1
            ):
                continue
            candidates.append(result)
        return self._search.rank(candidates)

    def _describe(self, user_ids: Sequence[str]) -> str:
        names = [user.name for user in self._users if user.id in user_ids]
        if len(names) == len(self._users) and len(names) > 1:
            return "everyone" if len(names) > 2 else " and ".join(names)
        return ", ".join(names)


def _parse_year(value: object) -> int | None:
    if value is None:
        return None
    match = re.search(r"\d{4}", str(value))
    if not match:
        return None
    return int(match.group(0))
