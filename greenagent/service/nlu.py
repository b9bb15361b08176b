from __future__ import annotations

import re
from datetime import date
from typing import Callable, List, Optional

from greenagent.logging import get_logger
from greenagent.service.ports import Transcriber
from greenagent.storage.models import ParsedTask, ParsedWork, TaskType

logger = get_logger(__name__)

_TREE_PATTERNS = [
    re.compile(r"planted?\s*(\d+)\s*trees?"),
    re.compile(r"(\d+)\s*trees?\s*planted"),
    re.compile(r"(\d+)\s*trees?"),
]

_WEED_PATTERNS = [
    re.compile(r"(\d+)\s*(kg|lbs?|pounds?)?\s*(?:of\s*)?weeds?"),
    re.compile(r"weeded?\s*(\d+)\s*(kg|lbs?|pounds?)?"),
    re.compile(r"removed?\s*(\d+)\s*(kg|lbs?|pounds?)?\s*(?:of\s*)?weeds?"),
]

_GENERAL_PLANTING = re.compile(r"planted?\s*(\d+)\s*(\w+)")


def _normalize_unit(unit: Optional[str]) -> str:
    if not unit:
        return "kg"
    lower = unit.lower()
    if lower.startswith("lb") or lower == "pounds":
        return "lbs"
    return "kg"


def parse_work_text(text: str, *, today: Optional[date] = None) -> ParsedWork:
    """Extract planting and weeding tasks from a free-text work report.

    At most one tree task, one weeding task and, when no tree task matched, one
    general planting task are produced. The original text becomes the notes.
    """
    lower = text.lower()
    tasks: List[ParsedTask] = []

    for pattern in _TREE_PATTERNS:
        match = pattern.search(lower)
        if match:
            tasks.append(
                ParsedTask(type=TaskType.PLANTING, species="tree", count=int(match.group(1)))
            )
            break

    for pattern in _WEED_PATTERNS:
        match = pattern.search(lower)
        if match:
            tasks.append(
                ParsedTask(
                    type=TaskType.WEEDING,
                    species="weed",
                    amount=int(match.group(1)),
                    unit=_normalize_unit(match.group(2)),
                )
            )
            break

    plant_match = _GENERAL_PLANTING.search(lower)
    if plant_match and not any(t.type == TaskType.PLANTING for t in tasks):
        tasks.append(
            ParsedTask(
                type=TaskType.PLANTING,
                species=plant_match.group(2),
                count=int(plant_match.group(1)),
            )
        )

    return ParsedWork(
        tasks=tasks,
        notes=text,
        date=(today or date.today()).isoformat(),
    )


class RegexWorkParser:
    """AI port backed by pattern matching, delegating speech to a transcriber."""

    def __init__(
        self,
        transcriber: Optional[Transcriber] = None,
        *,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.transcriber = transcriber
        self._today = today or date.today

    async def parse_work_text(self, text: str, locale: Optional[str] = None) -> ParsedWork:
        parsed = parse_work_text(text, today=self._today())
        logger.debug("work_text_parsed", task_count=len(parsed.tasks), locale=locale)
        return parsed

    async def transcribe(self, audio_ref: str, *, mime_type: Optional[str] = None) -> str:
        if self.transcriber is None:
            raise RuntimeError("no transcription service configured")
        return await self.transcriber.transcribe(audio_ref, mime_type=mime_type)

    def is_model_loaded(self) -> bool:
        return True
