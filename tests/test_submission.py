from datetime import date
from unittest.mock import AsyncMock

from greenagent.contracts import CallbackContent, InboundMessage, TextContent
from greenagent.service import submission
from greenagent.service.nlu import RegexWorkParser
from greenagent.service.ports import HandlerDeps
from greenagent.service.rate_limit import SlidingWindowRateLimiter
from greenagent.service.wallet import derive_address, generate_private_key
from greenagent.storage.models import (
    ParsedTask,
    ParsedWork,
    Platform,
    Session,
    SessionStep,
    TaskType,
    UserRole,
)

GARDEN = "0x" + "1a" * 20


def _message(content, platform_id="100"):
    return InboundMessage(
        id="m1", platform=Platform.TELEGRAM, sender={"platform_id": platform_id}, content=content
    )


def _deps(storage, notifier=None):
    return HandlerDeps(
        storage=storage,
        ledger=AsyncMock(),
        ai=RegexWorkParser(today=lambda: date(2026, 10, 16)),
        rate_limiter=SlidingWindowRateLimiter(),
        generate_id=lambda: "work-1",
        notifier=notifier or AsyncMock(),
    )


def _user(store, platform_id="100", **kwargs):
    key = generate_private_key()
    return store.create_user(Platform.TELEGRAM, platform_id, key, derive_address(key), **kwargs)


def _confirming(work, platform_id="100"):
    return Session(
        platform=Platform.TELEGRAM,
        platform_id=platform_id,
        step=SessionStep.CONFIRMING_WORK,
        draft=work,
    )


TREES = ParsedWork(
    tasks=[ParsedTask(type=TaskType.PLANTING, species="tree", count=5)],
    notes="I planted 5 trees today",
    date="2026-10-16",
)


async def test_text_with_tasks_asks_for_confirmation(memory_store):
    user = _user(memory_store, current_garden=GARDEN)
    message = _message(TextContent(text="I planted 5 trees today"))

    result = await submission.handle_text_submission(
        message, user, _deps(memory_store), "I planted 5 trees today"
    )

    assert "Confirm your submission" in result.response.text
    assert "• planting: 5 tree" in result.response.text
    assert [b.callback_data for b in result.response.buttons] == [
        "confirm_submission",
        "cancel_submission",
    ]
    assert result.set_session.step == SessionStep.CONFIRMING_WORK
    assert result.set_session.draft == TREES


async def test_text_without_tasks_keeps_session_untouched(memory_store):
    user = _user(memory_store, current_garden=GARDEN)

    result = await submission.handle_text_submission(
        _message(TextContent(text="hello")), user, _deps(memory_store), "hello"
    )

    assert "couldn't identify any work tasks" in result.response.text
    assert result.set_session is None
    assert result.clear_session is False


async def test_voice_prefixes_transcript(memory_store):
    user = _user(memory_store, current_garden=GARDEN)

    result = await submission.handle_voice_submission(
        _message(TextContent(text="")), user, _deps(memory_store), "removed 10kg of weeds"
    )

    assert result.response.text.startswith('📝 I heard: "removed 10kg of weeds"')
    assert "• weeding: 10kg weed" in result.response.text


async def test_confirm_creates_pending_work_and_notifies_operator(memory_store):
    gardener = _user(memory_store, current_garden=GARDEN)
    _user(memory_store, "op", current_garden=GARDEN, role=UserRole.OPERATOR)
    notifier = AsyncMock()
    deps = _deps(memory_store, notifier)

    result = await submission.handle_confirm_submission(
        _message(CallbackContent(data="confirm_submission")),
        gardener,
        _confirming(TREES),
        deps,
    )

    assert result.clear_session is True
    assert "Work submitted for approval" in result.response.text
    assert "`work-1`" in result.response.text
    work = memory_store.get_pending_work("work-1")
    assert work.garden_address == GARDEN
    assert work.gardener_address == gardener.address
    assert work.data.plant_selection == ["tree"]
    assert work.data.plant_count == 5
    assert work.data.feedback == TREES.notes

    notifier.send.assert_awaited_once()
    args, kwargs = notifier.send.await_args
    assert args[:2] == (Platform.TELEGRAM, "op")
    assert "/approve work-1" in args[2]


async def test_confirm_survives_notifier_failure(memory_store):
    gardener = _user(memory_store, current_garden=GARDEN)
    _user(memory_store, "op", current_garden=GARDEN, role=UserRole.OPERATOR)
    notifier = AsyncMock()
    notifier.send.side_effect = RuntimeError("webhook down")

    result = await submission.handle_confirm_submission(
        _message(CallbackContent(data="confirm_submission")),
        gardener,
        _confirming(TREES),
        _deps(memory_store, notifier),
    )

    assert "Work submitted for approval" in result.response.text
    assert memory_store.get_pending_work("work-1") is not None


async def test_confirm_with_invalid_session_expires(memory_store):
    gardener = _user(memory_store, current_garden=GARDEN)
    message = _message(CallbackContent(data="confirm_submission"))
    deps = _deps(memory_store)

    for session in (
        None,
        Session.idle(Platform.TELEGRAM, "100"),
        _confirming(ParsedWork(tasks=[], notes="", date="2026-10-16")),
    ):
        result = await submission.handle_confirm_submission(message, gardener, session, deps)
        assert result.response.text == submission.SESSION_EXPIRED_TEXT
        assert result.clear_session is True

    assert memory_store.get_pending_works_for_garden(GARDEN) == []


async def test_cancel_clears_session(memory_store):
    result = await submission.handle_cancel_submission(
        _message(CallbackContent(data="cancel_submission")), _deps(memory_store)
    )
    assert result.response.text == "❌ Submission cancelled."
    assert result.clear_session is True
