import asyncio
from datetime import date
from unittest.mock import AsyncMock, MagicMock

from greenagent.config import ActionClass
from greenagent.contracts import (
    CallbackContent,
    CommandContent,
    HandlerResult,
    ImageContent,
    InboundMessage,
    OutboundResponse,
    SessionUpdate,
    TextContent,
    VoiceContent,
)
from greenagent.service import orchestrator as orch
from greenagent.service.errors import CollaboratorError
from greenagent.service.nlu import RegexWorkParser
from greenagent.service.ports import GardenInfo, HandlerDeps, VerificationResult
from greenagent.service.rate_limit import SlidingWindowRateLimiter, build_limits
from greenagent.service.submission import NO_TASKS_TEXT
from greenagent.service.wallet import derive_address, generate_private_key
from greenagent.storage.models import ParsedTask, ParsedWork, Platform, SessionStep, TaskType, UserRole

GARDEN = "0x" + "1a" * 20


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


def _message(content, platform_id="100", platform=Platform.TELEGRAM, message_id="m1"):
    return InboundMessage(
        id=message_id, platform=platform, sender={"platform_id": platform_id}, content=content
    )


def _command(name, *args, **kwargs):
    return _message(CommandContent(name=name, args=list(args)), **kwargs)


def _limiter(overrides=None, clock=None):
    return SlidingWindowRateLimiter(build_limits(overrides), clock=clock or FakeClock())


def _ledger():
    ledger = AsyncMock()
    ledger.is_operator.return_value = VerificationResult(verified=True)
    ledger.get_garden_info.return_value = GardenInfo(exists=True, address=GARDEN, name="Rooftop")
    ledger.submit_work.return_value = "0xtxwork"
    ledger.submit_approval.return_value = "0xtxapproval"
    ledger.supports_approval_attestation = True
    return ledger


def _orchestrator(store, *, ledger=None, limiter=None, ai=None, notifier=None, transcriber=None):
    deps = HandlerDeps(
        storage=store,
        ledger=ledger or _ledger(),
        ai=ai or RegexWorkParser(today=lambda: date(2026, 10, 16)),
        rate_limiter=limiter or _limiter(),
        generate_id=lambda: "work-1",
        notifier=notifier or AsyncMock(),
    )
    return orch.Orchestrator(deps, transcriber=transcriber)


def _user(store, platform_id="100", platform=Platform.TELEGRAM, **kwargs):
    key = generate_private_key()
    return store.create_user(platform, platform_id, key, derive_address(key), **kwargs)


async def test_unsupported_content_has_no_side_effects():
    storage = MagicMock()
    limiter = MagicMock()
    agent = _orchestrator(storage, limiter=limiter)

    response = await agent.handle(_message(ImageContent(image_ref="https://files/p.jpg")))

    assert response.text == orch.UNSUPPORTED_TEXT
    storage.get_user.assert_not_called()
    storage.set_session.assert_not_called()
    limiter.check.assert_not_called()


async def test_unknown_command(memory_store):
    response = await _orchestrator(memory_store).handle(_command("/frobnicate"))
    assert response.text == "Unknown command: /frobnicate"


async def test_commands_require_an_account_without_consuming_tokens(memory_store):
    limiter = _limiter()
    agent = _orchestrator(memory_store, limiter=limiter)

    for name in ("status", "join", "pending", "approve", "reject"):
        response = await agent.handle(_command(name))
        assert "Please run /start first" in response.text

    assert limiter.peek("telegram:100", ActionClass.COMMAND).remaining == 20
    assert limiter.peek("telegram:100", ActionClass.APPROVAL).remaining == 30


async def test_help_is_never_rate_limited(memory_store):
    limiter = _limiter({ActionClass.COMMAND: (1, 60_000)})
    agent = _orchestrator(memory_store, limiter=limiter)

    for _ in range(5):
        response = await agent.handle(_command("help"))
        assert "Green Goods" in response.text


async def test_start_consumes_wallet_token_and_creates_user(memory_store):
    limiter = _limiter()
    agent = _orchestrator(memory_store, limiter=limiter)

    response = await agent.handle(_command("START"))

    user = memory_store.get_user(Platform.TELEGRAM, "100")
    assert user is not None
    assert user.address in response.text
    assert response.parse_mode == "markdown"
    assert limiter.peek("telegram:100", ActionClass.WALLET).remaining == 4


async def test_rate_limited_command_reports_wait_time(memory_store):
    _user(memory_store, current_garden=GARDEN)
    agent = _orchestrator(memory_store, limiter=_limiter({ActionClass.COMMAND: (1, 30_000)}))

    first = await agent.handle(_command("status"))
    second = await agent.handle(_command("status"))

    assert "Your Status" in first.text
    assert second.text == (
        "⏳ Too many commands. Please slow down.\n\n"
        "Please wait 30 seconds before trying again."
    )


async def test_limits_recover_after_window(memory_store):
    _user(memory_store, current_garden=GARDEN)
    clock = FakeClock()
    agent = _orchestrator(
        memory_store, limiter=_limiter({ActionClass.COMMAND: (1, 60_000)}, clock=clock)
    )

    await agent.handle(_command("status"))
    assert (await agent.handle(_command("status"))).text.startswith("⏳")

    clock.now += 60_000
    assert "Your Status" in (await agent.handle(_command("status"))).text


async def test_rate_limits_are_scoped_per_platform(memory_store):
    _user(memory_store, current_garden=GARDEN)
    _user(memory_store, platform=Platform.DISCORD, current_garden=GARDEN)
    agent = _orchestrator(memory_store, limiter=_limiter({ActionClass.COMMAND: (1, 60_000)}))

    await agent.handle(_command("status"))
    discord = await agent.handle(_command("status", platform=Platform.DISCORD))

    assert "Your Status" in discord.text


async def test_join_unknown_garden_leaves_user_unchanged(memory_store):
    _user(memory_store)
    ledger = _ledger()
    ledger.get_garden_info.return_value = GardenInfo(exists=False, address="0x" + "aa" * 20)

    response = await _orchestrator(memory_store, ledger=ledger).handle(
        _command("join", "0x" + "aa" * 20)
    )

    assert "Garden not found" in response.text
    assert memory_store.get_user(Platform.TELEGRAM, "100").current_garden is None


async def test_join_with_invalid_address_reports_format(memory_store):
    _user(memory_store)
    ledger = _ledger()

    response = await _orchestrator(memory_store, ledger=ledger).handle(_command("join", "0x12"))

    assert "Invalid address format" in response.text
    ledger.get_garden_info.assert_not_called()


async def test_text_requires_account_then_garden(memory_store):
    agent = _orchestrator(memory_store)

    no_user = await agent.handle(_message(TextContent(text="planted 5 trees")))
    assert no_user.text == orch.NEED_START_TEXT

    _user(memory_store)
    no_garden = await agent.handle(_message(TextContent(text="planted 5 trees")))
    assert no_garden.text == orch.NEED_GARDEN_TEXT
    assert no_garden.parse_mode == "markdown"
    assert memory_store.get_session(Platform.TELEGRAM, "100") is None


async def test_text_without_tasks_keeps_session_idle(memory_store):
    _user(memory_store, current_garden=GARDEN)
    limiter = _limiter()

    response = await _orchestrator(memory_store, limiter=limiter).handle(
        _message(TextContent(text="watered the garden"))
    )

    assert response.text == NO_TASKS_TEXT
    assert memory_store.get_session(Platform.TELEGRAM, "100") is None
    assert limiter.peek("telegram:100", ActionClass.MESSAGE).remaining == 9


async def test_submit_confirm_and_approve_end_to_end(memory_store):
    gardener = _user(memory_store, current_garden=GARDEN)
    _user(memory_store, "op", platform=Platform.DISCORD, current_garden=GARDEN, role=UserRole.OPERATOR)
    limiter = _limiter()
    ledger = _ledger()
    notifier = AsyncMock()
    agent = _orchestrator(memory_store, ledger=ledger, limiter=limiter, notifier=notifier)

    confirm = await agent.handle(_message(TextContent(text="I planted 5 trees today")))
    assert "Confirm your submission" in confirm.text
    session = memory_store.get_session(Platform.TELEGRAM, "100")
    assert session.step == SessionStep.CONFIRMING_WORK
    assert session.draft.tasks == [ParsedTask(type=TaskType.PLANTING, species="tree", count=5)]

    submitted = await agent.handle(_message(CallbackContent(data="confirm_submission")))
    assert "Work submitted for approval" in submitted.text
    assert memory_store.get_session(Platform.TELEGRAM, "100") is None
    assert [w.id for w in memory_store.get_pending_works_for_garden(GARDEN)] == ["work-1"]
    assert limiter.peek("telegram:100", ActionClass.SUBMISSION).remaining == 4
    assert notifier.send.await_args.args[:2] == (Platform.DISCORD, "op")

    approved = await agent.handle(
        _command("approve", "work-1", platform=Platform.DISCORD, platform_id="op")
    )
    assert "Work approved and attested" in approved.text
    assert memory_store.get_pending_work("work-1") is None
    assert ledger.submit_approval.await_args.args[0].gardener_address == gardener.address
    assert limiter.peek("discord:op", ActionClass.COMMAND).remaining == 19
    assert limiter.peek("discord:op", ActionClass.APPROVAL).remaining == 29

    again = await agent.handle(
        _command("approve", "work-1", platform=Platform.DISCORD, platform_id="op")
    )
    assert "not found or already processed" in again.text
    assert ledger.submit_work.await_count == 1


async def test_pending_denied_for_gardener(memory_store):
    _user(memory_store, current_garden=GARDEN)
    response = await _orchestrator(memory_store).handle(_command("pending"))
    assert response.text == "This command is only available for operators."


async def test_approve_denied_by_ledger_is_reported(memory_store):
    _user(memory_store, current_garden=GARDEN, role=UserRole.OPERATOR)
    ledger = _ledger()
    ledger.is_operator.return_value = VerificationResult(verified=False, reason="Not an operator")
    agent = _orchestrator(memory_store, ledger=ledger)
    await agent.handle(_message(TextContent(text="planted 2 trees"), platform_id="100"))
    await agent.handle(_message(CallbackContent(data="confirm_submission")))

    response = await agent.handle(_command("approve", "work-1"))

    assert "Permission Denied" in response.text
    assert response.parse_mode == "markdown"
    assert memory_store.get_pending_work("work-1") is not None


async def test_confirm_without_session_expires_without_consuming(memory_store):
    _user(memory_store, current_garden=GARDEN)
    limiter = _limiter()

    response = await _orchestrator(memory_store, limiter=limiter).handle(
        _message(CallbackContent(data="confirm_submission"))
    )

    assert response.text == orch.CALLBACK_NO_SESSION_TEXT
    assert memory_store.get_pending_works_for_garden(GARDEN) == []
    assert limiter.peek("telegram:100", ActionClass.SUBMISSION).remaining == 5


async def test_confirm_with_empty_draft_expires_and_clears(memory_store):
    _user(memory_store, current_garden=GARDEN)
    agent = _orchestrator(memory_store)
    empty = HandlerResult(
        response=OutboundResponse(text="x"),
        set_session=SessionUpdate(
            step=SessionStep.CONFIRMING_WORK,
            draft=ParsedWork(tasks=[], notes="", date="2026-10-16"),
        ),
    )
    agent._apply_session_mutation(_message(TextContent(text="x")), empty)

    response = await agent.handle(_message(CallbackContent(data="confirm_submission")))

    assert "Session expired" in response.text
    assert memory_store.get_session(Platform.TELEGRAM, "100") is None
    assert memory_store.get_pending_works_for_garden(GARDEN) == []


async def test_callbacks_need_an_account(memory_store):
    response = await _orchestrator(memory_store).handle(
        _message(CallbackContent(data="cancel_submission"))
    )
    assert response.text == orch.CALLBACK_NO_USER_TEXT


async def test_cancel_clears_any_session_and_unknown_action(memory_store):
    _user(memory_store, current_garden=GARDEN)
    agent = _orchestrator(memory_store)
    await agent.handle(_message(TextContent(text="planted 2 trees")))

    cancelled = await agent.handle(_message(CallbackContent(data="cancel_submission")))
    unknown = await agent.handle(_message(CallbackContent(data="launch_rockets")))

    assert cancelled.text == "❌ Submission cancelled."
    assert memory_store.get_session(Platform.TELEGRAM, "100") is None
    assert unknown.text == "Unknown action."


async def test_clear_wins_over_set(memory_store):
    agent = _orchestrator(memory_store)
    work = ParsedWork(
        tasks=[ParsedTask(type=TaskType.PLANTING, species="tree", count=1)],
        notes="planted 1 tree",
        date="2026-10-16",
    )
    both = HandlerResult(
        response=OutboundResponse(text="x"),
        set_session=SessionUpdate(step=SessionStep.CONFIRMING_WORK, draft=work),
        clear_session=True,
    )

    agent._apply_session_mutation(_message(TextContent(text="x")), both)

    assert memory_store.get_session(Platform.TELEGRAM, "100") is None


async def test_voice_without_transcriber_is_reported(memory_store):
    _user(memory_store, current_garden=GARDEN)
    limiter = _limiter()

    response = await _orchestrator(memory_store, limiter=limiter).handle(
        _message(VoiceContent(audio_ref="https://files/v.ogg"))
    )

    assert response.text == orch.VOICE_UNAVAILABLE_TEXT
    assert limiter.peek("telegram:100", ActionClass.VOICE).remaining == 2


async def test_voice_transcription_success_and_failure(memory_store):
    _user(memory_store, current_garden=GARDEN)
    transcriber = AsyncMock()
    transcriber.transcribe.return_value = "removed 10kg of weeds"
    agent = _orchestrator(memory_store, transcriber=transcriber)

    heard = await agent.handle(_message(VoiceContent(audio_ref="https://files/v.ogg")))
    assert heard.text.startswith('📝 I heard: "removed 10kg of weeds"')
    transcriber.transcribe.assert_awaited_once_with("https://files/v.ogg", mime_type="audio/ogg")

    transcriber.transcribe.side_effect = RuntimeError("Transcription timed out")
    failed = await agent.handle(_message(VoiceContent(audio_ref="https://files/v.ogg")))
    assert "couldn't process that audio" in failed.text
    assert "Error: Transcription timed out" in failed.text


async def test_unexpected_errors_become_generic_reply(memory_store):
    _user(memory_store, current_garden=GARDEN)
    ai = AsyncMock()
    ai.parse_work_text.side_effect = RuntimeError("model exploded")

    response = await _orchestrator(memory_store, ai=ai).handle(
        _message(TextContent(text="planted 5 trees"))
    )

    assert response.text == f"{orch.GENERIC_ERROR_TEXT}\n\nError: model exploded"
    assert memory_store.get_session(Platform.TELEGRAM, "100") is None


async def test_collaborator_errors_carry_retry_hint(memory_store):
    _user(memory_store, current_garden=GARDEN)
    ai = AsyncMock()
    ai.parse_work_text.side_effect = CollaboratorError("Work parser unavailable")
    agent = _orchestrator(memory_store, ai=ai)

    transient = await agent.handle(_message(TextContent(text="planted 5 trees")))
    assert transient.text == f"❌ Work parser unavailable\n\n{orch.RETRY_HINT_TEXT}"

    ai.parse_work_text.side_effect = CollaboratorError("Work parser rejected the input", retryable=False)
    permanent = await agent.handle(_message(TextContent(text="planted 5 trees")))
    assert permanent.text == "❌ Work parser rejected the input"
    assert memory_store.get_session(Platform.TELEGRAM, "100") is None


async def test_messages_from_one_user_are_serialized(memory_store):
    _user(memory_store, current_garden=GARDEN)
    events = []
    parser = RegexWorkParser(today=lambda: date(2026, 10, 16))

    class SlowParser:
        async def parse_work_text(self, text, locale=None):
            events.append(("start", text))
            await asyncio.sleep(0.01)
            events.append(("end", text))
            return await parser.parse_work_text(text, locale)

    agent = _orchestrator(memory_store, ai=SlowParser())

    await asyncio.gather(
        agent.handle(_message(TextContent(text="planted 1 tree"), message_id="a")),
        agent.handle(_message(TextContent(text="planted 2 trees"), message_id="b")),
    )

    assert events == [
        ("start", "planted 1 tree"),
        ("end", "planted 1 tree"),
        ("start", "planted 2 trees"),
        ("end", "planted 2 trees"),
    ]
    assert agent._user_locks == {}
    assert agent._lock_waiters == {}
