"""Work submission flow: parse, confirm, cancel."""

from __future__ import annotations

from typing import Optional

from greenagent.contracts import (
    HandlerResult,
    InboundMessage,
    ResponseButton,
    SessionUpdate,
    reply,
)
from greenagent.logging import get_logger
from greenagent.service.notifier import notify_quietly
from greenagent.service.ports import HandlerDeps
from greenagent.service.wallet import format_address
from greenagent.storage.models import (
    ParsedTask,
    ParsedWork,
    PendingWork,
    Session,
    SessionStep,
    User,
    WorkDraft,
)

logger = get_logger(__name__)

DEFAULT_ACTION_UID = 0
DEFAULT_TITLE = "Submission"

NO_TASKS_TEXT = (
    "🤔 I couldn't identify any work tasks from your message.\n\n"
    "Try something like:\n"
    '• "I planted 5 trees today"\n'
    '• "Removed 10kg of weeds"\n'
    '• "Planted 20 tomato seedlings"'
)
NO_TASKS_VOICE_TEXT = (
    "🤔 I couldn't identify any work tasks from your message.\n\n"
    "Try saying something like:\n"
    '• "I planted 5 trees today"\n'
    '• "Removed 10kg of weeds"'
)
SESSION_EXPIRED_TEXT = "Session expired or invalid. Please submit your work again."


def _describe_task(task: ParsedTask) -> str:
    if task.count:
        return f"• {task.type.value}: {task.count} {task.species}"
    if task.amount:
        return f"• {task.type.value}: {task.amount:g}{task.unit or ''} {task.species}"
    return f"• {task.type.value}: {task.species}"


def _confirmation(work: ParsedWork, prefix: str = "") -> HandlerResult:
    summary = "\n".join(_describe_task(t) for t in work.tasks)
    return reply(
        f"{prefix}📋 *Confirm your submission:*\n\n"
        f"*Tasks:*\n{summary}\n\n"
        f"*Notes:* {work.notes}\n"
        f"*Date:* {work.date}",
        markdown=True,
        buttons=[
            ResponseButton(label="✅ Submit", callback_data="confirm_submission"),
            ResponseButton(label="❌ Cancel", callback_data="cancel_submission"),
        ],
        set_session=SessionUpdate(step=SessionStep.CONFIRMING_WORK, draft=work),
    )


async def handle_text_submission(
    message: InboundMessage, user: User, deps: HandlerDeps, text: str
) -> HandlerResult:
    work = await deps.ai.parse_work_text(text, message.locale)
    if not work.tasks:
        return reply(NO_TASKS_TEXT)
    return _confirmation(work)


async def handle_voice_submission(
    message: InboundMessage, user: User, deps: HandlerDeps, transcript: str
) -> HandlerResult:
    work = await deps.ai.parse_work_text(transcript, message.locale)
    heard = f'📝 I heard: "{transcript}"\n\n'
    if not work.tasks:
        return reply(heard + NO_TASKS_VOICE_TEXT)
    return _confirmation(work, prefix=heard)


def build_work_draft(work: ParsedWork) -> WorkDraft:
    return WorkDraft(
        action_uid=DEFAULT_ACTION_UID,
        title=DEFAULT_TITLE,
        plant_selection=[t.species for t in work.tasks if t.species],
        plant_count=sum((t.count or t.amount or 0) for t in work.tasks),
        feedback=work.notes,
        media=[],
    )


async def handle_confirm_submission(
    message: InboundMessage,
    user: User,
    session: Optional[Session],
    deps: HandlerDeps,
) -> HandlerResult:
    work = session.draft if session is not None else None
    if (
        session is None
        or session.step != SessionStep.CONFIRMING_WORK
        or not isinstance(work, ParsedWork)
        or not work.tasks
        or not user.current_garden
    ):
        return reply(SESSION_EXPIRED_TEXT, clear_session=True)

    pending = PendingWork(
        id=deps.generate_id(),
        action_uid=DEFAULT_ACTION_UID,
        gardener_address=user.address,
        gardener_platform=message.platform,
        gardener_platform_id=message.sender.platform_id,
        garden_address=user.current_garden,
        data=build_work_draft(work),
    )
    deps.storage.add_pending_work(pending)
    logger.info(
        "work_submitted",
        work_id=pending.id,
        garden=pending.garden_address,
        platform=message.platform.value,
        platform_id=message.sender.platform_id,
    )

    operator = deps.storage.get_operator_for_garden(user.current_garden)
    if operator is not None:
        await notify_quietly(
            deps.notifier,
            operator.platform,
            operator.platform_id,
            "🔔 *New Work Submission*\n\n"
            f"From: `{format_address(user.address)}`\n"
            f"ID: `{pending.id}`\n\n"
            f"{work.notes}\n\n"
            f"Reply with `/approve {pending.id}` to approve.",
        )

    return reply(
        "✅ *Work submitted for approval!*\n\n"
        f"ID: `{pending.id}`\n\n"
        "An operator will review your submission soon.",
        markdown=True,
        clear_session=True,
    )


async def handle_cancel_submission(message: InboundMessage, deps: HandlerDeps) -> HandlerResult:
    return reply("❌ Submission cancelled.", clear_session=True)
