"""Operator review of pending work: /pending, /approve, /reject.

A pending record is removed only after the ledger calls it depends on have
succeeded, so a failed attestation leaves the item available for retry.
Notifications to the gardener are best-effort and never undo a disposition.
A work id is claimed for the whole approve/reject, so two operators of the
same garden cannot attest the same record twice.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from greenagent.contracts import HandlerResult, InboundMessage, reply
from greenagent.logging import get_logger
from greenagent.service.errors import PermissionDeniedError, PreconditionError
from greenagent.service.ledger import verify_operator
from greenagent.service.notifier import notify_quietly
from greenagent.service.ports import HandlerDeps, SubmitApprovalParams, SubmitWorkParams
from greenagent.service.wallet import format_address
from greenagent.storage.models import PendingWork, User

logger = get_logger(__name__)

APPROVE_USAGE = "📍 *Usage:* `/approve <WorkID>`\n\nExample: `/approve abc123`"
REJECT_USAGE = (
    "📍 *Usage:* `/reject <WorkID> [reason]`\n\n"
    "Example: `/reject abc123 Insufficient documentation`"
)
NOT_FOUND_TEXT = "❌ Work not found or already processed."
NO_GARDEN_TEXT = "❌ Cannot determine garden for this work."
DEFAULT_REJECT_REASON = "No reason provided"
IN_PROGRESS_TEXT = "⏳ Work {work_id} is already being processed by another operator."


def _permission_denied(reason: Optional[str], verb: str) -> PermissionDeniedError:
    return PermissionDeniedError(
        f"❌ *Permission Denied*\n\n{reason}\n\n"
        f"Only registered operators can {verb} work for this garden.",
        detail={"parse_mode": "markdown"},
    )


async def handle_pending(
    message: InboundMessage, user: User, deps: HandlerDeps
) -> HandlerResult:
    if not user.is_operator:
        raise PermissionDeniedError("This command is only available for operators.")
    if not user.current_garden:
        raise PreconditionError(
            "Please join a garden first with `/join <GardenAddress>`",
            detail={"parse_mode": "markdown"},
        )

    works = deps.storage.get_pending_works_for_garden(user.current_garden)
    if not works:
        return reply("No pending work submissions for your garden.")

    page_size = deps.pending_page_size
    lines = ["📋 *Pending Work Submissions*\n"]
    for work in works[:page_size]:
        plants = ", ".join(work.data.plant_selection)
        lines.append(
            f"*ID:* `{work.id}`\n"
            f"Gardener: `{format_address(work.gardener_address)}`\n"
            f"Title: {work.data.title}\n"
            f"Plants: {work.data.plant_count:g} ({plants})\n"
        )
    if len(works) > page_size:
        lines.append(f"_...and {len(works) - page_size} more_\n")
    lines.append("Use `/approve <id>` or `/reject <id>` to process.")
    return reply("\n".join(lines), markdown=True)


def _resolve_garden(work: PendingWork, user: User) -> Optional[str]:
    return work.garden_address or user.current_garden


@contextmanager
def _claim(deps: HandlerDeps, work_id: str) -> Iterator[bool]:
    """Hold ``work_id`` for the duration of one approve/reject.

    The check and the add happen with no await in between, so two operators
    racing on the same id cannot both get past this point.
    """
    if work_id in deps.claimed_work:
        yield False
        return
    deps.claimed_work.add(work_id)
    try:
        yield True
    finally:
        deps.claimed_work.discard(work_id)


async def handle_approve(
    message: InboundMessage, user: User, deps: HandlerDeps, args: list[str]
) -> HandlerResult:
    if not args:
        return reply(APPROVE_USAGE, markdown=True)
    work_id = args[0]

    with _claim(deps, work_id) as claimed:
        if not claimed:
            logger.info("work_already_claimed", work_id=work_id, action="approve")
            return reply(IN_PROGRESS_TEXT.format(work_id=work_id))
        return await _approve(message, user, deps, work_id)


async def _approve(
    message: InboundMessage, user: User, deps: HandlerDeps, work_id: str
) -> HandlerResult:
    work = deps.storage.get_pending_work(work_id)
    if work is None:
        return reply(NOT_FOUND_TEXT)
    garden = _resolve_garden(work, user)
    if not garden:
        return reply(NO_GARDEN_TEXT)

    verification = await verify_operator(deps.ledger, garden, user.address)
    if not verification.verified:
        logger.warning(
            "approval_denied", work_id=work_id, garden=garden, reason=verification.reason
        )
        raise _permission_denied(verification.reason, "approve")

    try:
        tx_hash = await deps.ledger.submit_work(
            SubmitWorkParams(
                private_key=user.private_key,
                garden_address=garden,
                action_uid=work.action_uid,
                action_title=f"{message.platform.value.title()} Action",
                work=work.data,
                media=list(work.data.media),
            )
        )
        if getattr(deps.ledger, "supports_approval_attestation", False):
            await deps.ledger.submit_approval(
                SubmitApprovalParams(
                    private_key=user.private_key,
                    garden_address=garden,
                    work_uid=tx_hash,
                    action_uid=work.action_uid,
                    gardener_address=work.gardener_address,
                    approved=True,
                    feedback=work.data.feedback,
                )
            )
    except Exception as exc:
        # Record stays queued; a retry after a partial success may surface a
        # duplicate-attestation error from the ledger
        logger.error(
            "approval_ledger_failed",
            work_id=work_id,
            garden=garden,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return reply(
            f"❌ Error approving: {exc}\n\n"
            "If this work was already attested, check the ledger before retrying."
        )

    if not deps.storage.remove_pending_work(work_id):
        # Attested on chain, but another process already cleared the record
        logger.warning(
            "pending_work_already_removed", work_id=work_id, garden=garden, tx_hash=tx_hash
        )
    logger.info("work_approved", work_id=work_id, garden=garden, tx_hash=tx_hash)

    await notify_quietly(
        deps.notifier,
        work.gardener_platform,
        work.gardener_platform_id,
        "🎉 *Your work has been approved!*\n\n"
        f"ID: `{work_id}`\n"
        f"Tx: `{tx_hash}`",
    )
    return reply(f"✅ *Work approved and attested!*\n\nTx: `{tx_hash}`", markdown=True)


async def handle_reject(
    message: InboundMessage, user: User, deps: HandlerDeps, args: list[str]
) -> HandlerResult:
    if not args:
        return reply(REJECT_USAGE, markdown=True)
    work_id = args[0]
    reason = " ".join(args[1:]).strip() or DEFAULT_REJECT_REASON

    with _claim(deps, work_id) as claimed:
        if not claimed:
            logger.info("work_already_claimed", work_id=work_id, action="reject")
            return reply(IN_PROGRESS_TEXT.format(work_id=work_id))
        return await _reject(user, deps, work_id, reason)


async def _reject(user: User, deps: HandlerDeps, work_id: str, reason: str) -> HandlerResult:
    work = deps.storage.get_pending_work(work_id)
    if work is None:
        return reply(NOT_FOUND_TEXT)
    garden = _resolve_garden(work, user)
    if not garden:
        return reply(NO_GARDEN_TEXT)

    verification = await verify_operator(deps.ledger, garden, user.address)
    if not verification.verified:
        logger.warning(
            "rejection_denied", work_id=work_id, garden=garden, reason=verification.reason
        )
        raise _permission_denied(verification.reason, "reject")

    if not deps.storage.remove_pending_work(work_id):
        # Processed by another instance between lookup and removal
        return reply(NOT_FOUND_TEXT)
    logger.info("work_rejected", work_id=work_id, garden=garden)

    await notify_quietly(
        deps.notifier,
        work.gardener_platform,
        work.gardener_platform_id,
        "❌ *Your work has been rejected*\n\n"
        f"ID: `{work_id}`\n"
        f"Reason: {reason}\n\n"
        "Please try again with more details or photos.",
    )
    return reply(f"❌ Work {work_id} rejected.\n\nReason: {reason}")
