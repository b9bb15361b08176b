from __future__ import annotations

import asyncio
import inspect
from datetime import datetime
from typing import Dict, Optional, Tuple

from greenagent.config import ActionClass
from greenagent.contracts import (
    CallbackAction,
    CallbackContent,
    Command,
    CommandContent,
    HandlerResult,
    InboundMessage,
    OutboundResponse,
    TextContent,
    VoiceContent,
    reply,
)
from greenagent.logging import bind_sender, get_logger, set_correlation_id
from greenagent.service import approval, commands, submission
from greenagent.service.errors import (
    CollaboratorError,
    PermissionDeniedError,
    PreconditionError,
    RateLimitedError,
    ValidationError,
)
from greenagent.service.ports import HandlerDeps, Transcriber
from greenagent.service.rate_limit import limiter_key, rate_limited_text
from greenagent.storage.models import Session, User

logger = get_logger(__name__)

NEED_START_TEXT = "Please run /start first to create your wallet."
NEED_GARDEN_TEXT = "Please join a garden first with `/join <GardenAddress>`"
CALLBACK_NO_USER_TEXT = "Session expired. Please start again with /start"
CALLBACK_NO_SESSION_TEXT = "Session expired. Please submit your work again."
UNSUPPORTED_TEXT = "❌ Unsupported message type."
VOICE_UNAVAILABLE_TEXT = "Voice processing is not available. Please send a text message instead."
GENERIC_ERROR_TEXT = "❌ Sorry, I couldn't process that message. Please try again."

RETRY_HINT_TEXT = "This is usually temporary. Please try again in a moment."

# Errors whose message is written for the end user
_USER_FACING_ERRORS = (ValidationError, PreconditionError, PermissionDeniedError, RateLimitedError)


def generic_error_text(exc: Exception) -> str:
    return f"{GENERIC_ERROR_TEXT}\n\nError: {exc}"


def collaborator_error_text(exc: CollaboratorError) -> str:
    text = f"❌ {exc.message}"
    if exc.retryable:
        text += f"\n\n{RETRY_HINT_TEXT}"
    return text


class Orchestrator:
    """Single entry point turning an inbound message into a response.

    ``handle`` never raises: user-facing service errors become their message,
    collaborator failures get a retry hint, and anything else becomes a
    generic apology that quotes the error. Messages from the same user are
    processed one at a time.
    """

    def __init__(self, deps: HandlerDeps, *, transcriber: Optional[Transcriber] = None) -> None:
        self.deps = deps
        self.transcriber = transcriber
        self._user_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_waiters: Dict[Tuple[str, str], int] = {}

    async def handle(self, message: InboundMessage) -> OutboundResponse:
        set_correlation_id(message.id)
        key = (message.platform.value, message.sender.platform_id)
        lock = self._user_locks.setdefault(key, asyncio.Lock())
        self._lock_waiters[key] = self._lock_waiters.get(key, 0) + 1
        try:
            async with lock:
                with bind_sender(*key):
                    return await self._handle_safely(message)
        finally:
            self._lock_waiters[key] -= 1
            if self._lock_waiters[key] == 0:
                # Nobody else queued for this user; drop the lock
                del self._lock_waiters[key]
                self._user_locks.pop(key, None)

    async def _handle_safely(self, message: InboundMessage) -> OutboundResponse:
        try:
            result = await self._dispatch(message)
        except _USER_FACING_ERRORS as exc:
            logger.info("message_rejected", error_code=exc.error_code)
            return OutboundResponse(text=exc.message, parse_mode=exc.detail.get("parse_mode"))
        except CollaboratorError as exc:
            logger.warning(
                "collaborator_failed",
                content_type=message.content.type,
                retryable=exc.retryable,
                error=exc.message,
            )
            return OutboundResponse(text=collaborator_error_text(exc))
        except Exception as exc:
            logger.exception(
                "message_handling_failed",
                content_type=message.content.type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return OutboundResponse(text=generic_error_text(exc))
        try:
            self._apply_session_mutation(message, result)
        except Exception as exc:
            logger.exception(
                "session_update_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return OutboundResponse(text=generic_error_text(exc))
        return result.response

    async def _dispatch(self, message: InboundMessage) -> HandlerResult:
        content = message.content
        if not isinstance(content, (CommandContent, TextContent, VoiceContent, CallbackContent)):
            return reply(UNSUPPORTED_TEXT)
        user = self.deps.storage.get_user(message.platform, message.sender.platform_id)
        if isinstance(content, CommandContent):
            return await self._handle_command(message, user, content)
        if isinstance(content, TextContent):
            return await self._handle_text(message, user, content)
        if isinstance(content, VoiceContent):
            return await self._handle_voice(message, user, content)
        return await self._handle_callback(message, user, content)

    async def _consume(self, message: InboundMessage, action: ActionClass) -> None:
        """Take one token of ``action`` or raise ``RateLimitedError``."""
        result = self.deps.rate_limiter.check(
            limiter_key(message.platform, message.sender.platform_id), action
        )
        if inspect.isawaitable(result):
            result = await result
        if result.allowed:
            return
        raise RateLimitedError(
            rate_limited_text(self.deps.rate_limiter.config_for(action).message, result.reset_in_ms),
            reset_in_ms=result.reset_in_ms,
            detail={"action": action.value},
        )

    async def _handle_command(
        self, message: InboundMessage, user: Optional[User], content: CommandContent
    ) -> HandlerResult:
        command = Command.parse(content.name)
        args = [a for a in content.args if a]

        if command is Command.HELP:
            return await commands.handle_help(message, user, self.deps)
        if command is Command.START:
            await self._consume(message, ActionClass.WALLET)
            return await commands.handle_start(message, user, self.deps)
        if command is Command.UNKNOWN:
            return reply(f"Unknown command: /{content.name.lstrip('/')}")

        if user is None:
            raise PreconditionError(NEED_START_TEXT)
        await self._consume(message, ActionClass.COMMAND)

        if command is Command.JOIN:
            return await commands.handle_join(message, user, self.deps, args)
        if command is Command.STATUS:
            return await commands.handle_status(message, user, self.deps)
        if command is Command.PENDING:
            return await approval.handle_pending(message, user, self.deps)

        await self._consume(message, ActionClass.APPROVAL)
        if command is Command.APPROVE:
            return await approval.handle_approve(message, user, self.deps, args)
        return await approval.handle_reject(message, user, self.deps, args)

    @staticmethod
    def _require_gardener(user: Optional[User]) -> User:
        if user is None:
            raise PreconditionError(NEED_START_TEXT)
        if not user.current_garden:
            raise PreconditionError(NEED_GARDEN_TEXT, detail={"parse_mode": "markdown"})
        return user

    async def _handle_text(
        self, message: InboundMessage, user: Optional[User], content: TextContent
    ) -> HandlerResult:
        user = self._require_gardener(user)
        await self._consume(message, ActionClass.MESSAGE)
        return await submission.handle_text_submission(message, user, self.deps, content.text)

    async def _handle_voice(
        self, message: InboundMessage, user: Optional[User], content: VoiceContent
    ) -> HandlerResult:
        user = self._require_gardener(user)
        await self._consume(message, ActionClass.VOICE)
        if self.transcriber is None:
            return reply(VOICE_UNAVAILABLE_TEXT)
        try:
            transcript = await self.transcriber.transcribe(
                content.audio_ref, mime_type=content.mime_type
            )
        except Exception as exc:
            logger.error(
                "voice_processing_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return reply(
                "❌ Sorry, I couldn't process that audio.\n\n"
                f"Error: {exc}\n\n"
                "Try sending a text message instead."
            )
        return await submission.handle_voice_submission(message, user, self.deps, transcript)

    async def _handle_callback(
        self, message: InboundMessage, user: Optional[User], content: CallbackContent
    ) -> HandlerResult:
        if user is None:
            raise PreconditionError(CALLBACK_NO_USER_TEXT)
        session = self.deps.storage.get_session(message.platform, message.sender.platform_id)
        action = CallbackAction.parse(content.data)

        if action is CallbackAction.CONFIRM_SUBMISSION:
            if session is None or session.is_idle:
                raise PreconditionError(CALLBACK_NO_SESSION_TEXT)
            await self._consume(message, ActionClass.SUBMISSION)
            return await submission.handle_confirm_submission(message, user, session, self.deps)
        if action is CallbackAction.CANCEL_SUBMISSION:
            return await submission.handle_cancel_submission(message, self.deps)
        return reply("Unknown action.")

    def _apply_session_mutation(self, message: InboundMessage, result: HandlerResult) -> None:
        platform, platform_id = message.platform, message.sender.platform_id
        if result.clear_session:
            self.deps.storage.clear_session(platform, platform_id)
        elif result.set_session is not None:
            self.deps.storage.set_session(
                Session(
                    platform=platform,
                    platform_id=platform_id,
                    step=result.set_session.step,
                    draft=result.set_session.draft,
                    updated_at=datetime.utcnow(),
                )
            )
