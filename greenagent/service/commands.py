"""Account and garden commands: /start, /help, /join, /status."""

from __future__ import annotations

import inspect
from typing import Optional

from greenagent.config import ActionClass
from greenagent.contracts import HandlerResult, InboundMessage, reply
from greenagent.logging import get_logger
from greenagent.service.errors import ValidationError
from greenagent.service.ledger import verify_operator
from greenagent.service.ports import HandlerDeps
from greenagent.service.rate_limit import limiter_key
from greenagent.service.wallet import (
    derive_address,
    format_address,
    generate_private_key,
    is_valid_address,
)
from greenagent.storage.errors import ConstraintViolation
from greenagent.storage.models import User, UserRole

logger = get_logger(__name__)

JOIN_USAGE = "📍 *Usage:* `/join <GardenAddress>`\n\nExample: `/join 0x1234...abcd`"
INVALID_ADDRESS = (
    "❌ Invalid address format.\n\n"
    "Please provide a valid Ethereum address (0x followed by 40 hex characters)."
)
GARDEN_NOT_FOUND = (
    "❌ *Garden not found*\n\n"
    "This address doesn't appear to be a valid Green Goods garden contract.\n\n"
    "Please verify the address and try again."
)


def _garden_label(user: User) -> str:
    return f"`{format_address(user.current_garden)}`" if user.current_garden else "_Not joined_"


async def handle_start(
    message: InboundMessage, user: Optional[User], deps: HandlerDeps
) -> HandlerResult:
    if user is not None:
        return reply(
            "🌿 *Welcome back!*\n\n"
            f"Wallet: `{format_address(user.address)}`\n"
            f"Garden: {_garden_label(user)}\n\n"
            "_Send me a message to submit work or use /help for commands._",
            markdown=True,
        )

    private_key = generate_private_key()
    address = derive_address(private_key)
    try:
        user = deps.storage.create_user(
            message.platform, message.sender.platform_id, private_key, address
        )
    except ConstraintViolation:
        # Another message from the same sender created the account first
        existing = deps.storage.get_user(message.platform, message.sender.platform_id)
        if existing is None:
            raise
        return await handle_start(message, existing, deps)

    logger.info(
        "wallet_created",
        platform=message.platform.value,
        platform_id=message.sender.platform_id,
        address=address,
    )
    return reply(
        "🌿 *Welcome to Green Goods!*\n\n"
        f"I've created a wallet for you:\n`{user.address}`\n\n"
        "*Commands:*\n"
        "/join <address> - Join a garden\n"
        "/status - Check your current status\n"
        "/help - Show all commands\n\n"
        "_Send me a text or voice message to submit work!_",
        markdown=True,
    )


async def handle_help(
    message: InboundMessage, user: Optional[User], deps: HandlerDeps
) -> HandlerResult:
    text = (
        "🌿 *Green Goods Bot Help*\n\n"
        "*Basic Commands:*\n"
        "/start - Create wallet & get started\n"
        "/join <address> - Join a garden\n"
        "/status - Check your current status\n\n"
        "*Submitting Work:*\n"
        "Simply send a text or voice message describing your work!\n"
        'Example: "I planted 5 trees today"\n\n'
    )
    if user is not None and user.is_operator:
        text += (
            "*Operator Commands:*\n"
            "/approve <id> - Approve a work submission\n"
            "/reject <id> [reason] - Reject a work submission\n"
            "/pending - List pending work for your garden\n\n"
        )
    text += "_Need help? Contact @GreenGoodsSupport_"
    return reply(text, markdown=True)


async def handle_join(
    message: InboundMessage, user: User, deps: HandlerDeps, args: list[str]
) -> HandlerResult:
    if not args:
        return reply(JOIN_USAGE, markdown=True)
    garden_address = args[0]
    if not is_valid_address(garden_address):
        raise ValidationError(INVALID_ADDRESS, detail={"garden": garden_address})

    try:
        garden = await deps.ledger.get_garden_info(garden_address)
    except Exception as exc:
        logger.warning("garden_lookup_failed", garden=garden_address, error=str(exc))
        return reply(f"❌ Could not verify the garden right now.\n\nError: {exc}\n\nPlease try again.")
    if garden is None or not garden.exists:
        return reply(GARDEN_NOT_FOUND, markdown=True)

    # Role follows on-ledger membership; any verification failure leaves a gardener
    verification = await verify_operator(deps.ledger, garden_address, user.address)
    role = UserRole.OPERATOR if verification.verified else UserRole.GARDENER
    deps.storage.update_user(
        message.platform,
        message.sender.platform_id,
        current_garden=garden_address,
        role=role,
    )
    logger.info(
        "garden_joined",
        platform=message.platform.value,
        platform_id=message.sender.platform_id,
        garden=garden_address,
        role=role.value,
    )
    name = f"*{garden.name}*" if garden.name else ""
    return reply(
        "✅ *Joined garden successfully!*\n\n"
        f"Garden: {name}\n"
        f"Address: `{format_address(garden_address)}`\n\n"
        "You can now submit work by sending me a text or voice message.",
        markdown=True,
    )


async def handle_status(
    message: InboundMessage, user: User, deps: HandlerDeps
) -> HandlerResult:
    session = deps.storage.get_session(message.platform, message.sender.platform_id)
    quota = deps.rate_limiter.peek(
        limiter_key(message.platform, message.sender.platform_id), ActionClass.SUBMISSION
    )
    if inspect.isawaitable(quota):
        quota = await quota
    step = session.step.value if session is not None else "idle"
    return reply(
        "📊 *Your Status*\n\n"
        f"*Wallet:* `{user.address}`\n"
        f"*Role:* {user.role.value}\n"
        f"*Garden:* {_garden_label(user)}\n"
        f"*Session:* {step}\n"
        f"*Submissions remaining:* {quota.remaining}/{quota.limit}",
        markdown=True,
    )
