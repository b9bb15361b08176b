from __future__ import annotations

from fastapi import APIRouter

from greenagent.api.schemas import Envelope
from greenagent.contracts import InboundMessage
from greenagent.logging import get_logger
from greenagent.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@router.post("/messages", response_model=Envelope, tags=["messages"])
async def handle_message(body: InboundMessage):
    """Process one inbound platform message and return the reply to send.

    Transport adapters translate their platform update into an
    ``InboundMessage`` and deliver the returned ``OutboundResponse``.
    """
    runtime = get_runtime()
    response = await runtime.orchestrator.handle(body)
    logger.info(
        "message_handled",
        platform=body.platform.value,
        content_type=body.content.type,
        has_buttons=bool(response.buttons),
    )
    return Envelope(status="ok", data=response.model_dump(exclude_none=True))
