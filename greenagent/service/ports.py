"""Interfaces the orchestration core consumes, plus the values crossing them."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Set, Union

from greenagent.config import ActionClass
from greenagent.storage.models import (
    ParsedWork,
    PendingWork,
    Platform,
    Session,
    User,
    UserRole,
    WorkDraft,
)


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    reason: Optional[str] = None
    cached_at: Optional[float] = None


@dataclass(frozen=True)
class GardenInfo:
    exists: bool
    address: str
    name: Optional[str] = None


@dataclass(frozen=True)
class SubmitWorkParams:
    private_key: str
    garden_address: str
    action_uid: int
    action_title: str
    work: WorkDraft
    media: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SubmitApprovalParams:
    private_key: str
    garden_address: str
    work_uid: str
    action_uid: int
    gardener_address: str
    approved: bool = True
    feedback: str = ""


class StoragePort(Protocol):
    def get_user(self, platform: Platform, platform_id: str) -> Optional[User]: ...

    def create_user(
        self,
        platform: Platform,
        platform_id: str,
        private_key: str,
        address: str,
        *,
        current_garden: Optional[str] = None,
        role: UserRole = UserRole.GARDENER,
    ) -> User: ...

    def update_user(
        self,
        platform: Platform,
        platform_id: str,
        *,
        current_garden: Optional[str] = None,
        role: Optional[UserRole] = None,
    ) -> Optional[User]: ...

    def get_operator_for_garden(self, garden_address: str) -> Optional[User]: ...

    def get_session(self, platform: Platform, platform_id: str) -> Optional[Session]: ...

    def set_session(self, session: Session) -> Session: ...

    def clear_session(self, platform: Platform, platform_id: str) -> None: ...

    def add_pending_work(self, work: PendingWork) -> PendingWork: ...

    def get_pending_work(self, work_id: str) -> Optional[PendingWork]: ...

    def get_pending_works_for_garden(self, garden_address: str) -> List[PendingWork]: ...

    def remove_pending_work(self, work_id: str) -> bool: ...

    def close(self) -> None: ...


class LedgerPort(Protocol):
    supports_approval_attestation: bool

    async def submit_work(self, params: SubmitWorkParams) -> str: ...

    async def submit_approval(self, params: SubmitApprovalParams) -> str: ...

    async def is_operator(self, garden_address: str, address: str) -> VerificationResult: ...

    async def is_gardener(self, garden_address: str, address: str) -> VerificationResult: ...

    async def get_garden_info(self, garden_address: str) -> Optional[GardenInfo]: ...

    def get_chain_id(self) -> int: ...

    def clear_cache(self) -> None: ...


class Transcriber(Protocol):
    async def transcribe(self, audio_ref: str, *, mime_type: Optional[str] = None) -> str: ...


class AIPort(Transcriber, Protocol):
    async def parse_work_text(self, text: str, locale: Optional[str] = None) -> ParsedWork: ...

    def is_model_loaded(self) -> bool: ...


class Notifier(Protocol):
    async def send(
        self,
        platform: Platform,
        platform_id: str,
        text: str,
        *,
        parse_mode: Optional[str] = None,
    ) -> None: ...


class RateLimiterPort(Protocol):
    """Sync (in-process) or async (Redis) limiter; callers await when needed."""

    def check(self, user_id: str, action: ActionClass, override=None) -> Union[object, Awaitable]: ...

    def peek(self, user_id: str, action: ActionClass) -> Union[object, Awaitable]: ...

    def config_for(self, action: ActionClass) -> object: ...


@dataclass
class HandlerDeps:
    """Collaborators handed to every command handler."""

    storage: StoragePort
    ledger: LedgerPort
    ai: AIPort
    rate_limiter: RateLimiterPort
    generate_id: Callable[[], str]
    notifier: Optional[Notifier] = None
    pending_page_size: int = 10
    # Work ids an operator is currently approving or rejecting
    claimed_work: Set[str] = field(default_factory=set)
