from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class Platform(str, Enum):
    TELEGRAM = "telegram"
    DISCORD = "discord"
    WHATSAPP = "whatsapp"
    SMS = "sms"


class UserRole(str, Enum):
    GARDENER = "gardener"
    OPERATOR = "operator"


class SessionStep(str, Enum):
    """Conversation steps. Only ``idle`` and ``confirming_work`` are driven today."""

    IDLE = "idle"
    JOINING_GARDEN = "joining_garden"
    SUBMITTING_WORK = "submitting_work"
    CONFIRMING_WORK = "confirming_work"
    APPROVING_WORK = "approving_work"
    REJECTING_WORK = "rejecting_work"
    AWAITING_PHOTO = "awaiting_photo"
    AWAITING_DETAILS = "awaiting_details"


class TaskType(str, Enum):
    PLANTING = "planting"
    WEEDING = "weeding"
    MAINTENANCE = "maintenance"
    HARVESTING = "harvesting"
    OTHER = "other"


@dataclass
class ParsedTask:
    type: TaskType
    species: str
    count: Optional[int] = None
    amount: Optional[float] = None
    unit: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "species": self.species,
            "count": self.count,
            "amount": self.amount,
            "unit": self.unit,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParsedTask":
        return cls(
            type=TaskType(data.get("type", TaskType.OTHER.value)),
            species=data.get("species", ""),
            count=data.get("count"),
            amount=data.get("amount"),
            unit=data.get("unit"),
        )


@dataclass
class ParsedWork:
    """Structured work items extracted from a gardener's message."""

    tasks: List[ParsedTask]
    notes: str
    date: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "parsed_work",
            "tasks": [task.to_dict() for task in self.tasks],
            "notes": self.notes,
            "date": self.date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParsedWork":
        return cls(
            tasks=[ParsedTask.from_dict(t) for t in data.get("tasks", [])],
            notes=data.get("notes", ""),
            date=data.get("date", ""),
        )


@dataclass
class WorkDraft:
    """Payload carried by a pending work record until it is attested."""

    action_uid: int
    title: str
    plant_selection: List[str] = field(default_factory=list)
    plant_count: float = 0
    feedback: str = ""
    media: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_uid": self.action_uid,
            "title": self.title,
            "plant_selection": list(self.plant_selection),
            "plant_count": self.plant_count,
            "feedback": self.feedback,
            "media": list(self.media),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkDraft":
        return cls(
            action_uid=int(data.get("action_uid", 0)),
            title=data.get("title", ""),
            plant_selection=list(data.get("plant_selection") or []),
            plant_count=data.get("plant_count", 0),
            feedback=data.get("feedback", ""),
            media=list(data.get("media") or []),
        )


@dataclass
class User:
    platform: Platform
    platform_id: str
    private_key: str
    address: str
    current_garden: Optional[str] = None
    role: UserRole = UserRole.GARDENER
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_operator(self) -> bool:
        return self.role == UserRole.OPERATOR


# Draft payload type accepted for each step; steps not listed carry no draft.
DRAFT_SHAPES: Dict[SessionStep, type] = {
    SessionStep.CONFIRMING_WORK: ParsedWork,
}


@dataclass
class Session:
    platform: Platform
    platform_id: str
    step: SessionStep = SessionStep.IDLE
    draft: Optional[ParsedWork] = None
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self) -> None:
        shape = DRAFT_SHAPES.get(self.step)
        if self.draft is None:
            return
        if shape is None or not isinstance(self.draft, shape):
            raise ValueError(
                f"step {self.step.value!r} does not accept a {type(self.draft).__name__} draft"
            )

    @classmethod
    def idle(cls, platform: Platform, platform_id: str) -> "Session":
        return cls(platform=platform, platform_id=platform_id)

    @property
    def is_idle(self) -> bool:
        return self.step == SessionStep.IDLE and self.draft is None

    def draft_to_dict(self) -> Optional[Dict[str, Any]]:
        return self.draft.to_dict() if self.draft is not None else None

    @staticmethod
    def draft_from_dict(step: SessionStep, data: Optional[Dict[str, Any]]) -> Optional[ParsedWork]:
        if not data:
            return None
        shape = DRAFT_SHAPES.get(step)
        if shape is None:
            # Draft left over from a step that no longer carries one
            return None
        return shape.from_dict(data)


@dataclass
class PendingWork:
    id: str
    action_uid: int
    gardener_address: str
    gardener_platform: Platform
    gardener_platform_id: str
    garden_address: str
    data: WorkDraft
    created_at: datetime = field(default_factory=datetime.utcnow)
