from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from greenagent.logging import get_logger
from greenagent.service.errors import DecryptionError
from greenagent.service.vault import CredentialVault
from greenagent.service.wallet import is_valid_address, is_valid_private_key
from greenagent.storage.errors import ConstraintViolation
from greenagent.storage.models import (
    PendingWork,
    Platform,
    Session,
    SessionStep,
    User,
    UserRole,
    WorkDraft,
)

UserKey = Tuple[str, str]


def _user_key(platform: Platform | str, platform_id: str) -> UserKey:
    return (Platform(platform).value, str(platform_id))


class MemoryStore:
    """Dict-backed store persisted as JSON under ``fs_root/state``.

    User rows hold the vault envelope; ``get_user`` hands out a copy with the
    decrypted key and re-encrypts legacy plaintext keys on first read.
    """

    def __init__(self, fs_root: str, *, vault: CredentialVault) -> None:
        self.logger = get_logger(__name__)
        self.vault = vault
        self.users: Dict[UserKey, User] = {}
        self.sessions: Dict[UserKey, Session] = {}
        self.pending_works: Dict[str, PendingWork] = {}
        # garden address (lowercase) -> ids of pending works in that garden
        self._garden_index: Dict[str, set[str]] = {}
        self._work_seq: Dict[str, int] = {}
        self._next_seq = 1
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "agent_store.json"

    # -- users -------------------------------------------------------------

    def get_user(self, platform: Platform | str, platform_id: str) -> Optional[User]:
        key = _user_key(platform, platform_id)
        with self._data_lock:
            record = self.users.get(key)
        if record is None:
            return None
        stored = record.private_key
        result = self.vault.migrate_if_needed(stored)
        if result.needs_migration:
            if not is_valid_private_key(result.plaintext):
                raise DecryptionError(
                    "stored key is neither an envelope nor a valid private key",
                    detail={"platform": key[0], "platform_id": key[1]},
                )
            envelope = self.vault.encrypt(result.plaintext)
            with self._data_lock:
                current = self.users.get(key)
                if current is not None:
                    self.users[key] = replace(current, private_key=envelope)
                    self._persist_state()
            self.logger.info(
                "legacy_key_migrated", platform=key[0], platform_id=key[1]
            )
        return replace(record, private_key=result.plaintext)

    def create_user(
        self,
        platform: Platform | str,
        platform_id: str,
        private_key: str,
        address: str,
        *,
        current_garden: Optional[str] = None,
        role: UserRole = UserRole.GARDENER,
    ) -> User:
        if not is_valid_private_key(private_key):
            raise ValueError("invalid private key format")
        if not is_valid_address(address):
            raise ValueError("invalid address format")
        key = _user_key(platform, platform_id)
        envelope = self.vault.encrypt(private_key)
        with self._data_lock:
            if key in self.users:
                raise ConstraintViolation(
                    "user already exists", {"platform": key[0], "platform_id": key[1]}
                )
            record = User(
                platform=Platform(key[0]),
                platform_id=key[1],
                private_key=envelope,
                address=address,
                current_garden=current_garden,
                role=UserRole(role),
            )
            self.users[key] = record
            self._persist_state()
        return replace(record, private_key=private_key)

    def update_user(
        self,
        platform: Platform | str,
        platform_id: str,
        *,
        current_garden: Optional[str] = None,
        role: Optional[UserRole] = None,
    ) -> Optional[User]:
        """Set ``current_garden`` and/or ``role``; ``None`` leaves a field as is."""
        key = _user_key(platform, platform_id)
        with self._data_lock:
            record = self.users.get(key)
            if record is None:
                return None
            if current_garden is not None:
                record = replace(record, current_garden=current_garden)
            if role is not None:
                record = replace(record, role=UserRole(role))
            self.users[key] = record
            self._persist_state()
        return self.get_user(platform, platform_id)

    def get_operator_for_garden(self, garden_address: str) -> Optional[User]:
        target = garden_address.lower()
        with self._data_lock:
            match = next(
                (
                    u
                    for u in self.users.values()
                    if u.role == UserRole.OPERATOR
                    and (u.current_garden or "").lower() == target
                ),
                None,
            )
        if match is None:
            return None
        return self.get_user(match.platform, match.platform_id)

    # -- sessions ----------------------------------------------------------

    def get_session(self, platform: Platform | str, platform_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(_user_key(platform, platform_id))

    def set_session(self, session: Session) -> Session:
        with self._data_lock:
            self.sessions[_user_key(session.platform, session.platform_id)] = session
            self._persist_state()
        return session

    def clear_session(self, platform: Platform | str, platform_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(_user_key(platform, platform_id), None) is not None:
                self._persist_state()

    # -- pending work ------------------------------------------------------

    def add_pending_work(self, work: PendingWork) -> PendingWork:
        with self._data_lock:
            if work.id in self.pending_works:
                raise ConstraintViolation("pending work id already exists", {"id": work.id})
            self._index_work(work)
            self._persist_state()
        return work

    def _index_work(self, work: PendingWork) -> None:
        self.pending_works[work.id] = work
        self._garden_index.setdefault(work.garden_address.lower(), set()).add(work.id)
        self._work_seq[work.id] = self._next_seq
        self._next_seq += 1

    def get_pending_work(self, work_id: str) -> Optional[PendingWork]:
        with self._data_lock:
            return self.pending_works.get(work_id)

    def get_pending_works_for_garden(self, garden_address: str) -> List[PendingWork]:
        with self._data_lock:
            ids = self._garden_index.get(garden_address.lower(), set())
            works = [self.pending_works[i] for i in ids]
            return sorted(
                works,
                key=lambda w: (w.created_at, self._work_seq.get(w.id, 0)),
                reverse=True,
            )

    def remove_pending_work(self, work_id: str) -> bool:
        with self._data_lock:
            work = self.pending_works.pop(work_id, None)
            if work is None:
                return False
            garden_key = work.garden_address.lower()
            ids = self._garden_index.get(garden_key)
            if ids is not None:
                ids.discard(work_id)
                if not ids:
                    self._garden_index.pop(garden_key, None)
            self._work_seq.pop(work_id, None)
            self._persist_state()
            return True

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    # -- persistence -------------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _persist_state(self) -> None:
        ordered_works = sorted(
            self.pending_works.values(), key=lambda w: self._work_seq.get(w.id, 0)
        )
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "pending_works": [self._serialize_pending_work(w) for w in ordered_works],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {}
        for row in data.get("users", []):
            user = self._deserialize_user(row)
            self.users[_user_key(user.platform, user.platform_id)] = user
        self.sessions = {}
        for row in data.get("sessions", []):
            session = self._deserialize_session(row)
            self.sessions[_user_key(session.platform, session.platform_id)] = session
        self.pending_works = {}
        self._garden_index = {}
        self._work_seq = {}
        self._next_seq = 1
        for row in data.get("pending_works", []):
            self._index_work(self._deserialize_pending_work(row))
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "platform": user.platform.value,
            "platform_id": user.platform_id,
            "private_key": user.private_key,
            "address": user.address,
            "current_garden": user.current_garden,
            "role": user.role.value,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            platform=Platform(data["platform"]),
            platform_id=str(data["platform_id"]),
            private_key=data["private_key"],
            address=data["address"],
            current_garden=data.get("current_garden"),
            role=UserRole(data.get("role", UserRole.GARDENER.value)),
            created_at=self._deserialize_datetime(
                data.get("created_at", datetime.utcnow().isoformat())
            ),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "platform": session.platform.value,
            "platform_id": session.platform_id,
            "step": session.step.value,
            "draft": session.draft_to_dict(),
            "updated_at": self._serialize_datetime(session.updated_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        step = SessionStep(data.get("step", SessionStep.IDLE.value))
        return Session(
            platform=Platform(data["platform"]),
            platform_id=str(data["platform_id"]),
            step=step,
            draft=Session.draft_from_dict(step, data.get("draft")),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_pending_work(self, work: PendingWork) -> dict:
        return {
            "id": work.id,
            "action_uid": work.action_uid,
            "gardener_address": work.gardener_address,
            "gardener_platform": work.gardener_platform.value,
            "gardener_platform_id": work.gardener_platform_id,
            "garden_address": work.garden_address,
            "data": work.data.to_dict(),
            "created_at": self._serialize_datetime(work.created_at),
        }

    def _deserialize_pending_work(self, data: dict) -> PendingWork:
        return PendingWork(
            id=data["id"],
            action_uid=int(data.get("action_uid", 0)),
            gardener_address=data["gardener_address"],
            gardener_platform=Platform(data["gardener_platform"]),
            gardener_platform_id=str(data["gardener_platform_id"]),
            garden_address=data["garden_address"],
            data=WorkDraft.from_dict(data.get("data") or {}),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
