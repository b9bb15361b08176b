from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS agent_user (
        platform TEXT NOT NULL,
        platform_id TEXT NOT NULL,
        private_key TEXT NOT NULL,
        address TEXT NOT NULL,
        current_garden TEXT,
        role TEXT NOT NULL DEFAULT 'gardener',
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        PRIMARY KEY (platform, platform_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_session (
        platform TEXT NOT NULL,
        platform_id TEXT NOT NULL,
        step TEXT NOT NULL DEFAULT 'idle',
        draft JSONB,
        updated_at TIMESTAMP NOT NULL DEFAULT now(),
        PRIMARY KEY (platform, platform_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_work (
        id TEXT PRIMARY KEY,
        seq BIGSERIAL,
        action_uid BIGINT NOT NULL,
        gardener_address TEXT NOT NULL,
        gardener_platform TEXT NOT NULL,
        gardener_platform_id TEXT NOT NULL,
        garden_address TEXT NOT NULL,
        data JSONB NOT NULL,
        created_at TIMESTAMP NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_pending_work_garden ON pending_work (lower(garden_address))",
    "CREATE INDEX IF NOT EXISTS idx_agent_user_operator ON agent_user (role, lower(current_garden))",
)


class PostgresStore:
    """Postgres-backed user, session and pending work tables."""

    def __init__(self, dsn: str, *, vault: CredentialVault) -> None:
        self.dsn = dsn
        self.vault = vault
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the agent tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _json_value(raw: Any) -> Optional[dict]:
        if raw is None:
            return None
        if isinstance(raw, (bytes, str)):
            return json.loads(raw)
        return raw

    # -- users -------------------------------------------------------------

    def _user_from_row(self, row: dict, private_key: str) -> User:
        return User(
            platform=Platform(row["platform"]),
            platform_id=row["platform_id"],
            private_key=private_key,
            address=row["address"],
            current_garden=row.get("current_garden"),
            role=UserRole(row.get("role") or UserRole.GARDENER.value),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    def _decrypt_row(self, row: dict) -> User:
        stored = row["private_key"]
        result = self.vault.migrate_if_needed(stored)
        if result.needs_migration:
            if not is_valid_private_key(result.plaintext):
                raise DecryptionError(
                    "stored key is neither an envelope nor a valid private key",
                    detail={"platform": row["platform"], "platform_id": row["platform_id"]},
                )
            envelope = self.vault.encrypt(result.plaintext)
            with self._connect() as conn:
                conn.execute(
                    "UPDATE agent_user SET private_key = %s WHERE platform = %s AND platform_id = %s",
                    (envelope, row["platform"], row["platform_id"]),
                )
            self.logger.info(
                "legacy_key_migrated",
                platform=row["platform"],
                platform_id=row["platform_id"],
            )
        return self._user_from_row(row, result.plaintext)

    def get_user(self, platform: Platform | str, platform_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM agent_user WHERE platform = %s AND platform_id = %s",
                (Platform(platform).value, str(platform_id)),
            ).fetchone()
        if not row:
            return None
        return self._decrypt_row(row)

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
        now = datetime.utcnow()
        platform_value = Platform(platform).value
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO agent_user (platform, platform_id, private_key, address, current_garden, role, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        platform_value,
                        str(platform_id),
                        self.vault.encrypt(private_key),
                        address,
                        current_garden,
                        UserRole(role).value,
                        now,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "user already exists",
                {"platform": platform_value, "platform_id": str(platform_id)},
            )
        return User(
            platform=Platform(platform_value),
            platform_id=str(platform_id),
            private_key=private_key,
            address=address,
            current_garden=current_garden,
            role=UserRole(role),
            created_at=now,
        )

    def update_user(
        self,
        platform: Platform | str,
        platform_id: str,
        *,
        current_garden: Optional[str] = None,
        role: Optional[UserRole] = None,
    ) -> Optional[User]:
        assignments: List[str] = []
        params: List[Any] = []
        if current_garden is not None:
            assignments.append("current_garden = %s")
            params.append(current_garden)
        if role is not None:
            assignments.append("role = %s")
            params.append(UserRole(role).value)
        if assignments:
            params.extend([Platform(platform).value, str(platform_id)])
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE agent_user SET {', '.join(assignments)} WHERE platform = %s AND platform_id = %s",
                    params,
                )
        return self.get_user(platform, platform_id)

    def get_operator_for_garden(self, garden_address: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM agent_user
                WHERE role = %s AND lower(current_garden) = lower(%s)
                ORDER BY created_at
                LIMIT 1
                """,
                (UserRole.OPERATOR.value, garden_address),
            ).fetchone()
        if not row:
            return None
        return self._decrypt_row(row)

    # -- sessions ----------------------------------------------------------

    def get_session(self, platform: Platform | str, platform_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM agent_session WHERE platform = %s AND platform_id = %s",
                (Platform(platform).value, str(platform_id)),
            ).fetchone()
        if not row:
            return None
        step = SessionStep(row["step"])
        return Session(
            platform=Platform(row["platform"]),
            platform_id=row["platform_id"],
            step=step,
            draft=Session.draft_from_dict(step, self._json_value(row.get("draft"))),
            updated_at=row["updated_at"],
        )

    def set_session(self, session: Session) -> Session:
        draft = session.draft_to_dict()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO agent_session (platform, platform_id, step, draft, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (platform, platform_id)
                DO UPDATE SET step = EXCLUDED.step, draft = EXCLUDED.draft, updated_at = EXCLUDED.updated_at
                """,
                (
                    session.platform.value,
                    session.platform_id,
                    session.step.value,
                    json.dumps(draft) if draft is not None else None,
                    session.updated_at,
                ),
            )
        return session

    def clear_session(self, platform: Platform | str, platform_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM agent_session WHERE platform = %s AND platform_id = %s",
                (Platform(platform).value, str(platform_id)),
            )

    # -- pending work ------------------------------------------------------

    def _work_from_row(self, row: dict) -> PendingWork:
        return PendingWork(
            id=row["id"],
            action_uid=int(row["action_uid"]),
            gardener_address=row["gardener_address"],
            gardener_platform=Platform(row["gardener_platform"]),
            gardener_platform_id=row["gardener_platform_id"],
            garden_address=row["garden_address"],
            data=WorkDraft.from_dict(self._json_value(row.get("data")) or {}),
            created_at=row["created_at"],
        )

    def add_pending_work(self, work: PendingWork) -> PendingWork:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO pending_work (id, action_uid, gardener_address, gardener_platform,
                        gardener_platform_id, garden_address, data, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        work.id,
                        work.action_uid,
                        work.gardener_address,
                        work.gardener_platform.value,
                        work.gardener_platform_id,
                        work.garden_address,
                        json.dumps(work.data.to_dict()),
                        work.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("pending work id already exists", {"id": work.id})
        return work

    def get_pending_work(self, work_id: str) -> Optional[PendingWork]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_work WHERE id = %s", (work_id,)
            ).fetchone()
        return self._work_from_row(row) if row else None

    def get_pending_works_for_garden(self, garden_address: str) -> List[PendingWork]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM pending_work
                WHERE lower(garden_address) = lower(%s)
                ORDER BY created_at DESC, seq DESC
                """,
                (garden_address,),
            ).fetchall()
        return [self._work_from_row(row) for row in rows]

    def remove_pending_work(self, work_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM pending_work WHERE id = %s", (work_id,))
            return bool(cur.rowcount)

    def close(self) -> None:
        self.pool.close()
