from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import DeliveryStatus, EmailCategory, NotificationDeliveryRecord

SNAPSHOT_KEY = "default"
MAX_DELIVERY_PAGE = 500


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlitePersistence:
    """
    Snapshot + delivery log storage. Uses SQLAlchemy and accepts SQLite or PostgreSQL URLs.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.state_snapshots = Table(
            "state_snapshots",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("payload_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.notification_deliveries = Table(
            "notification_deliveries",
            self.metadata,
            Column("id", String(255), primary_key=True),
            Column("user_id", String(120), nullable=True),
            Column("category", String(50), nullable=False),
            Column("event_type", String(80), nullable=False),
            Column("recipients_json", Text, nullable=False),
            Column("subject", String(300), nullable=False),
            Column("status", String(20), nullable=False),
            Column("reason", Text, nullable=True),
            Column("message_id", String(255), nullable=True),
            Column("application_id", String(120), nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def save_snapshot(self, payload: dict) -> None:
        with self._lock:
            serialized = json.dumps(payload)
            now = datetime.utcnow()
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.state_snapshots.c.id).where(
                        self.state_snapshots.c.id == SNAPSHOT_KEY
                    )
                ).first()
                if existing:
                    conn.execute(
                        self.state_snapshots.update()
                        .where(self.state_snapshots.c.id == SNAPSHOT_KEY)
                        .values(payload_json=serialized, updated_at_utc=now)
                    )
                else:
                    conn.execute(
                        self.state_snapshots.insert().values(
                            id=SNAPSHOT_KEY,
                            payload_json=serialized,
                            updated_at_utc=now,
                        )
                    )

    def load_snapshot(self) -> Optional[dict]:
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.state_snapshots.c.payload_json).where(
                        self.state_snapshots.c.id == SNAPSHOT_KEY
                    )
                ).first()
            if not row:
                return None
            return json.loads(row[0])

    def insert_delivery(self, record: NotificationDeliveryRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.notification_deliveries.insert().values(
                        id=record.id,
                        user_id=record.user_id,
                        category=record.category.value,
                        event_type=record.event_type,
                        recipients_json=json.dumps(record.recipients),
                        subject=record.subject,
                        status=record.status.value,
                        reason=record.reason,
                        message_id=record.message_id,
                        application_id=record.application_id,
                        created_at_utc=record.created_at_utc,
                    )
                )

    def list_deliveries(
        self,
        *,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[NotificationDeliveryRecord]:
        safe_limit = max(1, min(limit, MAX_DELIVERY_PAGE))
        table = self.notification_deliveries
        query = select(table).order_by(table.c.created_at_utc.desc()).limit(safe_limit)
        if user_id:
            query = query.where(table.c.user_id == user_id)
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()
        return [
            NotificationDeliveryRecord(
                id=row.id,
                user_id=row.user_id,
                category=EmailCategory(row.category),
                event_type=row.event_type,
                recipients=json.loads(row.recipients_json),
                subject=row.subject,
                status=DeliveryStatus(row.status),
                reason=row.reason,
                message_id=row.message_id,
                application_id=row.application_id,
                created_at_utc=row.created_at_utc or datetime.utcnow(),
            )
            for row in rows
        ]
