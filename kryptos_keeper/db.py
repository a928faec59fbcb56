from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Generator

from sqlalchemy import BigInteger, DateTime, Integer, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker


class Base(DeclarativeBase):
    pass


class RecordStatus(str, Enum):
    TRIGGERED = "triggered"
    EXECUTING = "executing"
    SWAPPED = "swapped"
    SETTLED = "settled"
    FAILED = "failed"
    ORPHANED = "orphaned"
    EXPIRED = "expired"
    SKIPPED = "skipped"
    ABANDONED = "abandoned"


# Records in these states still need keeper action for their vault.
OPEN_STATUSES = (RecordStatus.TRIGGERED.value, RecordStatus.EXECUTING.value, RecordStatus.SWAPPED.value)


class ExecutionRecord(Base):
    __tablename__ = "execution_records"

    id: Mapped[int] = mapped_column(primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), index=True)  # dca|intent
    vault_address: Mapped[str] = mapped_column(String(64), index=True)
    nonce: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    sequence: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), index=True)

    input_token: Mapped[str | None] = mapped_column(String(64))
    output_token: Mapped[str | None] = mapped_column(String(64))
    planned_amount: Mapped[str | None] = mapped_column(String(40))
    trigger_price: Mapped[str | None] = mapped_column(String(40))

    request_id: Mapped[str | None] = mapped_column(String(128))
    swap_signature: Mapped[str | None] = mapped_column(String(100), index=True)
    input_amount: Mapped[str | None] = mapped_column(String(40))
    output_amount: Mapped[str | None] = mapped_column(String(40))
    settle_signature: Mapped[str | None] = mapped_column(String(100))

    error_kind: Mapped[str | None] = mapped_column(String(40))
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )


def make_engine(database_url: str):
    return create_engine(database_url, pool_pre_ping=True, future=True)


def make_session_factory(database_url: str):
    engine = make_engine(database_url)
    # Migrations are managed via Alembic. We intentionally avoid create_all here.
    return sessionmaker(bind=engine, expire_on_commit=False, class_=Session)


@contextmanager
def session_scope(SessionFactory) -> Generator[Session, None, None]:
    session: Session = SessionFactory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
