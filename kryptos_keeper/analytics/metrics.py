from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import func, select

from kryptos_keeper.db import ExecutionRecord, RecordStatus, session_scope


@dataclass
class Summary:
    total: int
    settled: int
    failed: int
    orphaned: int
    skipped: int
    by_status: dict[str, int] = field(default_factory=dict)

    def __str__(self) -> str:
        parts = ", ".join(f"{k}={v}" for k, v in sorted(self.by_status.items()))
        return f"{self.total} records ({parts})" if parts else "no records"


def get_summary(SessionFactory, kind: str | None = None) -> Summary:
    with session_scope(SessionFactory) as s:
        q = select(ExecutionRecord.status, func.count()).group_by(ExecutionRecord.status)
        if kind:
            q = q.where(ExecutionRecord.kind == kind)
        by_status = {status: count for status, count in s.execute(q).all()}
    return Summary(
        total=sum(by_status.values()),
        settled=by_status.get(RecordStatus.SETTLED.value, 0),
        failed=by_status.get(RecordStatus.FAILED.value, 0),
        orphaned=by_status.get(RecordStatus.ORPHANED.value, 0),
        skipped=by_status.get(RecordStatus.SKIPPED.value, 0),
        by_status=by_status,
    )
