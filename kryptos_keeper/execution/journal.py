from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select

from kryptos_keeper.db import OPEN_STATUSES, ExecutionRecord, RecordStatus, session_scope
from kryptos_keeper.models import SwapFill


@dataclass
class ExecutionJournal:
    """Local record of every execution attempt, keyed by (vault, nonce, sequence).

    The journal is what makes the swap/settle seam recoverable: the swap signature is
    written before submission and realized amounts are written before settlement.
    """

    SessionFactory: object

    def open_record(self, vault_address: str) -> ExecutionRecord | None:
        with session_scope(self.SessionFactory) as s:
            return (
                s.execute(
                    select(ExecutionRecord)
                    .where(
                        ExecutionRecord.vault_address == vault_address,
                        ExecutionRecord.status.in_(OPEN_STATUSES),
                    )
                    .order_by(ExecutionRecord.id.desc())
                    .limit(1)
                )
                .scalars()
                .first()
            )

    def open_records(self, kind: str | None = None, status: RecordStatus | None = None):
        with session_scope(self.SessionFactory) as s:
            q = select(ExecutionRecord).where(ExecutionRecord.status.in_(OPEN_STATUSES))
            if kind:
                q = q.where(ExecutionRecord.kind == kind)
            if status:
                q = q.where(ExecutionRecord.status == status.value)
            return list(s.execute(q.order_by(ExecutionRecord.id.asc())).scalars().all())

    def get(self, record_id: int) -> ExecutionRecord | None:
        with session_scope(self.SessionFactory) as s:
            return s.get(ExecutionRecord, record_id)

    def record_trigger(
        self,
        vault_address: str,
        nonce: int,
        sequence: int,
        input_token: str,
        output_token: str,
        trigger_price: int,
    ) -> ExecutionRecord:
        with session_scope(self.SessionFactory) as s:
            rec = ExecutionRecord(
                kind="intent",
                vault_address=vault_address,
                nonce=nonce,
                sequence=sequence,
                status=RecordStatus.TRIGGERED.value,
                input_token=input_token,
                output_token=output_token,
                trigger_price=str(trigger_price),
            )
            s.add(rec)
            s.flush()
            return rec

    def begin(
        self,
        kind: str,
        vault_address: str,
        sequence: int,
        input_token: str,
        output_token: str,
        planned_amount: int,
        nonce: int | None = None,
        record_id: int | None = None,
        trigger_price: int | None = None,
    ) -> int:
        """Open an EXECUTING record, promoting an existing TRIGGERED one when given."""
        with session_scope(self.SessionFactory) as s:
            rec = s.get(ExecutionRecord, record_id) if record_id is not None else None
            if rec is None:
                rec = ExecutionRecord(
                    kind=kind,
                    vault_address=vault_address,
                    nonce=nonce,
                    input_token=input_token,
                    output_token=output_token,
                )
                s.add(rec)
            rec.sequence = sequence
            rec.status = RecordStatus.EXECUTING.value
            rec.planned_amount = str(planned_amount)
            if trigger_price is not None:
                rec.trigger_price = str(trigger_price)
            rec.swap_signature = None
            rec.request_id = None
            rec.settle_signature = None
            rec.error_kind = None
            rec.error = None
            s.flush()
            return rec.id

    def mark_signed(self, record_id: int, signature: str, request_id: str) -> None:
        self._update(record_id, swap_signature=signature, request_id=request_id)

    def note_swap_error(self, record_id: int, kind: str, message: str) -> None:
        # Status stays EXECUTING; reconcile asks the chain about the stored signature.
        self._update(record_id, error_kind=kind, error=message)

    def mark_swapped(self, record_id: int, fill: SwapFill) -> None:
        self._update(
            record_id,
            status=RecordStatus.SWAPPED.value,
            swap_signature=fill.signature,
            input_amount=str(fill.input_amount),
            output_amount=str(fill.output_amount),
            error_kind=None,
            error=None,
        )

    def mark_settle_signed(self, record_id: int, signature: str) -> None:
        self._update(record_id, settle_signature=signature)

    def mark_settled(self, record_id: int, signature: str) -> None:
        self._update(
            record_id,
            status=RecordStatus.SETTLED.value,
            settle_signature=signature,
            error_kind=None,
            error=None,
        )

    def note_settle_error(self, record_id: int, kind: str, message: str) -> None:
        # Status stays SWAPPED; the next pass retries the settlement.
        self._update(record_id, error_kind=kind, error=message)

    def revert_to_triggered(self, record_id: int, kind: str, message: str) -> None:
        # The swap never happened; the intent resumes at the execution step next pass.
        self._update(
            record_id,
            status=RecordStatus.TRIGGERED.value,
            swap_signature=None,
            request_id=None,
            error_kind=kind,
            error=message,
        )

    def mark_failed(self, record_id: int, kind: str, message: str) -> None:
        self._update(record_id, status=RecordStatus.FAILED.value, error_kind=kind, error=message)

    def mark_orphaned(self, record_id: int, kind: str, message: str) -> None:
        self._update(record_id, status=RecordStatus.ORPHANED.value, error_kind=kind, error=message)

    def mark_abandoned(self, record_id: int, message: str) -> None:
        self._update(record_id, status=RecordStatus.ABANDONED.value, error=message)

    def mark_skipped(self, record_id: int, message: str) -> None:
        self._update(record_id, status=RecordStatus.SKIPPED.value, error=message)

    def record_expired(self, vault_address: str, nonce: int) -> None:
        with session_scope(self.SessionFactory) as s:
            for rec in s.execute(
                select(ExecutionRecord).where(
                    ExecutionRecord.vault_address == vault_address,
                    ExecutionRecord.status.in_(OPEN_STATUSES),
                )
            ).scalars():
                rec.status = RecordStatus.ABANDONED.value
                rec.error = "intent expired"
            s.add(
                ExecutionRecord(
                    kind="intent",
                    vault_address=vault_address,
                    nonce=nonce,
                    sequence=0,
                    status=RecordStatus.EXPIRED.value,
                )
            )

    def is_expired(self, vault_address: str, nonce: int) -> bool:
        with session_scope(self.SessionFactory) as s:
            found = s.execute(
                select(ExecutionRecord.id)
                .where(
                    ExecutionRecord.vault_address == vault_address,
                    ExecutionRecord.nonce == nonce,
                    ExecutionRecord.status == RecordStatus.EXPIRED.value,
                )
                .limit(1)
            ).first()
            return found is not None

    def expired_vaults(self) -> set[tuple[str, int]]:
        """(vault, nonce) of every order already journaled as expired."""
        with session_scope(self.SessionFactory) as s:
            rows = s.execute(
                select(ExecutionRecord.vault_address, ExecutionRecord.nonce).where(
                    ExecutionRecord.status == RecordStatus.EXPIRED.value
                )
            ).all()
            return {(address, nonce) for address, nonce in rows}

    def _update(self, record_id: int, **fields) -> None:
        with session_scope(self.SessionFactory) as s:
            rec = s.get(ExecutionRecord, record_id)
            if rec is None:
                raise KeyError(f"execution record {record_id} not found")
            for k, v in fields.items():
                setattr(rec, k, v)
