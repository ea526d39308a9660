"""Crash-safe keyed record store backed by SQLModel + SQLite.

Every component owns one namespace. Records are JSON payloads with a
generation counter; ``compare_and_put`` only succeeds when the stored
generation still matches what the caller read, and ``mutate`` builds a
linearizable read-modify-write on top of it. Each write is a single SQLite
transaction, so a crash never leaves a partially written record visible.

Payloads that no longer parse are handled by the namespace's corruption
policy: ``HEAL`` resets the slot to a default value and carries on,
``QUARANTINE`` moves the raw bytes aside and raises ``CorruptStateError``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Generic, TypeVar

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_fleet.errors import CorruptStateError
from agent_fleet.storage.alembic_runner import upgrade_head
from agent_fleet.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_fleet.storage.retry import RetryPolicy, call_with_retry
from agent_fleet.storage.sqlmodel_models import QuarantinedRecord, StateRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_DECODE_ERRORS = (ValueError, KeyError, TypeError)


class CorruptionPolicy(str, Enum):
    """What to do when a stored payload fails to decode."""

    HEAL = "heal"
    QUARANTINE = "quarantine"


@dataclass(slots=True, frozen=True)
class RecordCodec(Generic[T]):
    """Namespace binding: JSON mapping plus corruption policy."""

    namespace: str
    encode: Callable[[T], dict[str, Any]]
    decode: Callable[[dict[str, Any]], T]
    policy: CorruptionPolicy = CorruptionPolicy.QUARANTINE
    default: Callable[[str], T] | None = None

    def __post_init__(self) -> None:
        if self.policy == CorruptionPolicy.HEAL and self.default is None:
            raise ValueError(f"Namespace {self.namespace!r} heals corruption but has no default.")


@dataclass(slots=True)
class Versioned(Generic[T]):
    """Decoded record together with its write generation."""

    value: T
    generation: int
    updated_at: datetime


@dataclass(slots=True)
class QuarantinedRecordView:
    """Corrupt payload kept aside for inspection."""

    namespace: str
    record_key: str
    payload_raw: str
    generation: int
    reason: str
    quarantined_at: datetime


class _NoChange:
    def __repr__(self) -> str:
        return "NO_CHANGE"


NO_CHANGE: Any = _NoChange()
"""Returned by a ``mutate`` callback to skip the write."""


class StateStore:
    """Namespaced record persistence facade."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5000,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def close(self) -> None:
        """Release pooled DB resources."""

        self.engine.dispose()

    def get(self, codec: RecordCodec[T], key: str) -> Versioned[T] | None:
        """Read one record, applying the namespace corruption policy on bad payloads."""

        with Session(self.engine) as session:
            row = session.exec(
                select(StateRecord).where(
                    StateRecord.namespace == codec.namespace,
                    StateRecord.record_key == key,
                ),
            ).one_or_none()
            if row is None:
                return None
            raw, generation, updated_at = row.payload_json, row.generation, row.updated_at

        try:
            value = _decode(codec, raw)
        except _DECODE_ERRORS as error:
            return self._recover(codec, key, raw=raw, generation=generation, reason=str(error))
        return Versioned(
            value=value,
            generation=generation,
            updated_at=to_utc_aware_datetime(updated_at),
        )

    def list(self, codec: RecordCodec[T]) -> list[tuple[str, T]]:
        """List all records in a namespace ordered by key.

        Corrupt records in quarantine namespaces are moved aside and skipped
        so one bad slot does not hide the rest of the namespace.
        """

        with Session(self.engine) as session:
            rows = session.exec(
                select(StateRecord)
                .where(StateRecord.namespace == codec.namespace)
                .order_by(col(StateRecord.record_key).asc()),
            ).all()
            snapshot = [(row.record_key, row.payload_json, row.generation) for row in rows]

        records: list[tuple[str, T]] = []
        for key, raw, generation in snapshot:
            try:
                records.append((key, _decode(codec, raw)))
            except _DECODE_ERRORS as error:
                try:
                    healed = self._recover(
                        codec,
                        key,
                        raw=raw,
                        generation=generation,
                        reason=str(error),
                    )
                except CorruptStateError:
                    continue
                if healed is not None:
                    records.append((key, healed.value))
        return records

    def put(self, codec: RecordCodec[T], key: str, value: T) -> int:
        """Unconditional write (last writer wins). Returns the new generation."""

        def _put() -> int:
            while True:
                expected = self._current_generation(codec, key)
                if self.compare_and_put(codec, key, value, expected_generation=expected):
                    return expected + 1

        return call_with_retry(
            _put,
            context=f"put {codec.namespace}/{key}",
            policy=self.retry_policy,
        )

    def compare_and_put(
        self,
        codec: RecordCodec[T],
        key: str,
        value: T,
        *,
        expected_generation: int,
    ) -> bool:
        """Write only if the stored generation matches; 0 means the key must be absent."""

        now = to_db_datetime(self._clock())
        payload = json.dumps(codec.encode(value), ensure_ascii=False, sort_keys=True)
        with Session(self.engine) as session:
            if expected_generation == 0:
                session.add(
                    StateRecord(
                        namespace=codec.namespace,
                        record_key=key,
                        payload_json=payload,
                        generation=1,
                        updated_at=now,
                    ),
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
                return True

            result = session.exec(
                sa_update(StateRecord)
                .where(
                    col(StateRecord.namespace) == codec.namespace,
                    col(StateRecord.record_key) == key,
                    col(StateRecord.generation) == expected_generation,
                )
                .values(
                    payload_json=payload,
                    generation=expected_generation + 1,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def delete(self, codec: RecordCodec[Any], key: str) -> bool:
        """Remove a record regardless of generation."""

        def _delete() -> bool:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_delete(StateRecord).where(
                        col(StateRecord.namespace) == codec.namespace,
                        col(StateRecord.record_key) == key,
                    ),
                )
                session.commit()
                return result.rowcount > 0

        return call_with_retry(
            _delete,
            context=f"delete {codec.namespace}/{key}",
            policy=self.retry_policy,
        )

    def compare_and_delete(
        self,
        codec: RecordCodec[Any],
        key: str,
        *,
        expected_generation: int,
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(StateRecord).where(
                    col(StateRecord.namespace) == codec.namespace,
                    col(StateRecord.record_key) == key,
                    col(StateRecord.generation) == expected_generation,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mutate(
        self,
        codec: RecordCodec[T],
        key: str,
        fn: Callable[[T | None], tuple[T | None, R]],
    ) -> R:
        """Atomic read-modify-write.

        ``fn`` receives the current value (``None`` when absent) and returns
        ``(new_value, result)``. ``new_value`` of ``None`` deletes the record,
        ``NO_CHANGE`` skips the write. ``fn`` is re-run against a fresh read
        whenever another writer got in first, so it must not have side effects.
        Transient SQLite failures are retried per ``retry_policy``.
        """

        return call_with_retry(
            lambda: self._mutate_once(codec, key, fn),
            context=f"mutate {codec.namespace}/{key}",
            policy=self.retry_policy,
        )

    def _mutate_once(
        self,
        codec: RecordCodec[T],
        key: str,
        fn: Callable[[T | None], tuple[T | None, R]],
    ) -> R:
        while True:
            current = self.get(codec, key)
            new_value, result = fn(current.value if current is not None else None)
            if new_value is NO_CHANGE:
                return result

            expected = current.generation if current is not None else 0
            if new_value is None:
                if current is None:
                    return result
                if self.compare_and_delete(codec, key, expected_generation=expected):
                    return result
            elif self.compare_and_put(codec, key, new_value, expected_generation=expected):
                return result

            logger.debug(
                "Write race lost on %s/%s at generation %d, retrying",
                codec.namespace,
                key,
                expected,
            )

    def updated_at(self, codec: RecordCodec[Any], key: str) -> datetime | None:
        """Timestamp of the last write to a record."""

        with Session(self.engine) as session:
            row = session.exec(
                select(StateRecord).where(
                    StateRecord.namespace == codec.namespace,
                    StateRecord.record_key == key,
                ),
            ).one_or_none()
            if row is None:
                return None
            return to_utc_aware_datetime(row.updated_at)

    def list_quarantined(self, namespace: str | None = None) -> list[QuarantinedRecordView]:
        with Session(self.engine) as session:
            statement = select(QuarantinedRecord).order_by(
                col(QuarantinedRecord.quarantined_at).asc(),
            )
            if namespace is not None:
                statement = statement.where(QuarantinedRecord.namespace == namespace)
            rows = session.exec(statement).all()
            return [
                QuarantinedRecordView(
                    namespace=row.namespace,
                    record_key=row.record_key,
                    payload_raw=row.payload_raw,
                    generation=row.generation,
                    reason=row.reason,
                    quarantined_at=to_utc_aware_datetime(row.quarantined_at),
                )
                for row in rows
            ]

    def _current_generation(self, codec: RecordCodec[Any], key: str) -> int:
        with Session(self.engine) as session:
            row = session.exec(
                select(StateRecord).where(
                    StateRecord.namespace == codec.namespace,
                    StateRecord.record_key == key,
                ),
            ).one_or_none()
            return row.generation if row is not None else 0

    def _recover(
        self,
        codec: RecordCodec[T],
        key: str,
        *,
        raw: str,
        generation: int,
        reason: str,
    ) -> Versioned[T] | None:
        if codec.policy == CorruptionPolicy.HEAL:
            assert codec.default is not None
            fresh = codec.default(key)
            if not self.compare_and_put(codec, key, fresh, expected_generation=generation):
                # Someone rewrote the slot meanwhile; their value wins.
                return self.get(codec, key)
            logger.warning(
                "Corrupt record %s/%s reset to default (%s)",
                codec.namespace,
                key,
                reason,
            )
            return Versioned(
                value=fresh,
                generation=generation + 1,
                updated_at=to_utc_aware_datetime(self._clock()),
            )

        self._quarantine(codec, key, raw=raw, generation=generation, reason=reason)
        raise CorruptStateError(
            message=(
                f"Record {codec.namespace}/{key} is corrupt and was quarantined: {reason}"
            ),
            namespace=codec.namespace,
            record_key=key,
        )

    def _quarantine(
        self,
        codec: RecordCodec[Any],
        key: str,
        *,
        raw: str,
        generation: int,
        reason: str,
    ) -> None:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(StateRecord).where(
                    col(StateRecord.namespace) == codec.namespace,
                    col(StateRecord.record_key) == key,
                    col(StateRecord.generation) == generation,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return
            session.add(
                QuarantinedRecord(
                    namespace=codec.namespace,
                    record_key=key,
                    payload_raw=raw,
                    generation=generation,
                    reason=reason,
                    quarantined_at=now,
                ),
            )
            session.commit()
        logger.error(
            "Corrupt record %s/%s quarantined at generation %d (%s)",
            codec.namespace,
            key,
            generation,
            reason,
        )


def _decode(codec: RecordCodec[T], raw: str) -> T:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise TypeError(f"expected JSON object, got {type(parsed).__name__}")
    return codec.decode(parsed)
