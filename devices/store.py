"""
devices/store.py -- SQLAlchemy Core persistence for devices, change events and policy state.

Pattern: Repository + Unit of Work. DeviceStore owns the engine and the
read-only queries. Anything that changes device state runs inside
DeviceStore.transaction(account_id), which yields a DeviceTransaction bound
to one connection.

Concurrency:
  transaction() opens with an UPDATE on the account's device_policies row.
  That write takes the row lock (SQLite: the database write lock) before any
  state is read, so two near-simultaneous device changes for one account
  run one after the other and never see the same pre-increment counter.

Layer rule: no imports from api/, auth/, ratelimit/ or services/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Column, Integer, MetaData, String, Table, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from core.clock import Clock, from_iso, to_iso, utc_now
from core.db import create_store_engine
from devices.models import ChangeStatus, DeviceChangeEvent, DeviceRecord, PolicyState

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_devices = Table(
    "devices",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("fingerprint_hash", String(64), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="0"),
    Column("first_seen_at", String(32), nullable=False),
    Column("last_seen_at", String(32), nullable=False),
)

_events = Table(
    "device_change_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("old_device_id", Integer),
    Column("new_device_id", Integer),
    Column("requested_fingerprint_hash", String(64), nullable=False),
    Column("change_number", Integer, nullable=False),
    Column("status", String(30), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("review_decision", String(20)),
    Column("reviewed_by", Integer),
    Column("reviewed_at", String(32)),
)

_policies = Table(
    "device_policies",
    _metadata,
    Column("account_id", Integer, primary_key=True, autoincrement=False),
    Column("change_count", Integer, nullable=False, server_default="0"),
    Column("state", String(30), nullable=False, server_default=PolicyState.UNRESTRICTED.value),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


class DeviceTransaction:
    """Device-state operations for one account inside one open transaction."""

    def __init__(self, conn: Connection, account_id: int, now: str) -> None:
        self._conn = conn
        self.account_id = account_id
        self._now = now

    def policy(self) -> tuple[int, PolicyState]:
        row = self._conn.execute(
            select(_policies.c.change_count, _policies.c.state).where(_policies.c.account_id == self.account_id)
        ).fetchone()
        return row.change_count, PolicyState(row.state)

    def increment_change_count(self) -> int:
        self._conn.execute(
            _policies.update()
            .where(_policies.c.account_id == self.account_id)
            .values(change_count=_policies.c.change_count + 1)
        )
        return self.policy()[0]

    def set_state(self, state: PolicyState) -> None:
        self._conn.execute(
            _policies.update().where(_policies.c.account_id == self.account_id).values(state=state.value)
        )

    def active_device(self) -> DeviceRecord | None:
        row = self._conn.execute(
            _devices.select().where((_devices.c.account_id == self.account_id) & (_devices.c.is_active == 1))
        ).fetchone()
        return _row_to_device(row) if row is not None else None

    def touch_device(self, device_id: int) -> None:
        self._conn.execute(_devices.update().where(_devices.c.id == device_id).values(last_seen_at=self._now))

    def activate_fingerprint(self, fingerprint_hash: str) -> int:
        """Make fingerprint_hash the single active device, reusing a historical row if one exists."""
        self._conn.execute(
            _devices.update()
            .where((_devices.c.account_id == self.account_id) & (_devices.c.is_active == 1))
            .values(is_active=0)
        )
        existing = self._conn.execute(
            select(_devices.c.id).where(
                (_devices.c.account_id == self.account_id) & (_devices.c.fingerprint_hash == fingerprint_hash)
            )
        ).fetchone()
        if existing is not None:
            self._conn.execute(
                _devices.update().where(_devices.c.id == existing.id).values(is_active=1, last_seen_at=self._now)
            )
            return existing.id
        result = self._conn.execute(
            _devices.insert().values(
                account_id=self.account_id,
                fingerprint_hash=fingerprint_hash,
                is_active=1,
                first_seen_at=self._now,
                last_seen_at=self._now,
            )
        )
        return result.inserted_primary_key[0]

    def insert_event(self, event: DeviceChangeEvent) -> int:
        result = self._conn.execute(
            _events.insert().values(
                account_id=self.account_id,
                old_device_id=event.old_device_id,
                new_device_id=event.new_device_id,
                requested_fingerprint_hash=event.requested_fingerprint_hash,
                change_number=event.change_number,
                status=event.status,
                created_at=self._now,
            )
        )
        return result.inserted_primary_key[0]

    def latest_locked_event(self) -> DeviceChangeEvent | None:
        row = self._conn.execute(
            _events.select()
            .where(
                (_events.c.account_id == self.account_id)
                & (_events.c.status == ChangeStatus.LOCKED_PENDING_REVIEW.value)
            )
            .order_by(_events.c.id.desc())
            .limit(1)
        ).fetchone()
        return _row_to_event(row) if row is not None else None

    def record_review(self, event_id: int, decision: str, reviewer_id: int, new_device_id: int | None) -> None:
        values = {"review_decision": decision, "reviewed_by": reviewer_id, "reviewed_at": self._now}
        if new_device_id is not None:
            values["new_device_id"] = new_device_id
        self._conn.execute(_events.update().where(_events.c.id == event_id).values(**values))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class DeviceStore:
    """Repository for DeviceRecord, DeviceChangeEvent and per-account policy state.

    Usage:
        store = DeviceStore("sqlite:///campusguard.db")
        with store.transaction(account_id) as tx:
            count, state = tx.policy()
        store.close()
    """

    def __init__(self, db_url: str, clock: Clock = utc_now) -> None:
        self.engine: Engine = create_store_engine(db_url)
        self._clock = clock
        _metadata.create_all(self.engine)

    def _ensure_policy_row(self, account_id: int) -> None:
        """Create the account's policy row on first use. Idempotent under races."""
        with self.engine.connect() as conn:
            exists = conn.execute(
                select(_policies.c.account_id).where(_policies.c.account_id == account_id)
            ).fetchone()
        if exists is not None:
            return
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _policies.insert().values(
                        account_id=account_id,
                        change_count=0,
                        state=PolicyState.UNRESTRICTED.value,
                        updated_at=to_iso(self._clock()),
                    )
                )
        except IntegrityError:
            pass  # a concurrent request created it first

    @contextmanager
    def transaction(self, account_id: int) -> Iterator[DeviceTransaction]:
        """Open a transaction holding the account's policy row lock.

        Commits when the block exits normally, rolls back if it raises.
        """
        self._ensure_policy_row(account_id)
        now = to_iso(self._clock())
        with self.engine.begin() as conn:
            # Lock first, read second.
            conn.execute(_policies.update().where(_policies.c.account_id == account_id).values(updated_at=now))
            yield DeviceTransaction(conn, account_id, now)

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    def get_policy_state(self, account_id: int) -> tuple[int, PolicyState]:
        """Return (change_count, state). Accounts never seen are (0, UNRESTRICTED)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_policies.c.change_count, _policies.c.state).where(_policies.c.account_id == account_id)
            ).fetchone()
        if row is None:
            return 0, PolicyState.UNRESTRICTED
        return row.change_count, PolicyState(row.state)

    def get_event(self, event_id: int) -> DeviceChangeEvent | None:
        with self.engine.connect() as conn:
            row = conn.execute(_events.select().where(_events.c.id == event_id)).fetchone()
        return _row_to_event(row) if row is not None else None

    def list_events(self, account_id: int) -> list[DeviceChangeEvent]:
        """Change ledger for an account, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _events.select().where(_events.c.account_id == account_id).order_by(_events.c.id)
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def list_devices(self, account_id: int) -> list[DeviceRecord]:
        """Every device seen for an account, oldest first. The active one is flagged."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _devices.select().where(_devices.c.account_id == account_id).order_by(_devices.c.id)
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_device(row) -> DeviceRecord:
    return DeviceRecord(
        id=row.id,
        account_id=row.account_id,
        fingerprint_hash=row.fingerprint_hash,
        is_active=bool(row.is_active),
        first_seen_at=from_iso(row.first_seen_at),
        last_seen_at=from_iso(row.last_seen_at),
    )


def _row_to_event(row) -> DeviceChangeEvent:
    return DeviceChangeEvent(
        id=row.id,
        account_id=row.account_id,
        old_device_id=row.old_device_id,
        new_device_id=row.new_device_id,
        requested_fingerprint_hash=row.requested_fingerprint_hash,
        change_number=row.change_number,
        status=row.status,
        created_at=from_iso(row.created_at),
        review_decision=row.review_decision,
        reviewed_by=row.reviewed_by,
        reviewed_at=from_iso(row.reviewed_at),
    )
