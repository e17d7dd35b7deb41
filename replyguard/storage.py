"""Storage backends for guardrail state: rate windows, costs, flags and owner config."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Protocol, Tuple
import json
import sqlite3
import threading

from replyguard.models import (
    CostUsageRecord,
    FeatureFlags,
    OwnerGuardrailConfig,
    PushToken,
    WindowCounter,
    WindowKind,
)


class CounterReadFailure(Exception):
    """Raised when a counter cannot be read from the backing store."""
    pass


WindowPlan = Dict[WindowKind, Tuple[datetime, int]]


def _used_percent(total_cents: int, limit_cents: int) -> float:
    if limit_cents <= 0:
        return 100.0 if total_cents > 0 else 0.0
    return total_cents / limit_cents * 100.0


class GuardrailStore(Protocol):
    """Storage backend interface."""

    def get_owner_config(self, owner_id: str) -> Optional[OwnerGuardrailConfig]:
        ...

    def set_owner_config(self, config: OwnerGuardrailConfig) -> OwnerGuardrailConfig:
        ...

    def get_feature_flags(self, owner_id: str) -> FeatureFlags:
        ...

    def disable_features(self, owner_id: str, reason: str, at: datetime) -> bool:
        ...

    def enable_features(self, owner_id: str) -> bool:
        ...

    def get_window(self, owner_id: str, operation: str, kind: WindowKind) -> Optional[WindowCounter]:
        ...

    def increment_window(
        self, owner_id: str, operation: str, kind: WindowKind, window_start: datetime
    ) -> WindowCounter:
        ...

    def try_increment_windows(
        self, owner_id: str, operation: str, plan: WindowPlan
    ) -> Tuple[bool, Dict[WindowKind, WindowCounter]]:
        ...

    def mark_window_warning(
        self, owner_id: str, operation: str, kind: WindowKind, window_start: datetime
    ) -> bool:
        ...

    def delete_windows(self, owner_id: str, operation: str) -> int:
        ...

    def get_daily_actions(self, owner_id: str, day_id: str) -> int:
        ...

    def try_reserve_daily_action(self, owner_id: str, day_id: str, cap: int) -> bool:
        ...

    def add_cost(
        self, owner_id: str, period_id: str, cents: int, budget_limit_cents: int, operation: str
    ) -> CostUsageRecord:
        ...

    def get_cost_record(self, owner_id: str, period_id: str) -> Optional[CostUsageRecord]:
        ...

    def list_cost_records(self, period_id: str) -> List[CostUsageRecord]:
        ...

    def mark_alert_sent(self, owner_id: str, period_id: str) -> bool:
        ...

    def mark_exceeded(self, owner_id: str, period_id: str) -> bool:
        ...

    def add_push_token(self, owner_id: str, token: PushToken) -> None:
        ...

    def list_push_tokens(self, owner_id: str) -> List[PushToken]:
        ...

    def remove_push_tokens(self, owner_id: str, tokens: List[str]) -> int:
        ...


class InMemoryGuardrailStore:
    """In-memory storage backend. One lock serializes every read-modify-write."""

    def __init__(self):
        self._lock = threading.RLock()
        self._configs: Dict[str, OwnerGuardrailConfig] = {}
        self._flags: Dict[str, FeatureFlags] = {}
        self._windows: Dict[Tuple[str, str, WindowKind], WindowCounter] = {}
        self._daily_actions: Dict[Tuple[str, str], int] = {}
        self._costs: Dict[Tuple[str, str], CostUsageRecord] = {}
        self._tokens: Dict[str, List[PushToken]] = {}

    # Owner config and flags

    def get_owner_config(self, owner_id: str) -> Optional[OwnerGuardrailConfig]:
        with self._lock:
            config = self._configs.get(owner_id)
            return replace(config) if config else None

    def set_owner_config(self, config: OwnerGuardrailConfig) -> OwnerGuardrailConfig:
        with self._lock:
            self._configs[config.owner_id] = replace(config)
        return config

    def get_feature_flags(self, owner_id: str) -> FeatureFlags:
        with self._lock:
            flags = self._flags.get(owner_id)
            return replace(flags) if flags else FeatureFlags(owner_id=owner_id)

    def disable_features(self, owner_id: str, reason: str, at: datetime) -> bool:
        with self._lock:
            flags = self._flags.get(owner_id)
            if flags and flags.features_disabled:
                return False
            self._flags[owner_id] = FeatureFlags(
                owner_id=owner_id,
                features_disabled=True,
                disabled_reason=reason,
                disabled_at=at,
            )
            return True

    def enable_features(self, owner_id: str) -> bool:
        with self._lock:
            flags = self._flags.pop(owner_id, None)
            return bool(flags and flags.features_disabled)

    # Rate windows

    def get_window(self, owner_id: str, operation: str, kind: WindowKind) -> Optional[WindowCounter]:
        with self._lock:
            counter = self._windows.get((owner_id, operation, kind))
            return replace(counter) if counter else None

    def _bump(self, owner_id: str, operation: str, kind: WindowKind, window_start: datetime) -> WindowCounter:
        key = (owner_id, operation, kind)
        counter = self._windows.get(key)
        if counter is None or counter.window_start != window_start:
            counter = WindowCounter(
                owner_id=owner_id,
                operation=operation,
                window_kind=kind,
                count=0,
                window_start=window_start,
            )
            self._windows[key] = counter
        counter.count += 1
        return replace(counter)

    def increment_window(
        self, owner_id: str, operation: str, kind: WindowKind, window_start: datetime
    ) -> WindowCounter:
        with self._lock:
            return self._bump(owner_id, operation, kind, window_start)

    def try_increment_windows(
        self, owner_id: str, operation: str, plan: WindowPlan
    ) -> Tuple[bool, Dict[WindowKind, WindowCounter]]:
        with self._lock:
            current: Dict[WindowKind, WindowCounter] = {}
            for kind, (window_start, _limit) in plan.items():
                counter = self._windows.get((owner_id, operation, kind))
                if counter is None or counter.window_start != window_start:
                    counter = WindowCounter(owner_id, operation, kind, 0, window_start)
                current[kind] = replace(counter)

            if any(current[kind].count >= limit for kind, (_, limit) in plan.items()):
                return False, current

            return True, {
                kind: self._bump(owner_id, operation, kind, window_start)
                for kind, (window_start, _limit) in plan.items()
            }

    def mark_window_warning(
        self, owner_id: str, operation: str, kind: WindowKind, window_start: datetime
    ) -> bool:
        with self._lock:
            counter = self._windows.get((owner_id, operation, kind))
            if counter is None or counter.window_start != window_start or counter.warning_sent:
                return False
            counter.warning_sent = True
            return True

    def delete_windows(self, owner_id: str, operation: str) -> int:
        with self._lock:
            keys = [k for k in self._windows if k[0] == owner_id and k[1] == operation]
            for key in keys:
                del self._windows[key]
            return len(keys)

    # Daily automated actions

    def get_daily_actions(self, owner_id: str, day_id: str) -> int:
        with self._lock:
            return self._daily_actions.get((owner_id, day_id), 0)

    def try_reserve_daily_action(self, owner_id: str, day_id: str, cap: int) -> bool:
        with self._lock:
            used = self._daily_actions.get((owner_id, day_id), 0)
            if used >= cap:
                return False
            self._daily_actions[(owner_id, day_id)] = used + 1
            return True

    # Cost usage

    def add_cost(
        self, owner_id: str, period_id: str, cents: int, budget_limit_cents: int, operation: str
    ) -> CostUsageRecord:
        with self._lock:
            record = self._costs.get((owner_id, period_id))
            if record is None:
                record = CostUsageRecord(owner_id=owner_id, period_id=period_id)
                self._costs[(owner_id, period_id)] = record
            record.total_cost_cents += cents
            record.budget_limit_cents = budget_limit_cents
            record.used_percent = _used_percent(record.total_cost_cents, budget_limit_cents)
            record.cost_by_operation[operation] = record.cost_by_operation.get(operation, 0) + cents
            record.updated_at = datetime.now(timezone.utc)
            return replace(record, cost_by_operation=dict(record.cost_by_operation))

    def get_cost_record(self, owner_id: str, period_id: str) -> Optional[CostUsageRecord]:
        with self._lock:
            record = self._costs.get((owner_id, period_id))
            if record is None:
                return None
            return replace(record, cost_by_operation=dict(record.cost_by_operation))

    def list_cost_records(self, period_id: str) -> List[CostUsageRecord]:
        with self._lock:
            return [
                replace(r, cost_by_operation=dict(r.cost_by_operation))
                for (_, pid), r in sorted(self._costs.items())
                if pid == period_id
            ]

    def mark_alert_sent(self, owner_id: str, period_id: str) -> bool:
        with self._lock:
            record = self._costs.get((owner_id, period_id))
            if record is None or record.alert_sent:
                return False
            record.alert_sent = True
            return True

    def mark_exceeded(self, owner_id: str, period_id: str) -> bool:
        with self._lock:
            record = self._costs.get((owner_id, period_id))
            if record is None or record.exceeded:
                return False
            record.exceeded = True
            return True

    # Push tokens

    def add_push_token(self, owner_id: str, token: PushToken) -> None:
        with self._lock:
            tokens = self._tokens.setdefault(owner_id, [])
            tokens[:] = [t for t in tokens if t.token != token.token]
            tokens.append(replace(token))

    def list_push_tokens(self, owner_id: str) -> List[PushToken]:
        with self._lock:
            return [replace(t) for t in self._tokens.get(owner_id, [])]

    def remove_push_tokens(self, owner_id: str, tokens: List[str]) -> int:
        with self._lock:
            current = self._tokens.get(owner_id, [])
            kept = [t for t in current if t.token not in set(tokens)]
            self._tokens[owner_id] = kept
            return len(current) - len(kept)

    def close(self) -> None:
        pass


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteGuardrailStore:
    """
    SQLite-backed storage backend.

    Every read-modify-write runs inside BEGIN IMMEDIATE, so concurrent writers
    (threads or processes sharing the file) serialize on the database lock.
    """

    def __init__(self, db_path: str = "replyguard.db", timeout_seconds: float = 5.0):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            db_path,
            timeout=timeout_seconds,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS owner_configs (
                    owner_id TEXT PRIMARY KEY,
                    feature_enabled INTEGER NOT NULL,
                    require_approval INTEGER NOT NULL,
                    max_auto_actions_per_day INTEGER NOT NULL,
                    escalation_sentiment_threshold REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS feature_flags (
                    owner_id TEXT PRIMARY KEY,
                    features_disabled INTEGER NOT NULL,
                    disabled_reason TEXT,
                    disabled_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_windows (
                    owner_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    window_kind TEXT NOT NULL,
                    count INTEGER NOT NULL,
                    window_start TEXT NOT NULL,
                    warning_sent INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (owner_id, operation, window_kind)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS daily_actions (
                    owner_id TEXT NOT NULL,
                    day_id TEXT NOT NULL,
                    count INTEGER NOT NULL,
                    PRIMARY KEY (owner_id, day_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cost_usage (
                    owner_id TEXT NOT NULL,
                    period_id TEXT NOT NULL,
                    total_cost_cents INTEGER NOT NULL,
                    budget_limit_cents INTEGER NOT NULL,
                    used_percent REAL NOT NULL,
                    alert_sent INTEGER NOT NULL DEFAULT 0,
                    exceeded INTEGER NOT NULL DEFAULT 0,
                    cost_by_operation TEXT NOT NULL DEFAULT '{}',
                    updated_at TEXT,
                    PRIMARY KEY (owner_id, period_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS push_tokens (
                    owner_id TEXT NOT NULL,
                    token TEXT NOT NULL,
                    provider TEXT,
                    platform TEXT,
                    device_id TEXT,
                    PRIMARY KEY (owner_id, token)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_cost_period ON cost_usage(period_id)")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def _query_one(self, sql: str, params: tuple) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    # Owner config and flags

    def get_owner_config(self, owner_id: str) -> Optional[OwnerGuardrailConfig]:
        row = self._query_one("SELECT * FROM owner_configs WHERE owner_id = ?", (owner_id,))
        if not row:
            return None
        return OwnerGuardrailConfig(
            owner_id=row["owner_id"],
            feature_enabled=bool(row["feature_enabled"]),
            require_approval=bool(row["require_approval"]),
            max_auto_actions_per_day=row["max_auto_actions_per_day"],
            escalation_sentiment_threshold=row["escalation_sentiment_threshold"],
        )

    def set_owner_config(self, config: OwnerGuardrailConfig) -> OwnerGuardrailConfig:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO owner_configs (owner_id, feature_enabled, require_approval,
                    max_auto_actions_per_day, escalation_sentiment_threshold)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    feature_enabled=excluded.feature_enabled,
                    require_approval=excluded.require_approval,
                    max_auto_actions_per_day=excluded.max_auto_actions_per_day,
                    escalation_sentiment_threshold=excluded.escalation_sentiment_threshold
                """,
                (
                    config.owner_id,
                    1 if config.feature_enabled else 0,
                    1 if config.require_approval else 0,
                    config.max_auto_actions_per_day,
                    config.escalation_sentiment_threshold,
                ),
            )
        return config

    def get_feature_flags(self, owner_id: str) -> FeatureFlags:
        row = self._query_one("SELECT * FROM feature_flags WHERE owner_id = ?", (owner_id,))
        if not row:
            return FeatureFlags(owner_id=owner_id)
        return FeatureFlags(
            owner_id=owner_id,
            features_disabled=bool(row["features_disabled"]),
            disabled_reason=row["disabled_reason"],
            disabled_at=_parse_time(row["disabled_at"]),
        )

    def disable_features(self, owner_id: str, reason: str, at: datetime) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT features_disabled FROM feature_flags WHERE owner_id = ?", (owner_id,)
            ).fetchone()
            if row and row["features_disabled"]:
                return False
            conn.execute(
                """
                INSERT INTO feature_flags (owner_id, features_disabled, disabled_reason, disabled_at)
                VALUES (?, 1, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    features_disabled=1,
                    disabled_reason=excluded.disabled_reason,
                    disabled_at=excluded.disabled_at
                """,
                (owner_id, reason, at.isoformat()),
            )
            return True

    def enable_features(self, owner_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE feature_flags SET features_disabled = 0, disabled_reason = NULL, "
                "disabled_at = NULL WHERE owner_id = ? AND features_disabled = 1",
                (owner_id,),
            )
            return cur.rowcount > 0

    # Rate windows

    def _row_to_window(self, row: sqlite3.Row) -> WindowCounter:
        return WindowCounter(
            owner_id=row["owner_id"],
            operation=row["operation"],
            window_kind=WindowKind(row["window_kind"]),
            count=row["count"],
            window_start=_parse_time(row["window_start"]),
            warning_sent=bool(row["warning_sent"]),
        )

    def get_window(self, owner_id: str, operation: str, kind: WindowKind) -> Optional[WindowCounter]:
        try:
            row = self._query_one(
                "SELECT * FROM rate_windows WHERE owner_id = ? AND operation = ? AND window_kind = ?",
                (owner_id, operation, kind.value),
            )
        except sqlite3.Error as exc:
            raise CounterReadFailure(f"rate window read failed for {owner_id}/{operation}: {exc}") from exc
        return self._row_to_window(row) if row else None

    def _read_window(
        self, conn: sqlite3.Connection, owner_id: str, operation: str, kind: WindowKind, window_start: datetime
    ) -> WindowCounter:
        row = conn.execute(
            "SELECT * FROM rate_windows WHERE owner_id = ? AND operation = ? AND window_kind = ?",
            (owner_id, operation, kind.value),
        ).fetchone()
        if row is not None:
            counter = self._row_to_window(row)
            if counter.window_start == window_start:
                return counter
        return WindowCounter(owner_id, operation, kind, 0, window_start)

    def _write_bump(self, conn: sqlite3.Connection, counter: WindowCounter) -> WindowCounter:
        bumped = replace(counter, count=counter.count + 1)
        conn.execute(
            """
            INSERT INTO rate_windows (owner_id, operation, window_kind, count, window_start, warning_sent)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(owner_id, operation, window_kind) DO UPDATE SET
                count=excluded.count,
                window_start=excluded.window_start,
                warning_sent=excluded.warning_sent
            """,
            (
                bumped.owner_id,
                bumped.operation,
                bumped.window_kind.value,
                bumped.count,
                bumped.window_start.isoformat(),
                1 if bumped.warning_sent else 0,
            ),
        )
        return bumped

    def increment_window(
        self, owner_id: str, operation: str, kind: WindowKind, window_start: datetime
    ) -> WindowCounter:
        with self._transaction() as conn:
            counter = self._read_window(conn, owner_id, operation, kind, window_start)
            return self._write_bump(conn, counter)

    def try_increment_windows(
        self, owner_id: str, operation: str, plan: WindowPlan
    ) -> Tuple[bool, Dict[WindowKind, WindowCounter]]:
        try:
            with self._transaction() as conn:
                current = {
                    kind: self._read_window(conn, owner_id, operation, kind, window_start)
                    for kind, (window_start, _limit) in plan.items()
                }
                if any(current[kind].count >= limit for kind, (_, limit) in plan.items()):
                    return False, current
                return True, {kind: self._write_bump(conn, counter) for kind, counter in current.items()}
        except sqlite3.Error as exc:
            raise CounterReadFailure(f"rate window update failed for {owner_id}/{operation}: {exc}") from exc

    def mark_window_warning(
        self, owner_id: str, operation: str, kind: WindowKind, window_start: datetime
    ) -> bool:
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    """
                    UPDATE rate_windows SET warning_sent = 1
                    WHERE owner_id = ? AND operation = ? AND window_kind = ?
                      AND window_start = ? AND warning_sent = 0
                    """,
                    (owner_id, operation, kind.value, window_start.isoformat()),
                )
                return cur.rowcount > 0
        except sqlite3.Error as exc:
            raise CounterReadFailure(f"rate warning flag update failed for {owner_id}/{operation}: {exc}") from exc

    def delete_windows(self, owner_id: str, operation: str) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM rate_windows WHERE owner_id = ? AND operation = ?",
                (owner_id, operation),
            )
            return cur.rowcount

    # Daily automated actions

    def get_daily_actions(self, owner_id: str, day_id: str) -> int:
        try:
            row = self._query_one(
                "SELECT count FROM daily_actions WHERE owner_id = ? AND day_id = ?",
                (owner_id, day_id),
            )
        except sqlite3.Error as exc:
            raise CounterReadFailure(f"daily action read failed for {owner_id}: {exc}") from exc
        return row["count"] if row else 0

    def try_reserve_daily_action(self, owner_id: str, day_id: str, cap: int) -> bool:
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT count FROM daily_actions WHERE owner_id = ? AND day_id = ?",
                    (owner_id, day_id),
                ).fetchone()
                used = row["count"] if row else 0
                if used >= cap:
                    return False
                conn.execute(
                    """
                    INSERT INTO daily_actions (owner_id, day_id, count) VALUES (?, ?, 1)
                    ON CONFLICT(owner_id, day_id) DO UPDATE SET count = count + 1
                    """,
                    (owner_id, day_id),
                )
                return True
        except sqlite3.Error as exc:
            raise CounterReadFailure(f"daily action update failed for {owner_id}: {exc}") from exc

    # Cost usage

    def _row_to_cost(self, row: sqlite3.Row) -> CostUsageRecord:
        return CostUsageRecord(
            owner_id=row["owner_id"],
            period_id=row["period_id"],
            total_cost_cents=row["total_cost_cents"],
            budget_limit_cents=row["budget_limit_cents"],
            used_percent=row["used_percent"],
            alert_sent=bool(row["alert_sent"]),
            exceeded=bool(row["exceeded"]),
            cost_by_operation=json.loads(row["cost_by_operation"] or "{}"),
            updated_at=_parse_time(row["updated_at"]),
        )

    def add_cost(
        self, owner_id: str, period_id: str, cents: int, budget_limit_cents: int, operation: str
    ) -> CostUsageRecord:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM cost_usage WHERE owner_id = ? AND period_id = ?",
                (owner_id, period_id),
            ).fetchone()
            record = self._row_to_cost(row) if row else CostUsageRecord(owner_id, period_id)
            record.total_cost_cents += cents
            record.budget_limit_cents = budget_limit_cents
            record.used_percent = _used_percent(record.total_cost_cents, budget_limit_cents)
            record.cost_by_operation[operation] = record.cost_by_operation.get(operation, 0) + cents
            record.updated_at = datetime.now(timezone.utc)
            conn.execute(
                """
                INSERT INTO cost_usage (owner_id, period_id, total_cost_cents, budget_limit_cents,
                    used_percent, alert_sent, exceeded, cost_by_operation, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id, period_id) DO UPDATE SET
                    total_cost_cents=excluded.total_cost_cents,
                    budget_limit_cents=excluded.budget_limit_cents,
                    used_percent=excluded.used_percent,
                    cost_by_operation=excluded.cost_by_operation,
                    updated_at=excluded.updated_at
                """,
                (
                    owner_id,
                    period_id,
                    record.total_cost_cents,
                    record.budget_limit_cents,
                    record.used_percent,
                    1 if record.alert_sent else 0,
                    1 if record.exceeded else 0,
                    json.dumps(record.cost_by_operation, sort_keys=True),
                    record.updated_at.isoformat(),
                ),
            )
            return record

    def get_cost_record(self, owner_id: str, period_id: str) -> Optional[CostUsageRecord]:
        row = self._query_one(
            "SELECT * FROM cost_usage WHERE owner_id = ? AND period_id = ?",
            (owner_id, period_id),
        )
        return self._row_to_cost(row) if row else None

    def list_cost_records(self, period_id: str) -> List[CostUsageRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM cost_usage WHERE period_id = ? ORDER BY owner_id ASC",
                (period_id,),
            ).fetchall()
        return [self._row_to_cost(row) for row in rows]

    def _set_flag_once(self, column: str, owner_id: str, period_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                f"UPDATE cost_usage SET {column} = 1 "
                f"WHERE owner_id = ? AND period_id = ? AND {column} = 0",
                (owner_id, period_id),
            )
            return cur.rowcount > 0

    def mark_alert_sent(self, owner_id: str, period_id: str) -> bool:
        return self._set_flag_once("alert_sent", owner_id, period_id)

    def mark_exceeded(self, owner_id: str, period_id: str) -> bool:
        return self._set_flag_once("exceeded", owner_id, period_id)

    # Push tokens

    def add_push_token(self, owner_id: str, token: PushToken) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO push_tokens (owner_id, token, provider, platform, device_id)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(owner_id, token) DO UPDATE SET
                    provider=excluded.provider,
                    platform=excluded.platform,
                    device_id=excluded.device_id
                """,
                (owner_id, token.token, token.provider, token.platform, token.device_id),
            )

    def list_push_tokens(self, owner_id: str) -> List[PushToken]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM push_tokens WHERE owner_id = ? ORDER BY token ASC", (owner_id,)
            ).fetchall()
        return [
            PushToken(
                token=row["token"],
                provider=row["provider"],
                platform=row["platform"],
                device_id=row["device_id"],
            )
            for row in rows
        ]

    def remove_push_tokens(self, owner_id: str, tokens: List[str]) -> int:
        if not tokens:
            return 0
        with self._transaction() as conn:
            removed = 0
            for token in tokens:
                cur = conn.execute(
                    "DELETE FROM push_tokens WHERE owner_id = ? AND token = ?", (owner_id, token)
                )
                removed += cur.rowcount
            return removed

    def close(self) -> None:
        with self._lock:
            self._conn.close()
