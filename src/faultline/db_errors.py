"""Translate raw database engine errors into client-safe messages.

This is the only module that reads vendor error text. `extract()` walks an
ordered rule table, first match wins, and always returns a result: when a
rule fires but its capture fails, that rule's documented fallback is used.

The patterns live in `DatabaseRules` so each engine dialect is data, not
code. `MYSQL_RULES` follows MySQL/MariaDB SQLSTATEs and the PDO-style
"1644 <text>" marker for SIGNAL; `POSTGRES_RULES` covers the same shapes
for PostgreSQL (RAISE EXCEPTION, 23xxx, 40P01/40001, 42xxx, 08xxx).
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass
from typing import Any, NamedTuple

import asyncpg

from faultline.service_errors import DatabaseFailure, code_from_text

CONFLICT = 409
SERVER_ERROR = 500
UNAVAILABLE = 503


class ExtractedError(NamedTuple):
    message: str
    code: str
    status: int


@dataclass(frozen=True)
class DatabaseRules:
    """Versioned pattern data for one database engine."""

    name: str
    trigger_states: frozenset[str]
    # Must define a `text` group holding the human message after the marker.
    trigger_marker: re.Pattern[str]
    integrity_states: frozenset[str]
    duplicate_marker: re.Pattern[str]
    duplicate_value: re.Pattern[str]
    duplicate_key: re.Pattern[str]
    insert_fk_marker: re.Pattern[str]
    delete_fk_marker: re.Pattern[str]
    delete_fk_constraint: re.Pattern[str]
    deadlock_states: frozenset[str]
    deadlock_marker: re.Pattern[str]
    syntax_states: frozenset[str]
    syntax_prefix: str
    connection_prefix: str
    key_prefix: re.Pattern[str]
    key_suffix: re.Pattern[str]

    def __post_init__(self) -> None:
        if "text" not in self.trigger_marker.groupindex:
            raise ValueError(f"{self.name}: trigger_marker must define a (?P<text>...) group")

    def with_trigger_marker(self, pattern: str) -> DatabaseRules:
        """Return a copy using a different marker for user-raised errors."""
        return dataclasses.replace(self, trigger_marker=re.compile(pattern, re.MULTILINE))


MYSQL_RULES = DatabaseRules(
    name="mysql",
    trigger_states=frozenset({"45000"}),
    trigger_marker=re.compile(r"1644\s+(?P<text>.+?)(?:\s*$|\\n)", re.MULTILINE),
    integrity_states=frozenset({"23000"}),
    duplicate_marker=re.compile(r"Duplicate entry", re.IGNORECASE),
    duplicate_value=re.compile(r"Duplicate entry '(?P<value>[^']+)' for key"),
    duplicate_key=re.compile(r"for key '(?P<key>[^']+)'"),
    insert_fk_marker=re.compile(
        r"Cannot add or update a child row|foreign key constraint", re.IGNORECASE
    ),
    delete_fk_marker=re.compile(r"Cannot delete or update a parent row", re.IGNORECASE),
    delete_fk_constraint=re.compile(r"CONSTRAINT `(?P<name>[^`]+)`"),
    deadlock_states=frozenset({"40001"}),
    deadlock_marker=re.compile(r"Deadlock", re.IGNORECASE),
    syntax_states=frozenset({"42000"}),
    syntax_prefix="",
    connection_prefix="08",
    key_prefix=re.compile(r"^(?:uk|idx|fk)_"),
    key_suffix=re.compile(r"_(?:franchise|tenant)$"),
)

POSTGRES_RULES = DatabaseRules(
    name="postgres",
    trigger_states=frozenset({"P0001"}),
    trigger_marker=re.compile(r"^(?:ERROR:\s*)?(?P<text>[^\n]+?)\s*$", re.MULTILINE),
    integrity_states=frozenset({"23000", "23001", "23502", "23503", "23505", "23514", "23P01"}),
    duplicate_marker=re.compile(r"duplicate key value violates unique constraint", re.IGNORECASE),
    duplicate_value=re.compile(r"Key \([^)]*\)=\((?P<value>[^)]+)\) already exists"),
    duplicate_key=re.compile(r'unique constraint "(?P<key>[^"]+)"'),
    insert_fk_marker=re.compile(r"insert or update on table .* violates foreign key constraint", re.IGNORECASE),
    delete_fk_marker=re.compile(r"update or delete on table .* violates foreign key constraint", re.IGNORECASE),
    delete_fk_constraint=re.compile(r'foreign key constraint "(?P<name>[^"]+)"'),
    deadlock_states=frozenset({"40P01", "40001"}),
    deadlock_marker=re.compile(r"deadlock detected", re.IGNORECASE),
    syntax_states=frozenset(),
    syntax_prefix="42",
    connection_prefix="08",
    key_prefix=re.compile(r"^(?:uk|ux|idx|fk|pk)_"),
    key_suffix=re.compile(r"(?:_(?:franchise|tenant))?(?:_f?key)?$"),
)

DIALECTS: dict[str, DatabaseRules] = {
    MYSQL_RULES.name: MYSQL_RULES,
    "mariadb": MYSQL_RULES,
    POSTGRES_RULES.name: POSTGRES_RULES,
    "postgresql": POSTGRES_RULES,
}


def rules_for(dialect: str, trigger_marker: str | None = None) -> DatabaseRules:
    """Look up a dialect by name, optionally overriding its trigger marker."""
    try:
        rules = DIALECTS[dialect.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown database dialect '{dialect}'. Expected one of: {', '.join(sorted(DIALECTS))}")
    if trigger_marker:
        rules = rules.with_trigger_marker(trigger_marker)
    return rules


def _label(name: str, rules: DatabaseRules) -> str:
    # MySQL 8 reports keys as `table.key`.
    name = name.rsplit(".", 1)[-1]
    name = rules.key_prefix.sub("", name, count=1)
    name = rules.key_suffix.sub("", name, count=1)
    words = [w for w in name.split("_") if w]
    return " ".join(w[:1].upper() + w[1:] for w in words)


def field_label_from_key(key: str, rules: DatabaseRules = MYSQL_RULES) -> str:
    """uk_email_franchise -> Email, idx_first_name -> First Name."""
    return _label(key, rules)


def entity_from_constraint(constraint: str, rules: DatabaseRules = MYSQL_RULES) -> str:
    """fk_customer -> Customer."""
    return _label(constraint, rules)


def _extract_trigger(message: str, rules: DatabaseRules) -> ExtractedError:
    match = rules.trigger_marker.search(message)
    text = match.group("text").strip() if match and match.group("text") else ""
    code = code_from_text(text)
    if not text or not code:
        return ExtractedError("Business rule violation", "BUSINESS_RULE_VIOLATION", CONFLICT)
    return ExtractedError(text, code, CONFLICT)


def _extract_duplicate(message: str, rules: DatabaseRules) -> ExtractedError:
    value = rules.duplicate_value.search(message)
    key = rules.duplicate_key.search(message)
    field = _label(key.group("key"), rules) if key else ""
    if value is None or not field:
        return ExtractedError("A record with these values already exists", "DUPLICATE_ENTRY", CONFLICT)
    return ExtractedError(
        f"A record with this {field} already exists: '{value.group('value')}'",
        "DUPLICATE_ENTRY",
        CONFLICT,
    )


def _extract_delete_fk(message: str, rules: DatabaseRules) -> ExtractedError:
    constraint = rules.delete_fk_constraint.search(message)
    entity = _label(constraint.group("name"), rules) if constraint else ""
    if not entity:
        return ExtractedError(
            "Cannot delete record because other records depend on it", "FOREIGN_KEY_DELETE", CONFLICT
        )
    return ExtractedError(
        f"Cannot delete {entity} because other records depend on it", "FOREIGN_KEY_DELETE", CONFLICT
    )


def extract(state: str | None, message: str | None, rules: DatabaseRules = MYSQL_RULES) -> ExtractedError:
    """Map (SQLSTATE, vendor message) to a client-safe (message, code, status).

    Rules are evaluated in order; the order matters because one message can
    satisfy several substring checks.
    """
    state = str(state or "").strip().upper()
    message = str(message or "")

    if state in rules.trigger_states:
        return _extract_trigger(message, rules)

    if state in rules.integrity_states:
        if rules.duplicate_marker.search(message):
            return _extract_duplicate(message, rules)
        # The delete-time message also mentions "foreign key constraint".
        if rules.insert_fk_marker.search(message) and not rules.delete_fk_marker.search(message):
            return ExtractedError("Referenced record does not exist", "FOREIGN_KEY_VIOLATION", CONFLICT)
        if rules.delete_fk_marker.search(message):
            return _extract_delete_fk(message, rules)
        return ExtractedError("Data integrity violation", "INTEGRITY_VIOLATION", CONFLICT)

    if state in rules.deadlock_states or rules.deadlock_marker.search(message):
        return ExtractedError("Database conflict. Please try again.", "SERVICE_UNAVAILABLE", UNAVAILABLE)

    if state in rules.syntax_states or (rules.syntax_prefix and state.startswith(rules.syntax_prefix)):
        return ExtractedError("Database query error", "INTERNAL_ERROR", SERVER_ERROR)

    if rules.connection_prefix and state.startswith(rules.connection_prefix):
        return ExtractedError("Database connection error", "SERVICE_UNAVAILABLE", UNAVAILABLE)

    return ExtractedError("Database error occurred", "INTERNAL_ERROR", SERVER_ERROR)


# MySQL drivers without SQLSTATE (PyMySQL, mysqlclient) report only errno.
MYSQL_ERRNO_STATES: dict[int, str] = {
    1062: "23000",  # ER_DUP_ENTRY
    1451: "23000",  # ER_ROW_IS_REFERENCED_2
    1452: "23000",  # ER_NO_REFERENCED_ROW_2
    1048: "23000",  # ER_BAD_NULL_ERROR
    1644: "45000",  # ER_SIGNAL_EXCEPTION
    1213: "40001",  # ER_LOCK_DEADLOCK
    1064: "42000",  # ER_PARSE_ERROR
    1142: "42000",  # ER_TABLEACCESS_DENIED_ERROR
    2002: "08001",
    2003: "08001",
    2006: "08S01",
    2013: "08S01",
}

_MYSQL_DRIVER_MODULES = frozenset({"pymysql", "MySQLdb", "aiomysql", "asyncmy"})


def database_failure_from(exc: BaseException) -> DatabaseFailure | None:
    """Adapt a raw driver exception to a DatabaseFailure, or None if it is not one."""
    if isinstance(exc, DatabaseFailure):
        return exc

    if isinstance(exc, asyncpg.PostgresError):
        return DatabaseFailure(state=exc.sqlstate or "", vendor_message=str(exc))

    state: Any = getattr(exc, "sqlstate", None) or getattr(exc, "pgcode", None)
    errno = getattr(exc, "errno", None)
    if state and isinstance(state, str):
        message = getattr(exc, "msg", None) or str(exc)
        if isinstance(errno, int) and errno > 0:
            message = f"{errno} {message}"
        return DatabaseFailure(state=state, engine_code=errno, vendor_message=message)

    if type(exc).__module__.split(".", 1)[0] in _MYSQL_DRIVER_MODULES:
        args = exc.args
        if len(args) >= 2 and isinstance(args[0], int):
            return DatabaseFailure(
                state=MYSQL_ERRNO_STATES.get(args[0], "HY000"),
                engine_code=args[0],
                vendor_message=f"{args[0]} {args[1]}",
            )
    return None
