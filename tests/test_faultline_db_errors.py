"""Table-driven tests for the database error extractor and driver adapter."""

import asyncpg
import pytest

from faultline.db_errors import (
    MYSQL_RULES,
    POSTGRES_RULES,
    database_failure_from,
    entity_from_constraint,
    extract,
    field_label_from_key,
    rules_for,
)
from faultline.service_errors import DatabaseFailure


class TestMySQLRules:
    @pytest.mark.parametrize(
        "state,message,expected",
        [
            (
                "45000",
                "SQLSTATE[45000]: <<Unknown error>>: 1644 Overpayment not allowed",
                ("Overpayment not allowed", "OVERPAYMENT_NOT_ALLOWED", 409),
            ),
            (
                "45000",
                "1644 Invoice already closed\nCall stack follows",
                ("Invoice already closed", "INVOICE_ALREADY_CLOSED", 409),
            ),
            (
                "45000",
                "SQLSTATE[45000]: <<Unknown error>>: Something went wrong",
                ("Business rule violation", "BUSINESS_RULE_VIOLATION", 409),
            ),
            (
                "23000",
                "SQLSTATE[23000]: Integrity constraint violation: 1062 "
                "Duplicate entry 'john@example.com' for key 'uk_email_franchise'",
                ("A record with this Email already exists: 'john@example.com'", "DUPLICATE_ENTRY", 409),
            ),
            (
                "23000",
                "Duplicate entry 'ACME' for key 'customers.idx_company_name_tenant'",
                ("A record with this Company Name already exists: 'ACME'", "DUPLICATE_ENTRY", 409),
            ),
            (
                "23000",
                "Duplicate entry for composite key",
                ("A record with these values already exists", "DUPLICATE_ENTRY", 409),
            ),
            (
                "23000",
                "Cannot add or update a child row: a foreign key constraint fails "
                "(`db`.`invoices`, CONSTRAINT `fk_customer` FOREIGN KEY (`customer_id`) "
                "REFERENCES `customers` (`id`))",
                ("Referenced record does not exist", "FOREIGN_KEY_VIOLATION", 409),
            ),
            (
                "23000",
                "Cannot delete or update a parent row: a foreign key constraint fails "
                "(`db`.`invoices`, CONSTRAINT `fk_customer` FOREIGN KEY (`customer_id`) "
                "REFERENCES `customers` (`id`))",
                ("Cannot delete Customer because other records depend on it", "FOREIGN_KEY_DELETE", 409),
            ),
            (
                "23000",
                "Cannot delete or update a parent row: a foreign key constraint fails",
                ("Cannot delete record because other records depend on it", "FOREIGN_KEY_DELETE", 409),
            ),
            (
                "23000",
                "Column 'customer_id' cannot be null",
                ("Data integrity violation", "INTEGRITY_VIOLATION", 409),
            ),
            (
                "40001",
                "Serialization failure: 1213 Deadlock found when trying to get lock",
                ("Database conflict. Please try again.", "SERVICE_UNAVAILABLE", 503),
            ),
            (
                "HY000",
                "Deadlock found when trying to get lock; try restarting transaction",
                ("Database conflict. Please try again.", "SERVICE_UNAVAILABLE", 503),
            ),
            (
                "42000",
                "You have an error in your SQL syntax; check the manual near 'FORM invoices'",
                ("Database query error", "INTERNAL_ERROR", 500),
            ),
            (
                "08S01",
                "Communications link failure",
                ("Database connection error", "SERVICE_UNAVAILABLE", 503),
            ),
            (
                "08004",
                "Server rejected the connection",
                ("Database connection error", "SERVICE_UNAVAILABLE", 503),
            ),
            (
                "HY000",
                "General error: 2006 MySQL server has gone away",
                ("Database error occurred", "INTERNAL_ERROR", 500),
            ),
            (
                None,
                None,
                ("Database error occurred", "INTERNAL_ERROR", 500),
            ),
        ],
    )
    def test_extract(self, state, message, expected):
        assert tuple(extract(state, message, MYSQL_RULES)) == expected

    def test_duplicate_beats_generic_integrity(self):
        message = "Duplicate entry '5' for key 'uk_invoice_number'; integrity constraint violation"
        result = extract("23000", message)
        assert result.code == "DUPLICATE_ENTRY"
        assert result.message == "A record with this Invoice Number already exists: '5'"

    def test_trigger_state_wins_over_deadlock_marker(self):
        result = extract("45000", "1644 Deadlock policy violated")
        assert result.code == "DEADLOCK_POLICY_VIOLATED"
        assert result.status == 409

    def test_extract_is_deterministic(self):
        args = ("23000", "Duplicate entry 'x' for key 'uk_slug'")
        assert extract(*args) == extract(*args)

    def test_vendor_text_never_leaks_for_syntax_errors(self):
        result = extract("42000", "near 'SELECT password FROM users'")
        assert "password" not in result.message


class TestPostgresRules:
    @pytest.mark.parametrize(
        "state,message,expected",
        [
            (
                "P0001",
                "Overpayment not allowed",
                ("Overpayment not allowed", "OVERPAYMENT_NOT_ALLOWED", 409),
            ),
            (
                "P0001",
                "",
                ("Business rule violation", "BUSINESS_RULE_VIOLATION", 409),
            ),
            (
                "23505",
                'duplicate key value violates unique constraint "uk_email_tenant"\n'
                "DETAIL:  Key (email, tenant_id)=(john@example.com, 4) already exists.",
                ("A record with this Email already exists: 'john@example.com, 4'", "DUPLICATE_ENTRY", 409),
            ),
            (
                "23505",
                'duplicate key value violates unique constraint "users_username_key"\n'
                "DETAIL:  Key (username)=(ada) already exists.",
                ("A record with this Users Username already exists: 'ada'", "DUPLICATE_ENTRY", 409),
            ),
            (
                "23505",
                'duplicate key value violates unique constraint "uk_email"',
                ("A record with these values already exists", "DUPLICATE_ENTRY", 409),
            ),
            (
                "23503",
                'insert or update on table "invoices" violates foreign key constraint "fk_customer"',
                ("Referenced record does not exist", "FOREIGN_KEY_VIOLATION", 409),
            ),
            (
                "23503",
                'update or delete on table "customers" violates foreign key constraint "fk_customer" '
                'on table "invoices"',
                ("Cannot delete Customer because other records depend on it", "FOREIGN_KEY_DELETE", 409),
            ),
            (
                "23502",
                'null value in column "customer_id" violates not-null constraint',
                ("Data integrity violation", "INTEGRITY_VIOLATION", 409),
            ),
            (
                "40P01",
                "deadlock detected",
                ("Database conflict. Please try again.", "SERVICE_UNAVAILABLE", 503),
            ),
            (
                "40001",
                "could not serialize access due to concurrent update",
                ("Database conflict. Please try again.", "SERVICE_UNAVAILABLE", 503),
            ),
            (
                "42P01",
                'relation "invoicez" does not exist',
                ("Database query error", "INTERNAL_ERROR", 500),
            ),
            (
                "08006",
                "connection failure",
                ("Database connection error", "SERVICE_UNAVAILABLE", 503),
            ),
            (
                "22012",
                "division by zero",
                ("Database error occurred", "INTERNAL_ERROR", 500),
            ),
        ],
    )
    def test_extract(self, state, message, expected):
        assert tuple(extract(state, message, POSTGRES_RULES)) == expected


@pytest.mark.parametrize(
    "key,label",
    [
        ("uk_email_franchise", "Email"),
        ("uk_phone", "Phone"),
        ("idx_username", "Username"),
        ("idx_first_name_tenant", "First Name"),
        ("users.uk_email", "Email"),
        ("email", "Email"),
    ],
)
def test_field_label_from_key(key, label):
    assert field_label_from_key(key) == label


def test_entity_from_constraint():
    assert entity_from_constraint("fk_customer") == "Customer"
    assert entity_from_constraint("fk_line_item") == "Line Item"
    assert entity_from_constraint("invoices_customer_id_fkey", POSTGRES_RULES) == "Invoices Customer Id"


class TestRulesFor:
    def test_known_dialects(self):
        assert rules_for("mysql") is MYSQL_RULES
        assert rules_for("PostgreSQL") is POSTGRES_RULES

    def test_unknown_dialect(self):
        with pytest.raises(ValueError, match="Unknown database dialect"):
            rules_for("oracle")

    def test_custom_trigger_marker(self):
        rules = rules_for("mysql", r"ORA-20001:\s*(?P<text>[^\n]+)")
        result = extract("45000", "ORA-20001: Credit limit exceeded", rules)
        assert result == ("Credit limit exceeded", "CREDIT_LIMIT_EXCEEDED", 409)
        assert MYSQL_RULES.trigger_marker.pattern.startswith("1644")

    def test_marker_without_text_group_is_rejected(self):
        with pytest.raises(ValueError, match="text"):
            rules_for("mysql", r"ORA-20001:\s*(.+)")


class FakePyMySQLError(Exception):
    pass


FakePyMySQLError.__module__ = "pymysql.err"


class FakeConnectorError(Exception):
    """Shaped like mysql.connector.Error."""

    def __init__(self, errno, sqlstate, msg):
        super().__init__(f"{errno} ({sqlstate}): {msg}")
        self.errno = errno
        self.sqlstate = sqlstate
        self.msg = msg


class TestDatabaseFailureFrom:
    def test_asyncpg_error(self):
        exc = asyncpg.exceptions.UniqueViolationError('duplicate key value violates unique constraint "uk_email"')
        failure = database_failure_from(exc)
        assert isinstance(failure, DatabaseFailure)
        assert failure.state == "23505"
        assert "uk_email" in failure.vendor_message

    def test_pymysql_errno_maps_to_sqlstate(self):
        exc = FakePyMySQLError(1644, "Overpayment not allowed")
        failure = database_failure_from(exc)
        assert failure.state == "45000"
        assert failure.engine_code == 1644
        assert extract(failure.state, failure.vendor_message).message == "Overpayment not allowed"

    def test_unknown_pymysql_errno(self):
        failure = database_failure_from(FakePyMySQLError(9999, "odd"))
        assert failure.state == "HY000"

    def test_connector_style_error(self):
        exc = FakeConnectorError(1062, "23000", "Duplicate entry 'a@b.c' for key 'uk_email'")
        failure = database_failure_from(exc)
        assert failure.state == "23000"
        assert failure.vendor_message == "1062 Duplicate entry 'a@b.c' for key 'uk_email'"

    def test_existing_failure_passes_through(self):
        failure = DatabaseFailure("40001", None, "Deadlock")
        assert database_failure_from(failure) is failure

    @pytest.mark.parametrize(
        "exc",
        [RuntimeError("boom"), ConnectionRefusedError(111, "refused"), ValueError("x")],
    )
    def test_non_database_errors(self, exc):
        assert database_failure_from(exc) is None
