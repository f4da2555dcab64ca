import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from eventlens.api.errors import STATUS_BY_KIND
from eventlens.core.errors import ErrorKind, store_error_from


class QueryCanceled(Exception):
    """Stands in for psycopg's QueryCanceled, which carries the SQLSTATE"""

    sqlstate = "57014"


def test_statement_timeout_maps_to_timeout():
    exc = DBAPIError("SELECT * FROM events", {}, QueryCanceled("canceling statement due to statement timeout"))

    error = store_error_from(exc, "scan")

    assert error.kind == ErrorKind.TIMEOUT
    assert not error.systemic
    assert error.context["operation"] == "scan"
    assert STATUS_BY_KIND[error.kind] == 504


def test_lost_connection_is_systemic():
    exc = OperationalError("INSERT INTO events", {}, Exception("server closed the connection"),
                           connection_invalidated=True)

    error = store_error_from(exc, "insert")

    assert error.kind == ErrorKind.STORE
    assert error.systemic


@pytest.mark.parametrize("exc", [
    IntegrityError("INSERT INTO events", {}, Exception("constraint failed")),
    DBAPIError("SELECT 1", {}, Exception("other failure")),
])
def test_other_store_failures_are_item_level(exc):
    error = store_error_from(exc, "insert")

    assert error.kind == ErrorKind.STORE
    assert not error.systemic
    assert STATUS_BY_KIND[error.kind] == 500
