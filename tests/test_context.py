import uuid

from servicekit.context import (
    generate_request_id,
    get_request_id,
    get_transaction_id,
    request_id_scope,
    transaction_id_scope,
)


def test_with_and_get_request_id():
    with request_id_scope("req-123"):
        assert get_request_id() == "req-123"
    assert get_request_id() == ""


def test_request_id_scope_nesting_restores_outer():
    with request_id_scope("outer"):
        with request_id_scope("inner"):
            assert get_request_id() == "inner"
        assert get_request_id() == "outer"


def test_generate_request_id_unique():
    a = generate_request_id()
    b = generate_request_id()
    assert a != "" and b != ""
    assert a != b
    assert str(uuid.UUID(a)) == a


def test_with_and_get_transaction_id():
    with transaction_id_scope("trx-1"):
        assert get_transaction_id() == "trx-1"
        assert get_request_id() == ""
    assert get_transaction_id() == ""


def test_scope_resets_on_exception():
    try:
        with transaction_id_scope("trx-err"):
            raise KeyError("boom")
    except KeyError:
        pass
    assert get_transaction_id() == ""