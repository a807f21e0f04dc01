import pytest

from mcpwire.session_ids import (
    ID_PREFIX,
    InsecureStatefulSessionIdManager,
    InvalidSessionIdError,
    SessionIdManager,
    StatelessSessionIdManager,
)


def test_base_manager_is_abstract():
    with pytest.raises(TypeError):
        SessionIdManager()


def test_stateless_generates_empty_id():
    assert StatelessSessionIdManager().generate() == ""


def test_stateless_accepts_missing_id():
    assert StatelessSessionIdManager().validate("") is False


def test_stateless_rejects_any_id():
    with pytest.raises(InvalidSessionIdError, match="stateless"):
        StatelessSessionIdManager().validate("dummy-session-id")


def test_stateless_terminate_allowed():
    assert StatelessSessionIdManager().terminate("anything") is False


def test_stateful_generates_prefixed_ids():
    manager = InsecureStatefulSessionIdManager()
    first = manager.generate()
    second = manager.generate()
    assert first.startswith(ID_PREFIX)
    assert len(first) == len(ID_PREFIX) + 36
    assert first != second


def test_stateful_validates_generated_id():
    manager = InsecureStatefulSessionIdManager()
    assert manager.validate(manager.generate()) is False


def test_stateful_rejects_dummy_id():
    with pytest.raises(InvalidSessionIdError, match="invalid session id: dummy-session-id"):
        InsecureStatefulSessionIdManager().validate("dummy-session-id")


@pytest.mark.parametrize(
    "suffix",
    [
        "123e4567-e89b-12d3-a456-426614174000",
        "123e4567e89b12d3a456426614174000",
        "{123e4567-e89b-12d3-a456-426614174000}",
        "urn:uuid:123e4567-e89b-12d3-a456-426614174000",
    ],
)
def test_stateful_accepts_uuid_forms(suffix):
    assert InsecureStatefulSessionIdManager().validate(ID_PREFIX + suffix) is False


@pytest.mark.parametrize(
    "session_id",
    [
        "",
        "123e4567-e89b-12d3-a456-426614174000",
        ID_PREFIX,
        ID_PREFIX + "not-a-uuid",
        ID_PREFIX + "123e4567-e89b-12d3-a456-42661417400z",
        ID_PREFIX + "1234-5678e89b12d3a456426614174000",
    ],
)
def test_stateful_rejects_malformed_ids(session_id):
    with pytest.raises(InvalidSessionIdError):
        InsecureStatefulSessionIdManager().validate(session_id)


def test_stateful_terminate_allowed():
    manager = InsecureStatefulSessionIdManager()
    assert manager.terminate(manager.generate()) is False


def test_invalid_session_id_error_is_value_error():
    with pytest.raises(ValueError):
        InsecureStatefulSessionIdManager().validate("bogus")