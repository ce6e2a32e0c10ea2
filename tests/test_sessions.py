import pytest

from agentrelay.models import SessionNotFoundError
from agentrelay.sessions import Session, SessionRegistry, SessionState, new_session_id
from tests.fakes import FakeClientTransport

@pytest.fixture
def registry():
    return SessionRegistry()

@pytest.fixture
def session():
    return Session("s1", FakeClientTransport("s1"))

def test_new_session_ids_are_unique():
    ids = {new_session_id() for _ in range(100)}
    assert len(ids) == 100

def test_add_then_get_returns_same_session(registry, session):
    registry.add(session)
    assert registry.get("s1") is session
    assert registry.find("s1") is session
    assert "s1" in registry
    assert len(registry) == 1
    assert registry.ids() == ["s1"]

def test_remove_then_get_raises_not_found(registry, session):
    registry.add(session)
    assert registry.remove("s1") is session

    with pytest.raises(SessionNotFoundError) as exc_info:
        registry.get("s1")
    assert exc_info.value.status_code == 404
    assert "s1" in str(exc_info.value)
    assert registry.find("s1") is None

def test_remove_absent_id_is_noop(registry):
    assert registry.remove("missing") is None
    assert registry.remove(None) is None
    assert len(registry) == 0

def test_get_without_id_raises_not_found(registry):
    with pytest.raises(SessionNotFoundError):
        registry.get(None)

def test_session_lifecycle(session):
    assert session.state is SessionState.CREATED
    assert session.pair == (session.client, None)

    server = object()
    session.activate(server)
    assert session.is_active
    assert session.pair == (session.client, server)

    session.close()
    assert session.is_closed
    session.close()
    assert session.state is SessionState.CLOSED

def test_activate_twice_is_rejected(session):
    session.activate(object())
    with pytest.raises(AssertionError):
        session.activate(object())
