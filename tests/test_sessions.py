from unittest.mock import MagicMock

from voice_relay.models.sessions import SessionManager


def make_session(call_id):
    session = MagicMock()
    session.call_id = call_id
    return session


def test_add_and_get_session():
    manager = SessionManager()
    session = make_session("CA1")
    manager.add_session(session)

    assert manager.get_session("CA1") is session
    assert manager.get_session("CA2") is None
    assert len(manager) == 1


def test_sessions_are_indexed_independently():
    manager = SessionManager()
    first, second = make_session("CA1"), make_session("CA2")
    manager.add_session(first)
    manager.add_session(second)

    manager.remove_session("CA1")

    assert manager.get_session("CA1") is None
    assert manager.get_session("CA2") is second
    assert list(manager.get_all_sessions()) == ["CA2"]


def test_remove_unknown_session_is_noop():
    manager = SessionManager()
    manager.remove_session("missing")
    assert len(manager) == 0
