from typing import Dict, List, Optional, Set, Tuple, Union
from datetime import datetime
from enum import Enum

from loguru import logger
import anyio
from ulid import ulid

from agentrelay.models import SessionNotFoundError
from agentrelay.transports.base import ClientTransport, ServerTransport

def new_session_id()->str:
    return ulid()

class SessionState(Enum):
    CREATED = "created"
    ACTIVE = "active"
    CLOSED = "closed"

class Session:
    """One client-facing transport paired with one server-facing transport."""
    def __init__(self, session_id :str, client :ClientTransport, server :Optional[ServerTransport]=None):
        self.session_id = session_id
        self.client = client
        self.server = server
        self.created_at = datetime.now()
        self.state = SessionState.CREATED
        self.cancel_scope :Optional[anyio.CancelScope] = None
        self.pending_requests :Set[Union[int, str]] = set()

    @property
    def pair(self)->Tuple[ClientTransport, Optional[ServerTransport]]:
        return self.client, self.server

    @property
    def is_active(self)->bool:
        return self.state is SessionState.ACTIVE

    @property
    def is_closed(self)->bool:
        return self.state is SessionState.CLOSED

    def activate(self, server :ServerTransport):
        assert self.state is SessionState.CREATED, f"session {self.session_id} is already {self.state.value}"
        self.server = server
        self.state = SessionState.ACTIVE

    def close(self):
        """Cancel all relay work of this session. Never waits on either side."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        if self.cancel_scope is not None:
            self.cancel_scope.cancel()

    def __repr__(self)->str:
        return f"Session(session_id={self.session_id!r}, state={self.state.value})"

class SessionRegistry:
    """
    In-memory map of session id to :class:`Session`.

    Every method is synchronous, so no other task can observe a
    half-inserted or half-removed entry.
    """
    def __init__(self):
        self._sessions :Dict[str, Session] = {}

    def add(self, session :Session):
        self._sessions[session.session_id] = session
        logger.debug(f"Registered session {session.session_id} ({len(self._sessions)} active)")

    def get(self, session_id :Optional[str])->Session:
        session = self.find(session_id)
        if session is None:
            raise SessionNotFoundError.from_id(session_id)
        return session

    def find(self, session_id :Optional[str])->Optional[Session]:
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def remove(self, session_id :Optional[str])->Optional[Session]:
        session = self._sessions.pop(session_id, None) if session_id is not None else None
        if session is not None:
            logger.debug(f"Removed session {session_id} ({len(self._sessions)} active)")
        return session

    def ids(self)->List[str]:
        return list(self._sessions)

    def __contains__(self, session_id :str)->bool:
        return session_id in self._sessions

    def __len__(self)->int:
        return len(self._sessions)
