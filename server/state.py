from typing import Dict, List, Optional

from common.session import Session


class Roster:
    # Live sessions accepted by the host, in join order.
    # Only the host's own thread touches the roster, so there is no lock.
    def __init__(self):
        self._sessions: Dict[str, Session] = {}   # dicts keep insertion order

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, username: str) -> bool:
        return username in self._sessions

    def add(self, session: Session) -> bool:
        ''' Append a session; returns False if its username is already taken '''
        if session.username in self._sessions:
            return False
        self._sessions[session.username] = session
        return True

    def remove(self, session: Session) -> bool:
        ''' Remove a session; returns False if it was not (or no longer) on the roster '''
        if self._sessions.get(session.username) is not session:
            return False
        del self._sessions[session.username]
        return True

    def get(self, username: str) -> Optional[Session]:
        return self._sessions.get(username)

    def users(self) -> List[str]:
        return list(self._sessions.keys())

    def sessions(self) -> List[Session]:
        ''' Snapshot of every session; safe to mutate the roster while iterating it '''
        return list(self._sessions.values())

    def clear(self) -> List[Session]:
        sessions = self.sessions()
        self._sessions.clear()
        return sessions
