"""Web adapter utilities.

Session hooks a web framework calls at request start and response end.
"""

from .session import Session, SessionStore, new_session_id

__all__ = ["Session", "SessionStore", "new_session_id"]
