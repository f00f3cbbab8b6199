"""Authentication state management."""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional

from .session import SessionStore, AUTH_TOKEN_KEY, USER_DATA_KEY

logger = logging.getLogger(__name__)


@dataclass
class UserProfile:
    """Minimal profile of the signed-in user."""

    id: str
    username: str
    email: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "UserProfile":
        return cls(id=str(d.get("id", "")), username=d.get("username", ""), email=d.get("email"))


class AuthManager:
    """Holds the session token and signs the user out when asked to."""

    def __init__(self, session: SessionStore):
        self.session = session
        self.token: Optional[str] = session.get_token()
        user_data = session.get_user()
        self.user: Optional[UserProfile] = UserProfile.from_dict(user_data) if user_data else None
        self.logout_count = 0

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None

    def auth_headers(self) -> Dict[str, str]:
        """Bearer header for the current token, empty when signed out."""
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def login(self, token: str, user: Optional[UserProfile] = None):
        """Persist a session token (and optional profile)."""
        self.token = token
        self.user = user
        self.session.set(AUTH_TOKEN_KEY, token)
        if user:
            self.session.set(USER_DATA_KEY, asdict(user))
        else:
            self.session.remove(USER_DATA_KEY)
        logger.info(f"Session stored for {(user.username or user.id) if user else 'anonymous user'}")

    def logout(self):
        """Clear the persisted session and in-memory auth state."""
        self.session.remove(AUTH_TOKEN_KEY)
        self.session.remove(USER_DATA_KEY)
        self.token = None
        self.user = None
        self.logout_count += 1
        logger.info("Logged out")
