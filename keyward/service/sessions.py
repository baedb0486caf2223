from __future__ import annotations

from typing import Any, Dict, List, Optional

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.errors import NotFoundError
from keyward.storage.models import Session, utcnow

logger = get_logger(__name__)


def session_view(session: Session, *, current_session_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": session.id,
        "created_at": session.created_at.isoformat(),
        "last_seen_at": session.last_seen_at.isoformat(),
        "expires_at": session.expires_at.isoformat(),
        "ip_address": session.ip_addr,
        "user_agent": session.user_agent,
        "country": session.country,
        "mfa_verified": session.mfa_verified,
        "current": session.id == current_session_id,
    }


class SessionRegistry:
    """Per-user view over session rows; revocation shares the row rotation uses."""

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def list(self, user_id: str, *, current_session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        now = utcnow()
        return [
            session_view(s, current_session_id=current_session_id)
            for s in self.store.list_sessions(user_id)
            if s.is_active(now)
        ]

    def touch(
        self,
        session_id: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[Session]:
        return self.store.touch_session(session_id, ip_addr=ip_addr, user_agent=user_agent)

    def get_owned(self, user_id: str, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        # Other users' sessions are reported as missing
        if not session or session.user_id != user_id:
            raise NotFoundError("session not found")
        return session

    def revoke(self, session_id: str, reason: str = "revoked") -> bool:
        revoked = self.store.revoke_session(session_id, reason)
        if revoked:
            logger.info("session_revoked", session_id=session_id, reason=reason)
        return revoked

    def revoke_all(
        self, user_id: str, reason: str = "revoke_all", *, except_session_id: Optional[str] = None
    ) -> List[str]:
        revoked = self.store.revoke_user_sessions(
            user_id, reason, except_session_id=except_session_id
        )
        logger.info("sessions_revoked_all", user_id=user_id, count=len(revoked))
        return revoked

    def recent_history(self, user_id: str) -> List[Session]:
        """Latest sessions, revoked ones included, for anomaly scoring."""
        return self.store.list_sessions(
            user_id, include_revoked=True, limit=self.settings.anomaly_history_size
        )
