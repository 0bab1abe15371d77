"""
Connection Registry

Single ownership point for {agent identity -> live session}. Sessions never
touch the map themselves; the agent session handler registers and removes
them, and every read or mutation goes through one lock.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from ..protocol.session import Session

logger = structlog.get_logger()

SUPERSEDED_REASON = "superseded by a new session"


class ConnectionRegistry:
    """At most one live session per agent identity"""

    def __init__(self):
        # agent_id -> Session
        self.active_sessions: Dict[str, Session] = {}
        # Registration timestamps
        self.registered_at: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def register(self, identity: str, session: Session) -> Optional[Session]:
        """
        Make session the live session for identity

        Any previous session for the identity is closed before this returns.

        Returns:
            The superseded session, or None
        """
        async with self._lock:
            previous = self.active_sessions.get(identity)
            self.active_sessions[identity] = session
            self.registered_at[identity] = datetime.now(timezone.utc)
            if previous is not None and previous is not session:
                logger.info("Superseding agent session",
                            agent_id=identity,
                            old_session=previous.session_id,
                            new_session=session.session_id)
                await previous.close(SUPERSEDED_REASON)
            else:
                previous = None

        logger.info("Agent session registered",
                    agent_id=identity,
                    session_id=session.session_id,
                    total_agents=len(self.active_sessions))
        return previous

    async def lookup(self, identity: str) -> Optional[Session]:
        async with self._lock:
            return self.active_sessions.get(identity)

    async def remove(self, identity: str, session: Session) -> bool:
        """
        Remove the entry for identity if session is still the registered one

        Returns:
            False (no-op) when session was already superseded or removed
        """
        async with self._lock:
            if self.active_sessions.get(identity) is not session:
                logger.debug("Ignoring removal of stale session",
                             agent_id=identity, session_id=session.session_id)
                return False
            del self.active_sessions[identity]
            self.registered_at.pop(identity, None)

        logger.info("Agent session removed",
                    agent_id=identity,
                    session_id=session.session_id,
                    remaining_agents=len(self.active_sessions))
        return True

    async def connected_agents(self) -> List[Dict[str, Any]]:
        """Connection metadata of every live session"""
        async with self._lock:
            agents = []
            for identity, session in self.active_sessions.items():
                info = session.info()
                info["registered_at"] = self.registered_at[identity].isoformat()
                agents.append(info)
        return agents

    async def count(self) -> int:
        async with self._lock:
            return len(self.active_sessions)

    async def close_all(self, reason: str = "server shutting down") -> None:
        """Close and forget every session (for shutdown)"""
        async with self._lock:
            sessions = list(self.active_sessions.values())
            self.active_sessions.clear()
            self.registered_at.clear()

        logger.info("Closing all agent sessions", total_sessions=len(sessions))
        results = await asyncio.gather(*(session.close(reason) for session in sessions), return_exceptions=True)
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning("Error closing agent session",
                               agent_id=session.identity, error=str(result))
