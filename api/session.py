"""
Session lifecycle against the external FL service.

A ``SessionManager`` holds at most one session id. It is owned by the
training orchestrator (there is no process-wide session cache), creates a
session on first use, and renews it proactively a few minutes before the
service-side expiry.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from .errors import DashboardError, SessionError
from .fl_client import FLServiceClient
from .shared.logger import get_logger

logger = get_logger(__name__)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


@dataclass
class Session:
    """A server-issued session id with its known lifetime."""

    id: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now()) >= self.expires_at

    def to_dict(self):
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


class SessionManager:
    """Creates, validates and proactively renews the dashboard session."""

    def __init__(
        self,
        client: FLServiceClient,
        lifetime: float = 1800.0,
        renew_margin: float = 300.0,
        clock: Callable[[], datetime] = datetime.now,
        on_renewed: Optional[Callable[[Session, bool], Awaitable[None]]] = None,
        on_renewal_failed: Optional[Callable[[SessionError], Awaitable[None]]] = None,
    ):
        """
        Args:
            client: External service client
            lifetime: Session lifetime in seconds
            renew_margin: Renew this many seconds before expiry
            clock: Returns the current time (injectable for tests)
            on_renewed: Awaited after a timer-driven renewal with
                (session, replaced) where ``replaced`` tells whether a new id
                was issued
            on_renewal_failed: Awaited when a timer-driven renewal fails
        """
        self._client = client
        self.lifetime = lifetime
        self.renew_margin = renew_margin
        self._clock = clock
        self._on_renewed = on_renewed
        self._on_renewal_failed = on_renewal_failed
        self._session: Optional[Session] = None
        self._renewal_task: Optional[asyncio.Task] = None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def session_id(self) -> Optional[str]:
        return self._session.id if self._session else None

    async def acquire(self, renew: bool = False) -> str:
        """Return a usable session id.

        Without ``renew``, a cached non-expired session is returned as is.
        With ``renew``, the cached session is checked against the service:
        still valid keeps the id, anything else requests a new one.

        Raises:
            SessionError: The service is unreachable or refused to issue a
                session.
        """
        current = self._session

        if current is not None and not renew and not current.is_expired(self._clock()):
            return current.id

        if current is not None and renew:
            if await self._is_valid(current.id):
                self._session = self._stamp(current.id)
                self._schedule_renewal()
                logger.info("Session %s still valid, keeping it", current.id)
                return current.id
            logger.warning("Session %s reported invalid, requesting a new one", current.id)

        return await self._create()

    async def _is_valid(self, session_id: str) -> bool:
        try:
            return await self._client.session_status(session_id)
        except SessionError:
            return False
        except DashboardError as e:
            raise SessionError(f"Failed to validate session: {e.message}") from e

    async def _create(self) -> str:
        try:
            session_id = await self._client.new_session()
        except SessionError:
            self._session = None
            raise
        except DashboardError as e:
            self._session = None
            raise SessionError(f"Failed to initialize session: {e.message}") from e

        self._session = self._stamp(session_id)
        self._schedule_renewal()
        logger.info("Session %s created (expires %s)", session_id, self._session.expires_at)
        return session_id

    def _stamp(self, session_id: str) -> Session:
        now = self._clock()
        return Session(
            id=session_id,
            created_at=now,
            expires_at=now + timedelta(seconds=self.lifetime),
        )

    def _schedule_renewal(self) -> None:
        """(Re)start the proactive renewal timer for the current session."""
        self._cancel_renewal()
        if self._session is None:
            return
        delay = max(self.lifetime - self.renew_margin, 0.0)
        self._renewal_task = asyncio.create_task(self._renew_after(delay))

    async def _renew_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        previous = self.session_id
        # Detach so acquire() rescheduling does not cancel this task
        self._renewal_task = None
        try:
            session_id = await self.acquire(renew=True)
        except SessionError as e:
            logger.error("Proactive session renewal failed: %s", e)
            if self._on_renewal_failed is not None:
                await self._on_renewal_failed(e)
            return

        if self._on_renewed is not None and self._session is not None:
            await self._on_renewed(self._session, session_id != previous)

    def _cancel_renewal(self) -> None:
        task = self._renewal_task
        self._renewal_task = None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    def invalidate(self) -> None:
        """Forget the current session and stop its renewal timer."""
        self._cancel_renewal()
        self._session = None

    def close(self) -> None:
        """Stop the renewal timer; the session id itself is kept."""
        self._cancel_renewal()
