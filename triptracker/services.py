from datetime import datetime
from typing import Callable, Optional
from sqlalchemy.orm import sessionmaker
from .models import utcnow
from .recorder import TripRecorder
from .remote import RemoteStore
from .simulator import TrackReplayer
from .sync import SyncService
from .wsmanager import ConnectionManager


class Services:
    """Everything the HTTP layer needs, wired around one explicit store handle."""

    def __init__(
        self,
        session_factory: sessionmaker,
        remote: Optional[RemoteStore] = None,
        user_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.remote = remote or RemoteStore()
        self.manager = ConnectionManager()
        self.recorder = TripRecorder(session_factory, user_id=user_id, clock=clock)
        self.sync = SyncService(session_factory, self.remote, clock=clock)
        self.replayer = TrackReplayer(self.recorder)

        self.recorder.subscribe(self.manager.notify)

    @property
    def user_id(self) -> str:
        return self.recorder.user_id

    async def aclose(self):
        self.replayer.stop()
        await self.remote.aclose()
