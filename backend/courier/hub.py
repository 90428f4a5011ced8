"""Messaging hub.

Owns every long-lived component of the messaging core. The application
lifespan builds one hub at startup, stores it on ``app.state.hub`` and
closes it at shutdown; routes and WebSocket sessions receive it through
``get_hub`` instead of reaching for module globals.
"""
import logging

from starlette.requests import HTTPConnection

from .config import AppSettings
from .directory.service import DirectoryService
from .media.service import MediaStorage
from .messages.store import MessageStore
from .notifications.outbox import PushOutbox
from .realtime.delivery import DeliveryEngine
from .realtime.registry import ConnectionRegistry
from .realtime.rooms import RoomManager

logger = logging.getLogger(__name__)


class MessagingHub:
    """Registry, rooms, stores and the delivery engine for one process."""

    def __init__(self, settings: AppSettings) -> None:
        self.settings = settings
        storage = settings.storage

        self.registry = ConnectionRegistry()
        self.rooms = RoomManager()
        self.store = MessageStore(db_path=storage.path_for(storage.messages_db))
        self.directory = DirectoryService(db_path=storage.path_for(storage.directory_db))
        self.outbox = PushOutbox(db_path=storage.path_for(storage.outbox_db))
        self.media = MediaStorage(
            upload_dir=settings.uploads.upload_dir,
            public_base_url=settings.uploads.public_base_url,
            max_file_size_bytes=settings.uploads.max_file_size_bytes,
            allowed_mime_prefixes=settings.uploads.allowed_mime_prefixes,
        )
        self.engine = DeliveryEngine(
            registry=self.registry,
            rooms=self.rooms,
            store=self.store,
            directory=self.directory,
            outbox=self.outbox,
            settings=settings.messaging,
        )
        logger.info("[Hub] Messaging hub ready (data_dir=%s)", storage.data_dir)

    def close(self) -> None:
        """Drop live state and close the stores. A restart is a mass disconnect."""
        self.rooms.clear()
        self.registry.clear()
        self.store.close()
        self.directory.close()
        self.outbox.close()
        logger.info("[Hub] Messaging hub closed")


def get_hub(conn: HTTPConnection) -> MessagingHub:
    """FastAPI dependency returning the hub of the running application."""
    return conn.app.state.hub
