"""Message persistence for chatstream."""

from chatstream.storage.base import MessageStore
from chatstream.storage.sqlite import SqliteMessageStore

__all__ = ["MessageStore", "SqliteMessageStore"]
