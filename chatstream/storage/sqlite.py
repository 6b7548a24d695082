"""SQLite-backed message store."""

import json
import uuid
from pathlib import Path
from typing import Any

import aiosqlite

from chatstream.blocks import BlockSequence, now_ms
from chatstream.config import get_config
from chatstream.exceptions import ConversationNotFoundError, MessageNotFoundError
from chatstream.logging import get_logger
from chatstream.models import (
    Conversation,
    ConversationSettings,
    Message,
    MessageRole,
    MessageStatus,
    UserMessageContent,
)
from chatstream.storage.base import MessageStore

log = get_logger(__name__)

_MESSAGE_COLUMNS = (
    "id, conversation_id, parent_id, role, content, status, is_variant, metadata, created_at, updated_at"
)


class SqliteMessageStore(MessageStore):
    """Conversations, messages and attachments in one SQLite file."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.storage.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL DEFAULT '',
                    settings TEXT NOT NULL DEFAULT '{}',
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    parent_id TEXT,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    status TEXT NOT NULL,
                    is_variant INTEGER NOT NULL DEFAULT 0,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS attachments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, is_variant)"
            )
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_parent ON messages(parent_id)"
            )
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_attachments_message ON attachments(message_id, type)"
            )
            await self._db.commit()
        return self._db

    @staticmethod
    def _row_to_message(row: tuple[Any, ...]) -> Message:
        role = MessageRole(row[3])
        return Message(
            id=row[0],
            conversation_id=row[1],
            parent_id=row[2],
            role=role,
            content=Message.content_from_dict(role, json.loads(row[4])),
            status=MessageStatus(row[5]),
            is_variant=bool(row[6]),
            metadata=json.loads(row[7]),
            created_at=int(row[8]),
            updated_at=int(row[9]),
        )

    async def _attach_variants(self, messages: list[Message]) -> list[Message]:
        db = await self._ensure_db()
        for message in messages:
            if message.role != MessageRole.ASSISTANT or message.is_variant or not message.parent_id:
                continue
            async with db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages "
                "WHERE parent_id = ? AND role = ? AND is_variant = 1 AND id != ? ORDER BY rowid",
                (message.parent_id, MessageRole.ASSISTANT.value, message.id),
            ) as cursor:
                rows = await cursor.fetchall()
            message.variants = [self._row_to_message(row) for row in rows]
        return messages

    # Conversations

    async def create_conversation(
        self,
        title: str = "",
        settings: ConversationSettings | None = None,
    ) -> Conversation:
        """Create and persist a new conversation."""
        db = await self._ensure_db()
        conversation = Conversation(
            id=str(uuid.uuid4()),
            title=title,
            settings=settings or ConversationSettings(),
        )
        await db.execute(
            "INSERT INTO conversations (id, title, settings, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            (
                conversation.id,
                conversation.title,
                json.dumps(conversation.settings.to_dict()),
                conversation.created_at,
                conversation.updated_at,
            ),
        )
        await db.commit()
        log.info("Created conversation", conversation_id=conversation.id)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        db = await self._ensure_db()
        async with db.execute(
            "SELECT id, title, settings, created_at, updated_at FROM conversations WHERE id = ?",
            (conversation_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            raise ConversationNotFoundError(conversation_id)
        return Conversation(
            id=row[0],
            title=row[1],
            settings=ConversationSettings.from_dict(json.loads(row[2])),
            created_at=int(row[3]),
            updated_at=int(row[4]),
        )

    async def update_conversation_settings(self, conversation_id: str, **changes: Any) -> Conversation:
        """Apply setting changes to a conversation."""
        conversation = await self.get_conversation(conversation_id)
        settings = conversation.settings.to_dict()
        settings.update(changes)
        conversation.settings = ConversationSettings.from_dict(settings)
        conversation.updated_at = now_ms()
        db = await self._ensure_db()
        await db.execute(
            "UPDATE conversations SET settings = ?, updated_at = ? WHERE id = ?",
            (json.dumps(conversation.settings.to_dict()), conversation.updated_at, conversation_id),
        )
        await db.commit()
        return conversation

    # Messages

    async def send_message(
        self,
        conversation_id: str,
        content: UserMessageContent | BlockSequence,
        role: MessageRole,
        parent_id: str | None = None,
        is_variant: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        await self.get_conversation(conversation_id)
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            status=MessageStatus.PENDING,
            parent_id=parent_id,
            is_variant=is_variant,
            metadata=dict(metadata or {}),
        )
        db = await self._ensure_db()
        await db.execute(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                message.id,
                message.conversation_id,
                message.parent_id,
                message.role.value,
                json.dumps(message.content_to_dict()),
                message.status.value,
                1 if message.is_variant else 0,
                json.dumps(message.metadata),
                message.created_at,
                message.updated_at,
            ),
        )
        await db.commit()
        log.debug("Stored message", message_id=message.id, role=role.value)
        return message

    async def get_message(self, message_id: str) -> Message:
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
            (message_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            raise MessageNotFoundError(message_id)
        messages = await self._attach_variants([self._row_to_message(row)])
        return messages[0]

    async def _update_columns(self, message_id: str, **columns: Any) -> None:
        db = await self._ensure_db()
        assignments = ", ".join(f"{name} = ?" for name in columns)
        cursor = await db.execute(
            f"UPDATE messages SET {assignments}, updated_at = ? WHERE id = ?",
            (*columns.values(), now_ms(), message_id),
        )
        await db.commit()
        if cursor.rowcount == 0:
            raise MessageNotFoundError(message_id)

    async def edit_message(self, message_id: str, blocks: BlockSequence) -> None:
        await self._update_columns(message_id, content=json.dumps(blocks.to_list()))

    async def update_message_status(self, message_id: str, status: MessageStatus) -> None:
        await self._update_columns(message_id, status=MessageStatus(status).value)

    async def update_message_metadata(self, message_id: str, metadata: dict[str, Any]) -> None:
        message = await self.get_message(message_id)
        merged = dict(message.metadata)
        merged.update(metadata)
        await self._update_columns(message_id, metadata=json.dumps(merged))

    async def get_last_user_message(self, conversation_id: str) -> Message | None:
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE conversation_id = ? AND role = ? ORDER BY rowid DESC LIMIT 1",
            (conversation_id, MessageRole.USER.value),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_message(row) if row else None

    async def get_message_history(self, message_id: str, limit: int) -> list[Message]:
        db = await self._ensure_db()
        async with db.execute(
            "SELECT rowid, conversation_id FROM messages WHERE id = ?",
            (message_id,),
        ) as cursor:
            anchor = await cursor.fetchone()
        if not anchor:
            raise MessageNotFoundError(message_id)
        async with db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE conversation_id = ? AND rowid <= ? AND (is_variant = 0 OR id = ?) "
            "ORDER BY rowid DESC LIMIT ?",
            (anchor[1], anchor[0], message_id, max(1, limit)),
        ) as cursor:
            rows = await cursor.fetchall()
        messages = [self._row_to_message(row) for row in reversed(rows)]
        return await self._attach_variants(messages)

    async def get_context_messages(self, conversation_id: str, limit: int) -> list[Message]:
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE conversation_id = ? AND is_variant = 0 ORDER BY rowid DESC LIMIT ?",
            (conversation_id, max(1, limit)),
        ) as cursor:
            rows = await cursor.fetchall()
        messages = [self._row_to_message(row) for row in reversed(rows)]
        return await self._attach_variants(messages)

    # Attachments

    async def add_message_attachment(self, message_id: str, attachment_type: str, data: str) -> None:
        db = await self._ensure_db()
        await db.execute(
            "INSERT INTO attachments (message_id, type, data, created_at) VALUES (?, ?, ?, ?)",
            (message_id, attachment_type, data, now_ms()),
        )
        await db.commit()

    async def get_message_attachments(self, message_id: str, attachment_type: str) -> list[str]:
        db = await self._ensure_db()
        async with db.execute(
            "SELECT data FROM attachments WHERE message_id = ? AND type = ? ORDER BY id",
            (message_id, attachment_type),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
