from __future__ import annotations

from .storage.conversations import CoachConversationsMixin
from .storage.messages import CoachMessagesMixin
from .storage.patterns import CoachPatternsMixin
from .storage.profiles import CoachProfilesMixin
from .storage.schema import CoachSchemaMixin
from .storage.usage import CoachUsageMixin
from .storage.utils import _sqlite_connection


class CoachStore(
    CoachSchemaMixin,
    CoachProfilesMixin,
    CoachConversationsMixin,
    CoachMessagesMixin,
    CoachPatternsMixin,
    CoachUsageMixin,
):
    """Transactional store for profiles, conversations, messages, pattern summaries and usage."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("SELECT 1")
