from __future__ import annotations

import sqlalchemy as sa

from indexer.database.database import DatabaseSessionManager, sessionmanager
from indexer.database.tables.tokens_table import Tokens


class TokensRepository:
    def __init__(self, manager: DatabaseSessionManager | None = None):
        self._manager = manager or sessionmanager

    async def get_single_token(self, collection: str) -> str | None:
        """Return any one token id of ``collection``, or None if none is indexed."""
        stmt = sa.select(Tokens.token_id).where(Tokens.collection_id == collection).limit(1)

        async with self._manager.session() as session:
            token_id = await session.scalar(stmt)

        if token_id is None:
            return None

        # Numeric(78, 0) comes back as Decimal; ids are passed around as strings
        return str(int(token_id))
