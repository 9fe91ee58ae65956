from typing import Optional

from sqlalchemy import Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column

from indexer.database.tables.base_class import Base


class Tokens(Base):
    """Read-only view of the indexer's token table.

    The table is owned and migrated by the order/token ingestion pipeline;
    the refresh worker only reads from it.
    """

    __tablename__ = "tokens"

    contract: Mapped[str] = mapped_column(Text, primary_key=True)
    token_id: Mapped[int] = mapped_column(Numeric(78, 0), primary_key=True)
    collection_id: Mapped[Optional[str]] = mapped_column(Text, index=True, nullable=True)
