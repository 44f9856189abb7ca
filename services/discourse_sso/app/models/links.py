from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base

META_TABLE = "discourse_sso_consumer_meta"
LINK_TABLE = "discourse_sso_consumer_link"
USER_TABLE = "discourse_sso_consumer_discourse_user"
LEGACY_TABLE = "discourse_sso_consumer"
WIKI_ID_INDEX = "discourse_sso_consumer_link_wiki_id"


class MetaEntry(Base):
    __tablename__ = META_TABLE

    m_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    m_value: Mapped[str] = mapped_column(Text, nullable=False)


class IdentityLink(Base):
    __tablename__ = LINK_TABLE
    __table_args__ = (
        # One Discourse identity per local user
        Index(WIKI_ID_INDEX, "wiki_id", unique=True),
    )

    discourse_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    wiki_id: Mapped[int] = mapped_column(Integer, nullable=False)


class DiscourseUserRecord(Base):
    __tablename__ = USER_TABLE

    discourse_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    user_json: Mapped[str] = mapped_column(Text, nullable=False)
    last_update: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_event: Mapped[str] = mapped_column(Text, nullable=False)
    last_event_id: Mapped[int] = mapped_column(Integer, nullable=False)
