from dataclasses import dataclass

from sqlalchemy import Column, Integer, MetaData, String, Table, Text

from dbsession.db.base import metadata as default_metadata


@dataclass(frozen=True)
class SessionRecord:
    """A persisted session row."""

    id: str
    payload: str
    last_activity: int


def session_table(name: str, metadata: MetaData = default_metadata) -> Table:
    """
    Return the session table definition for the given table name.

    The definition is registered on the metadata once and reused afterwards.
    """
    existing = metadata.tables.get(name)
    if existing is not None:
        return existing

    return Table(
        name,
        metadata,
        Column("id", String(255), primary_key=True),
        Column("payload", Text, nullable=False),
        Column("last_activity", Integer, nullable=False, index=True),
    )
