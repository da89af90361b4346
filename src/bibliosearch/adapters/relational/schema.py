"""Relational table descriptors used by the fallback search path and the graph sources.

Only the columns read here are declared.  Schema management (migrations)
lives with the application that owns the database; ``metadata.create_all``
is used by tests only.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, ForeignKey, Integer, MetaData, String, Table, Text

metadata = MetaData()

works = Table(
    "works",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("title", String(500), nullable=False),
    Column("subtitle", String(500)),
    Column("abstract", Text),
    Column("work_type", String(20), nullable=False, default="ARTICLE"),
    Column("language", String(10)),
)

publications = Table(
    "publications",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("work_id", Integer, ForeignKey("works.id"), nullable=False, index=True),
    Column("year", Integer),
    Column("doi", String(255)),
    Column("venue_name", String(500)),
    Column("peer_reviewed", Boolean, nullable=False, default=False),
)

work_author_summary = Table(
    "work_author_summary",
    metadata,
    Column("work_id", Integer, ForeignKey("works.id"), primary_key=True),
    Column("author_string", Text),
    Column("first_author_id", Integer, ForeignKey("persons.id")),
)

persons = Table(
    "persons",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("preferred_name", String(255), nullable=False),
)

authorships = Table(
    "authorships",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("work_id", Integer, ForeignKey("works.id"), nullable=False, index=True),
    Column("person_id", Integer, ForeignKey("persons.id"), index=True),
    Column("role", String(20), nullable=False, default="AUTHOR"),
    Column("position", Integer),
)

citations = Table(
    "citations",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("citing_work_id", Integer, ForeignKey("works.id"), nullable=False, index=True),
    Column("cited_work_id", Integer, ForeignKey("works.id"), nullable=False, index=True),
    Column("citation_type", String(20), default="NEUTRAL"),
)
