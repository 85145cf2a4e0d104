"""
Database schema definition for the RowLedger SQLite corpus store.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, MetaData, Table, Text, UniqueConstraint
from sqlalchemy.sql import func

# Using a standard naming convention for database objects
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)


datasets_table = Table(
    "datasets",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("owner_id", Text, nullable=False, index=True),
    Column("name", Text, nullable=False),
    Column("description", Text),
    # Registered column names, in the order given at creation
    Column("columns_json", Text, nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now()),
    UniqueConstraint("owner_id", "name"),
)


data_records_table = Table(
    "data_records",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("dataset_id", Integer, ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False),
    Column("row_hash", Text, nullable=False),
    # 0 for the first copy of a row; confirmed duplicates take the next free ordinal
    Column("occurrence", Integer, nullable=False, server_default="0"),
    Column("data_json", Text, nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
    UniqueConstraint("dataset_id", "row_hash", "occurrence"),
)


uploads_table = Table(
    "uploads",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("owner_id", Text, nullable=False, index=True),
    Column("source_name", Text, nullable=False),
    Column("columns_json", Text, nullable=False),
    Column("data_json", Text, nullable=False),
    Column("row_count", Integer, nullable=False),
    Column("column_count", Integer, nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
)


log_records_table = Table(
    "log_records",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("owner_id", Text, nullable=False),
    Column("batch_timestamp", Integer, nullable=False),
    Column("source_name", Text, nullable=False),
    Column("payload_json", Text, nullable=False),
    Column("uploaded_at", DateTime, server_default=func.now()),
)


# Indexes for common query patterns
Index("ix_data_records_dataset_hash", data_records_table.c.dataset_id, data_records_table.c.row_hash)
Index("ix_log_records_owner_batch", log_records_table.c.owner_id, log_records_table.c.batch_timestamp)
Index(
    "ix_log_records_owner_batch_source",
    log_records_table.c.owner_id,
    log_records_table.c.batch_timestamp,
    log_records_table.c.source_name,
)
