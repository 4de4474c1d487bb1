"""
schemas/identity.py

Entities the middleware layer consumes from its collaborators: the
authenticated user, the session record, the transaction cookie state and
the role / database metadata used by the authorization gates.

Non-developer summary:
----------------------
These are the "nouns" of a request: who is calling (User), which login
they are using (Session), whether they have an open transaction, and which
databases and tables their PostgreSQL role may touch.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str = Field(..., min_length=1, description="PostgreSQL role name")


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Opaque session identifier (session_id cookie)")
    username: str = Field(..., description="Role the session was opened for")
    expires_at: datetime = Field(..., description="Absolute expiry (UTC)")
    created_at: Optional[datetime] = Field(None, description="When the session was opened")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires = self.expires_at
        # Naive timestamps from a store are treated as UTC
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now >= expires


class TransactionState(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    active: bool = True


class AccessibleTable(BaseModel):
    # "schema" would shadow a BaseModel attribute, so it is stored as schema_name
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    database: str
    schema_name: str = Field(..., alias="schema")
    name: str
    has_select: bool = False
    has_insert: bool = False
    has_update: bool = False
    has_delete: bool = False

    def allows(self, privilege: str) -> bool:
        """privilege is one of select|insert|update|delete."""
        return bool(getattr(self, f"has_{privilege}", False))


class RoleMetadata(BaseModel):
    """
    What a PostgreSQL role can reach. Loaded once per user and cached.
    """
    name: str
    accessible_databases: Set[str] = Field(default_factory=set)
    accessible_tables: List[AccessibleTable] = Field(default_factory=list)

    def can_access_database(self, database: Optional[str]) -> bool:
        return bool(database) and database in self.accessible_databases

    def find_table(
        self, database: Optional[str], schema: Optional[str], table: Optional[str]
    ) -> Optional[AccessibleTable]:
        # Exact match only; a missing coordinate never matches.
        if not (database and schema and table):
            return None
        for t in self.accessible_tables:
            if t.database == database and t.schema_name == schema and t.name == table:
                return t
        return None


class DatabaseMetadata(BaseModel):
    name: Optional[str] = None
    schemas: List[str] = Field(default_factory=list)
    tables: List[str] = Field(default_factory=list, description="schema.table names")
