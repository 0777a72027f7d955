"""Connection record storage backends.

- InMemoryConnectionStore: For development/testing
- SqliteConnectionStore: For single-server deployments (erp_connections table)

Only sealed credentials (ciphertext + nonce + key version) are ever written.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from core.connections.models import ErpConnection, ErrorDetail
from core.security.encryption import EncryptedCredentials


class ConnectionStore(ABC):
    """Abstract base class for connection storage."""

    @abstractmethod
    async def save(self, connection: ErpConnection) -> None:
        """Insert or replace a connection record."""
        pass

    @abstractmethod
    async def get(self, connection_id: str) -> Optional[ErpConnection]:
        """Retrieve a connection record."""
        pass

    @abstractmethod
    async def delete(self, connection_id: str) -> bool:
        """Delete a connection record. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def list_for_tenant(self, tenant_id: str) -> List[ErpConnection]:
        """List a tenant's connections, oldest first."""
        pass

    async def close(self) -> None:
        pass


class InMemoryConnectionStore(ConnectionStore):
    """In-memory connection storage for development/testing.

    WARNING: Connections are lost on restart. Use only for development.
    """

    def __init__(self):
        self._connections: Dict[str, ErpConnection] = {}
        self._lock = threading.Lock()

    async def save(self, connection: ErpConnection) -> None:
        with self._lock:
            self._connections[connection.id] = connection

    async def get(self, connection_id: str) -> Optional[ErpConnection]:
        with self._lock:
            return self._connections.get(connection_id)

    async def delete(self, connection_id: str) -> bool:
        with self._lock:
            return self._connections.pop(connection_id, None) is not None

    async def list_for_tenant(self, tenant_id: str) -> List[ErpConnection]:
        with self._lock:
            connections = [c for c in self._connections.values() if c.tenant_id == tenant_id]
        return sorted(connections, key=lambda c: c.created_at)


class SqliteConnectionStore(ConnectionStore):
    """SQLite-backed connection storage.

    Table erp_connections holds one row per connection; credentials are stored
    as base64 ciphertext and nonce columns, never as plaintext.
    """

    def __init__(self, db_path: Union[str, Path] = "erp_connections.db"):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Create the erp_connections table and indexes."""
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS erp_connections (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    name TEXT,
                    provider TEXT NOT NULL,
                    environment TEXT NOT NULL,
                    credential_ciphertext TEXT NOT NULL,
                    credential_nonce TEXT NOT NULL,
                    key_version INTEGER NOT NULL DEFAULT 1,
                    status TEXT NOT NULL,
                    last_tested_at TEXT,
                    last_latency_ms REAL,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_erp_connections_tenant
                ON erp_connections(tenant_id)
            """)
            conn.commit()
        finally:
            conn.close()

    async def save(self, connection: ErpConnection) -> None:
        last_error = connection.last_error.model_dump_json() if connection.last_error else None
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("""
                    INSERT OR REPLACE INTO erp_connections
                    (id, tenant_id, name, provider, environment,
                     credential_ciphertext, credential_nonce, key_version,
                     status, last_tested_at, last_latency_ms, last_error,
                     created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    connection.id,
                    connection.tenant_id,
                    connection.name,
                    connection.provider.value,
                    connection.environment.value,
                    connection.credentials.ciphertext,
                    connection.credentials.nonce,
                    connection.credentials.key_version,
                    connection.status.value,
                    connection.last_tested_at.isoformat() if connection.last_tested_at else None,
                    connection.last_latency_ms,
                    last_error,
                    connection.created_at.isoformat(),
                    connection.updated_at.isoformat(),
                ))
                conn.commit()
            finally:
                conn.close()

    async def get(self, connection_id: str) -> Optional[ErpConnection]:
        with self._lock:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT * FROM erp_connections WHERE id = ?", (connection_id,)
                ).fetchone()
            finally:
                conn.close()
        return self._row_to_connection(row) if row else None

    async def delete(self, connection_id: str) -> bool:
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM erp_connections WHERE id = ?", (connection_id,))
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

    async def list_for_tenant(self, tenant_id: str) -> List[ErpConnection]:
        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT * FROM erp_connections WHERE tenant_id = ? ORDER BY created_at",
                    (tenant_id,),
                ).fetchall()
            finally:
                conn.close()
        return [self._row_to_connection(row) for row in rows]

    @staticmethod
    def _row_to_connection(row: sqlite3.Row) -> ErpConnection:
        last_error = None
        if row["last_error"]:
            last_error = ErrorDetail.model_validate(json.loads(row["last_error"]))
        return ErpConnection(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            provider=row["provider"],
            environment=row["environment"],
            credentials=EncryptedCredentials(
                ciphertext=row["credential_ciphertext"],
                nonce=row["credential_nonce"],
                key_version=row["key_version"],
            ),
            status=row["status"],
            last_tested_at=datetime.fromisoformat(row["last_tested_at"]) if row["last_tested_at"] else None,
            last_latency_ms=row["last_latency_ms"],
            last_error=last_error,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
