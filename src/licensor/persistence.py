"""SQLite persistence for issued licenses and the audit trail.

The database is created automatically at ``~/.licensor/licensor.db``
(override with the ``LICENSOR_DB_PATH`` environment variable).  Audit rows
are signed with HMAC-SHA256 so tampering is detectable with
:meth:`LicensorDB.verify_audit_log`.

:class:`LicensorDB` is both a
:class:`~licensor.generation.base.LicenseStore` and an
:class:`~licensor.audit.AuditSink`.

Example::

    db = LicensorDB()
    factory = LicenseGenerationFactory.with_default_strategies(
        LicenseGenerator(), FileKeyStore(), store=db, audit_sink=db,
    )
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import sqlite3
import stat
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from licensor.audit import AuditEntry, AuditSink
from licensor.generation.base import LicenseStore, LicenseType, ProductLicense
from licensor.models import (
    LicenseStatus,
    SignedLicense,
    format_datetime,
    parse_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Default DB location
# ---------------------------------------------------------------------------

_DEFAULT_DB_DIR = os.path.join(str(Path.home()), ".licensor")
_DEFAULT_DB_PATH = os.path.join(_DEFAULT_DB_DIR, "licensor.db")


class LicensorDB(LicenseStore, AuditSink):
    """Thread-safe SQLite wrapper.

    Parameters:
        db_path: Filesystem path for the SQLite database file.  Defaults to
            the value of ``LICENSOR_DB_PATH`` or ``~/.licensor/licensor.db``.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or os.environ.get("LICENSOR_DB_PATH", _DEFAULT_DB_PATH)

        os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)

        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._write_lock = threading.Lock()

        self._ensure_schema()
        self._enforce_permissions()

    # ------------------------------------------------------------------
    # File permissions
    # ------------------------------------------------------------------

    def _enforce_permissions(self) -> None:
        """Restrict the database file to mode ``0600``.

        Skipped on Windows where POSIX chmod semantics do not apply.
        """
        if sys.platform == "win32":
            return
        try:
            file_mode = stat.S_IMODE(os.stat(self._db_path).st_mode)
            if file_mode & 0o077:
                logger.warning(
                    "Database file %s has overly permissive permissions "
                    "(mode %04o). Fixing to 0600.",
                    self._db_path,
                    file_mode,
                )
            os.chmod(self._db_path, 0o600)
        except OSError as exc:
            logger.warning("Unable to set permissions on %s: %s", self._db_path, exc)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        with self._write_lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS licenses (
                    license_id          TEXT PRIMARY KEY,
                    product_id          TEXT NOT NULL,
                    consumer_id         TEXT NOT NULL,
                    license_key         TEXT NOT NULL,
                    license_model       TEXT NOT NULL,
                    status              TEXT NOT NULL,
                    valid_from          TEXT NOT NULL,
                    valid_to            TEXT NOT NULL,
                    tier_id             TEXT,
                    max_allowed_users   INTEGER,
                    metadata            TEXT NOT NULL DEFAULT '{}',
                    public_key          TEXT,
                    license_signature   TEXT,
                    signed_license      TEXT,
                    created_by          TEXT NOT NULL,
                    created_at          TEXT NOT NULL,
                    updated_by          TEXT NOT NULL,
                    updated_at          TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_licenses_product
                    ON licenses(product_id);
                CREATE INDEX IF NOT EXISTS idx_licenses_consumer
                    ON licenses(consumer_id);

                CREATE TABLE IF NOT EXISTS audit_log (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp       TEXT NOT NULL,
                    license_id      TEXT NOT NULL,
                    product_id      TEXT NOT NULL,
                    consumer_id     TEXT NOT NULL,
                    operation       TEXT NOT NULL,
                    description     TEXT NOT NULL,
                    performed_by    TEXT NOT NULL,
                    details         TEXT,
                    hmac_signature  TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_audit_license
                    ON audit_log(license_id);
                CREATE INDEX IF NOT EXISTS idx_audit_product
                    ON audit_log(product_id);
                CREATE INDEX IF NOT EXISTS idx_audit_operation
                    ON audit_log(operation);
                """
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Licenses
    # ------------------------------------------------------------------

    def add_license(self, license: ProductLicense) -> ProductLicense:
        """Insert an issued license.

        :raises sqlite3.IntegrityError: If the license id already exists.
        """
        with self._write_lock:
            self._conn.execute(
                """
                INSERT INTO licenses
                    (license_id, product_id, consumer_id, license_key,
                     license_model, status, valid_from, valid_to, tier_id,
                     max_allowed_users, metadata, public_key,
                     license_signature, signed_license, created_by,
                     created_at, updated_by, updated_at)
                VALUES
                    (:license_id, :product_id, :consumer_id, :license_key,
                     :license_model, :status, :valid_from, :valid_to, :tier_id,
                     :max_allowed_users, :metadata, :public_key,
                     :license_signature, :signed_license, :created_by,
                     :created_at, :updated_by, :updated_at)
                """,
                {
                    "license_id": license.license_id,
                    "product_id": license.product_id,
                    "consumer_id": license.consumer_id,
                    "license_key": license.license_key,
                    "license_model": license.license_model.value,
                    "status": license.status.value,
                    "valid_from": format_datetime(license.valid_from),
                    "valid_to": format_datetime(license.valid_to),
                    "tier_id": license.tier_id,
                    "max_allowed_users": license.max_allowed_users,
                    "metadata": json.dumps(license.metadata, default=str),
                    "public_key": license.public_key,
                    "license_signature": license.license_signature,
                    "signed_license": license.signed_license.to_json() if license.signed_license else None,
                    "created_by": license.created_by,
                    "created_at": format_datetime(license.created_at),
                    "updated_by": license.updated_by,
                    "updated_at": format_datetime(license.updated_at),
                },
            )
            self._conn.commit()
        logger.info("Stored license %s for product %s", license.license_id, license.product_id)
        return license

    def get_license(self, license_id: str) -> Optional[ProductLicense]:
        row = self._conn.execute(
            "SELECT * FROM licenses WHERE license_id = ?", (license_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_license(row)

    def list_licenses(
        self,
        product_id: Optional[str] = None,
        consumer_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[ProductLicense]:
        """Return stored licenses, newest first."""
        clauses: List[str] = []
        params: List[Any] = []
        if product_id is not None:
            clauses.append("product_id = ?")
            params.append(product_id)
        if consumer_id is not None:
            clauses.append("consumer_id = ?")
            params.append(consumer_id)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        params.append(limit)
        rows = self._conn.execute(
            f"SELECT * FROM licenses {where} ORDER BY created_at DESC LIMIT ?",
            params,
        ).fetchall()
        return [self._row_to_license(row) for row in rows]

    def update_license_status(self, license_id: str, status: LicenseStatus, updated_by: str) -> bool:
        """Change the stored status of a license.

        :returns: ``True`` if a row was updated.
        """
        with self._write_lock:
            cur = self._conn.execute(
                "UPDATE licenses SET status = ?, updated_by = ?, updated_at = ? WHERE license_id = ?",
                (status.value, updated_by, format_datetime(utc_now()), license_id),
            )
            self._conn.commit()
            return cur.rowcount > 0

    @staticmethod
    def _row_to_license(row: sqlite3.Row) -> ProductLicense:
        d = dict(row)
        signed = SignedLicense.from_json(d["signed_license"]) if d.get("signed_license") else None
        return ProductLicense(
            license_id=d["license_id"],
            product_id=d["product_id"],
            consumer_id=d["consumer_id"],
            license_key=d["license_key"],
            license_model=LicenseType(d["license_model"]),
            status=LicenseStatus(d["status"]),
            valid_from=parse_datetime(d["valid_from"]),
            valid_to=parse_datetime(d["valid_to"]),
            tier_id=d.get("tier_id"),
            max_allowed_users=d.get("max_allowed_users"),
            metadata=json.loads(d["metadata"] or "{}"),
            public_key=d.get("public_key"),
            license_signature=d.get("license_signature"),
            signed_license=signed,
            created_by=d["created_by"],
            created_at=parse_datetime(d["created_at"]),
            updated_by=d["updated_by"],
            updated_at=parse_datetime(d["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def _get_hmac_key(self) -> bytes:
        """Return the HMAC key for audit log signing.

        Uses ``LICENSOR_AUDIT_HMAC_KEY`` env var if set, otherwise derives
        a per-installation key from the database path.
        """
        env_key = os.environ.get("LICENSOR_AUDIT_HMAC_KEY", "")
        if env_key:
            return env_key.encode("utf-8")
        return hashlib.sha256(self._db_path.encode("utf-8")).digest()

    def _compute_audit_hmac(self, row_data: Dict[str, Any]) -> str:
        """Compute an HMAC-SHA256 signature for an audit log row.

        :returns: Hex-encoded HMAC digest.
        """
        parts = [
            str(row_data.get("timestamp", "")),
            str(row_data.get("license_id", "")),
            str(row_data.get("product_id", "")),
            str(row_data.get("consumer_id", "")),
            str(row_data.get("operation", "")),
            str(row_data.get("description", "")),
            str(row_data.get("performed_by", "")),
            str(row_data.get("details", "") or ""),
        ]
        message = "|".join(parts).encode("utf-8")
        return hmac.new(self._get_hmac_key(), message, hashlib.sha256).hexdigest()

    def record(self, entry: AuditEntry) -> None:
        self.log_audit(entry)

    def log_audit(self, entry: AuditEntry) -> int:
        """Record an audit entry and return the row id."""
        row = {
            "timestamp": format_datetime(entry.timestamp),
            "license_id": entry.license_id,
            "product_id": entry.product_id,
            "consumer_id": entry.consumer_id,
            "operation": entry.operation.value,
            "description": entry.description,
            "performed_by": entry.performed_by,
            "details": json.dumps(entry.details, sort_keys=True, default=str) if entry.details else None,
        }
        with self._write_lock:
            row["hmac_signature"] = self._compute_audit_hmac(row)
            cur = self._conn.execute(
                """
                INSERT INTO audit_log
                    (timestamp, license_id, product_id, consumer_id, operation,
                     description, performed_by, details, hmac_signature)
                VALUES
                    (:timestamp, :license_id, :product_id, :consumer_id, :operation,
                     :description, :performed_by, :details, :hmac_signature)
                """,
                row,
            )
            self._conn.commit()
            return cur.lastrowid  # type: ignore[return-value]

    def verify_audit_log(self) -> Dict[str, Any]:
        """Verify HMAC signatures on all audit log entries.

        :returns: Dict with ``total``, ``valid``, ``invalid`` counts
            and an ``integrity`` field (``"ok"`` or ``"compromised"``).
        """
        rows = self._conn.execute("SELECT * FROM audit_log ORDER BY id").fetchall()
        valid = 0
        invalid = 0
        for row in rows:
            d = dict(row)
            stored_sig = d.get("hmac_signature")
            if stored_sig is None:
                invalid += 1
                continue
            if hmac.compare_digest(stored_sig, self._compute_audit_hmac(d)):
                valid += 1
            else:
                invalid += 1
        return {
            "total": len(rows),
            "valid": valid,
            "invalid": invalid,
            "integrity": "ok" if invalid == 0 else "compromised",
        }

    def query_audit(
        self,
        license_id: Optional[str] = None,
        product_id: Optional[str] = None,
        operation: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Query the audit log, newest first.

        Args:
            license_id: Filter by license.
            product_id: Filter by product.
            operation: Filter by operation value (e.g. ``"created"``).
            limit: Maximum rows to return.
        """
        clauses: List[str] = []
        params: List[Any] = []
        if license_id is not None:
            clauses.append("license_id = ?")
            params.append(license_id)
        if product_id is not None:
            clauses.append("product_id = ?")
            params.append(product_id)
        if operation is not None:
            clauses.append("operation = ?")
            params.append(operation)

        where = ""
        if clauses:
            where = "WHERE " + " AND ".join(clauses)

        params.append(limit)
        rows = self._conn.execute(
            f"SELECT * FROM audit_log {where} ORDER BY id DESC LIMIT ?",
            params,
        ).fetchall()

        results: List[Dict[str, Any]] = []
        for row in rows:
            d = dict(row)
            if d.get("details"):
                d["details"] = json.loads(d["details"])
            results.append(d)
        return results

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    @property
    def path(self) -> str:
        """The filesystem path of the database file."""
        return self._db_path

