"""
Schema Versioning and Lookup Vocabulary Module

Seeds the persisted lookup tables (account types, statuses, transaction
types, payment frequencies, roles) from the closed enumerations in
`constants`, records which schema versions have been applied, and validates
at startup that the persisted vocabulary still matches the code.
"""

from typing import Callable, List, Optional, Dict, Any
from datetime import datetime, timezone
import hashlib
import json
import logging

from .constants import LOOKUP_TABLES
from .exceptions import InvariantViolation
from .storage import StorageInterface


logger = logging.getLogger(__name__)


def vocabulary_rows(table: str) -> List[Dict[str, Any]]:
    """Rows a lookup table must contain, ordered by code"""
    enum_cls = LOOKUP_TABLES[table]
    return [{"code": member.code, "name": member.label} for member in enum_cls]


def vocabulary_checksum() -> str:
    """Checksum over every lookup vocabulary"""
    payload = {table: vocabulary_rows(table) for table in sorted(LOOKUP_TABLES)}
    return hashlib.md5(json.dumps(payload, sort_keys=True).encode()).hexdigest()


class SchemaVersion:
    """A single versioned change to the persisted schema"""

    def __init__(self, version: int, name: str, apply: Callable[[StorageInterface], None]):
        self.version = version
        self.name = name
        self.apply = apply
        self.applied_at: Optional[datetime] = None

    def __str__(self) -> str:
        return f"Schema v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"SchemaVersion(version={self.version}, name='{self.name}')"


def _seed_lookup_tables(storage: StorageInterface) -> None:
    for table in LOOKUP_TABLES:
        for row in vocabulary_rows(table):
            storage.save(table, str(row["code"]), row)


class SchemaManager:
    """Applies schema versions and validates the lookup vocabulary"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.versions: List[SchemaVersion] = []
        self._version_table = "schema_versions"
        self.add_version(1, "Seed lookup vocabularies", _seed_lookup_tables)

    def add_version(self, version: int, name: str,
                    apply: Callable[[StorageInterface], None]) -> None:
        """Register a schema version"""
        self.versions.append(SchemaVersion(version, name, apply))
        self.versions.sort(key=lambda v: v.version)

    def get_current_version(self) -> int:
        """Get the highest applied schema version"""
        applied = self.storage.load_all(self._version_table)
        versions = [row["version"] for row in applied if isinstance(row.get("version"), int)]
        return max(versions) if versions else 0

    def get_pending_versions(self) -> List[SchemaVersion]:
        current_version = self.get_current_version()
        return [v for v in self.versions if v.version > current_version]

    def migrate_up(self) -> List[SchemaVersion]:
        """Apply every pending schema version, each in its own atomic block"""
        pending = self.get_pending_versions()
        applied = []

        if not pending:
            logger.info("Schema is up to date")
            return applied

        logger.info(f"Applying {len(pending)} pending schema versions")

        for schema_version in pending:
            logger.info(f"Applying {schema_version}")
            with self.storage.atomic():
                schema_version.apply(self.storage)
                self.storage.save(self._version_table, f"v{schema_version.version:03d}", {
                    "version": schema_version.version,
                    "name": schema_version.name,
                    "applied_at": datetime.now(timezone.utc).isoformat(),
                    "checksum": vocabulary_checksum(),
                })
            schema_version.applied_at = datetime.now(timezone.utc)
            applied.append(schema_version)

        logger.info(f"Successfully applied {len(applied)} schema versions")
        return applied

    def validate(self) -> None:
        """
        Check that every persisted lookup table matches its enumeration

        Raises:
            InvariantViolation: If a code is missing, extra or renamed
        """
        problems = []
        for table in LOOKUP_TABLES:
            expected = {row["code"]: row["name"] for row in vocabulary_rows(table)}
            stored = {row.get("code"): row.get("name") for row in self.storage.load_all(table)}
            for code, name in expected.items():
                if code not in stored:
                    problems.append(f"{table}: missing code {code} ({name})")
                elif stored[code] != name:
                    problems.append(f"{table}: code {code} is '{stored[code]}', expected '{name}'")
            for code in stored.keys() - expected.keys():
                problems.append(f"{table}: unknown code {code}")

        if problems:
            for problem in problems:
                logger.critical(f"Lookup vocabulary mismatch: {problem}")
            raise InvariantViolation("Lookup vocabulary mismatch: " + "; ".join(problems))

        logger.info("Lookup vocabularies validated successfully")

    def ensure(self, validate: bool = True) -> None:
        """Bring the schema up to date, then optionally validate it"""
        self.migrate_up()
        if validate:
            self.validate()

    def get_status(self) -> Dict[str, Any]:
        pending = self.get_pending_versions()
        return {
            "current_version": self.get_current_version(),
            "latest_version": max((v.version for v in self.versions), default=0),
            "pending_count": len(pending),
            "vocabulary_checksum": vocabulary_checksum(),
        }
