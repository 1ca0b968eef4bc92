"""BigQuery-backed site repository.

Stores one row per site in the ``sites`` table. Reads select whole rows
and map them leniently, so rows written by an older schema (missing
columns) come back with those fields set to None.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Mapping, Optional

from google.cloud import bigquery
from google.cloud.exceptions import GoogleCloudError, NotFound

from mirrorwatch.errors import RepositoryError
from mirrorwatch.models import SiteRecord, SiteStatus
from mirrorwatch.storage.repository import SiteRepository
from mirrorwatch.storage.schema import SITES_TABLE, TABLE_SCHEMAS

logger = logging.getLogger(__name__)


def row_to_record(row: Mapping[str, Any]) -> SiteRecord:
    """Map a BigQuery row (or any mapping) to a SiteRecord.

    Missing columns are treated as null.
    """
    status_value = row.get("status")
    try:
        status = SiteStatus(status_value) if status_value else SiteStatus.UNKNOWN
    except ValueError:
        logger.warning("Unknown status %r for site %s", status_value, row.get("name"))
        status = SiteStatus.UNKNOWN

    is_active = row.get("is_active")
    return SiteRecord(
        id=row.get("id"),
        name=row.get("name"),
        current_working_url=row.get("current_working_url"),
        status=status,
        last_checked=row.get("last_checked"),
        last_updated=row.get("last_updated"),
        response_time=row.get("response_time_ms"),
        is_active=True if is_active is None else bool(is_active),
        notes=row.get("notes"),
    )


class BigQuerySiteRepository(SiteRepository):
    """Site repository over a BigQuery table."""

    def __init__(
        self,
        project_id: str,
        dataset_id: str,
        location: str = "us-east4",
        client: Optional[bigquery.Client] = None,
    ):
        self.project_id = project_id
        self.dataset_id = dataset_id
        self.location = location
        self.client = client or bigquery.Client(project=project_id)
        self.dataset_ref = f"{project_id}.{dataset_id}"
        self.table_ref = f"{self.dataset_ref}.{SITES_TABLE}"
        self._write_lock = threading.Lock()

    def ensure_tables_exist(self) -> None:
        """Create dataset and tables if they don't exist."""
        dataset = bigquery.Dataset(self.dataset_ref)
        dataset.location = self.location
        try:
            self.client.get_dataset(self.dataset_ref)
            logger.info("Dataset %s already exists", self.dataset_ref)
        except NotFound:
            self.client.create_dataset(dataset)
            logger.info("Created dataset %s", self.dataset_ref)

        for table_name, schema in TABLE_SCHEMAS.items():
            table_ref = f"{self.dataset_ref}.{table_name}"
            table = bigquery.Table(table_ref, schema=schema)
            try:
                self.client.get_table(table_ref)
                logger.debug("Table %s already exists", table_ref)
            except NotFound:
                self.client.create_table(table)
                logger.info("Created table %s", table_ref)

    def _query(self, query: str, params: Optional[list] = None) -> list[Any]:
        job_config = bigquery.QueryJobConfig(query_parameters=params or [])
        try:
            return list(self.client.query(query, job_config=job_config).result())
        except (GoogleCloudError, OSError) as e:
            raise RepositoryError(f"BigQuery query failed: {e}") from e

    # ── Lookups ────────────────────────────────────────────────────

    def get_by_name(self, name: str) -> Optional[SiteRecord]:
        rows = self._query(
            f"SELECT * FROM `{self.table_ref}` WHERE LOWER(name) = LOWER(@name) LIMIT 1",
            [bigquery.ScalarQueryParameter("name", "STRING", name.strip())],
        )
        return row_to_record(rows[0]) if rows else None

    def get_by_id(self, record_id: int) -> Optional[SiteRecord]:
        rows = self._query(
            f"SELECT * FROM `{self.table_ref}` WHERE id = @id LIMIT 1",
            [bigquery.ScalarQueryParameter("id", "INT64", record_id)],
        )
        return row_to_record(rows[0]) if rows else None

    def list_all(self) -> list[SiteRecord]:
        rows = self._query(f"SELECT * FROM `{self.table_ref}` ORDER BY id")
        return [row_to_record(row) for row in rows]

    def list_stale(self, older_than: datetime) -> list[SiteRecord]:
        rows = self._query(
            f"""
            SELECT * FROM `{self.table_ref}`
            WHERE last_checked IS NULL OR last_checked < @older_than
            ORDER BY id
            """,
            [bigquery.ScalarQueryParameter("older_than", "TIMESTAMP", older_than)],
        )
        return [row_to_record(row) for row in rows]

    def count_by_status(self) -> dict[SiteStatus, int]:
        rows = self._query(
            f"SELECT status, COUNT(*) AS n FROM `{self.table_ref}` GROUP BY status"
        )
        counts = {status: 0 for status in SiteStatus}
        for row in rows:
            try:
                status = SiteStatus(row.get("status"))
            except ValueError:
                status = SiteStatus.UNKNOWN
            counts[status] += row.get("n") or 0
        return counts

    def list_recently_updated(self, since: datetime) -> list[SiteRecord]:
        rows = self._query(
            f"""
            SELECT * FROM `{self.table_ref}`
            WHERE last_updated >= @since
            ORDER BY last_updated DESC
            """,
            [bigquery.ScalarQueryParameter("since", "TIMESTAMP", since)],
        )
        return [row_to_record(row) for row in rows]

    # ── Writes ─────────────────────────────────────────────────────

    def upsert(self, record: SiteRecord) -> SiteRecord:
        """Insert or replace by name with a single MERGE statement."""
        query = f"""
            MERGE `{self.table_ref}` T
            USING (
                SELECT
                    COALESCE(
                        (SELECT id FROM `{self.table_ref}` WHERE LOWER(name) = LOWER(@name) LIMIT 1),
                        @id,
                        (SELECT COALESCE(MAX(id), 0) + 1 FROM `{self.table_ref}`)
                    ) AS id,
                    @name AS name,
                    @current_working_url AS current_working_url,
                    @status AS status,
                    @is_active AS is_active,
                    @last_checked AS last_checked,
                    @last_updated AS last_updated,
                    @response_time_ms AS response_time_ms,
                    @notes AS notes
            ) S
            ON LOWER(T.name) = LOWER(S.name)
            WHEN MATCHED THEN UPDATE SET
                current_working_url = S.current_working_url,
                status = S.status,
                is_active = S.is_active,
                last_checked = S.last_checked,
                last_updated = S.last_updated,
                response_time_ms = S.response_time_ms,
                notes = S.notes
            WHEN NOT MATCHED THEN INSERT
                (id, name, current_working_url, status, is_active,
                 last_checked, last_updated, response_time_ms, notes)
            VALUES
                (S.id, S.name, S.current_working_url, S.status, S.is_active,
                 S.last_checked, S.last_updated, S.response_time_ms, S.notes)
        """
        params = [
            bigquery.ScalarQueryParameter("id", "INT64", record.id),
            bigquery.ScalarQueryParameter("name", "STRING", record.name),
            bigquery.ScalarQueryParameter("current_working_url", "STRING", record.current_working_url),
            bigquery.ScalarQueryParameter("status", "STRING", record.status.value),
            bigquery.ScalarQueryParameter("is_active", "BOOL", record.is_active),
            bigquery.ScalarQueryParameter("last_checked", "TIMESTAMP", record.last_checked),
            bigquery.ScalarQueryParameter("last_updated", "TIMESTAMP", record.last_updated),
            bigquery.ScalarQueryParameter("response_time_ms", "INT64", record.response_time),
            bigquery.ScalarQueryParameter("notes", "STRING", record.notes),
        ]
        with self._write_lock:
            self._query(query, params)
            stored = self.get_by_name(record.name)
        if stored is None:
            raise RepositoryError(f"Upsert of {record.name} did not persist")
        logger.debug("Upserted %s (id=%s, status=%s)", stored.name, stored.id, stored.status.value)
        return stored

    def delete(self, record_id: int) -> None:
        with self._write_lock:
            self._query(
                f"DELETE FROM `{self.table_ref}` WHERE id = @id",
                [bigquery.ScalarQueryParameter("id", "INT64", record_id)],
            )
        logger.info("Deleted site record %d", record_id)
