"""BigQuery table schemas for the mirror monitor."""

from google.cloud.bigquery import SchemaField

SITES_TABLE = "sites"

SITES_SCHEMA = [
    SchemaField("id", "INTEGER", mode="REQUIRED"),
    SchemaField("name", "STRING", mode="REQUIRED"),
    SchemaField("current_working_url", "STRING"),
    SchemaField("status", "STRING", mode="REQUIRED"),
    SchemaField("is_active", "BOOLEAN"),
    SchemaField("last_checked", "TIMESTAMP"),
    SchemaField("last_updated", "TIMESTAMP"),
    SchemaField("response_time_ms", "INTEGER"),
    SchemaField("notes", "STRING"),
]

# Map table names to schemas for easy iteration
TABLE_SCHEMAS = {
    SITES_TABLE: SITES_SCHEMA,
}

SITE_COLUMNS = [field.name for field in SITES_SCHEMA]
