"""Configuration for operational tools."""

from __future__ import annotations

import os
from pathlib import Path

# Backup settings
BACKUP_DIR = Path(os.environ.get("BACKUP_DIR", "./backups"))
BACKUP_RETENTION_DAYS = int(os.environ.get("BACKUP_RETENTION_DAYS", "30"))
BACKUP_MAX_COUNT = int(os.environ.get("BACKUP_MAX_COUNT", "30"))

# Connection pool
POOL_SIZE = 5
POOL_MAX_OVERFLOW = 15
POOL_RECYCLE_SECONDS = 300
CONNECT_TIMEOUT_SECONDS = 10

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", ""})
PRODUCTION_INDICATORS = ("prod", "production", "live")

# SQLSTATE codes treated as "already applied" by DDL helpers
IGNORABLE_DDL_CODES = frozenset({
    "42P07",  # duplicate_table
    "42701",  # duplicate_column
    "42710",  # duplicate_object
})
IGNORABLE_DDL_MESSAGES = ("already exists", "duplicate column")

# Transactional tables that are never synced or exported between environments
ORDER_TABLES = frozenset({
    "bills_of_lading",
    "packages",
    "declarations",
    "labels",
    "last_mile_orders",
    "fees",
    "invoices",
    "payments",
    "clearance_documents",
    "clearance_document_items",
    "void_applications",
    "operation_logs",
    "bill_files",
    "cargo_items",
})

# Reference tables synced from the source environment.
# Order matters: roles before users, customers before their tax numbers.
SYNC_TABLES = [
    {"name": "service_fee_categories", "conflict_key": "id",
     "description": "Service fee categories"},
    {"name": "service_providers", "conflict_key": "provider_code",
     "description": "Service providers"},
    {"name": "transport_methods", "conflict_key": "id",
     "description": "Transport methods"},
    {"name": "roles", "conflict_key": "role_code",
     "description": "Roles"},
    {"name": "system_settings", "conflict_key": "setting_key",
     "description": "System settings"},
    {"name": "alert_rules", "conflict_key": "id",
     "description": "Alert rules"},
    {"name": "products", "conflict_key": "product_code",
     "description": "Products"},
    {"name": "product_fee_items", "conflict_key": "id",
     "description": "Product fee items"},
    {"name": "suppliers", "conflict_key": "supplier_code",
     "description": "Suppliers"},
    {"name": "customers", "conflict_key": "id",
     "description": "Customers"},
    {"name": "customer_tax_numbers", "conflict_key": "id",
     "description": "Customer tax numbers"},
    {"name": "shared_tax_numbers", "conflict_key": "id",
     "description": "Shared tax numbers"},
    {"name": "users", "conflict_key": "id",
     "description": "Users"},
    {"name": "order_sequences", "conflict_key": "business_type",
     "description": "Order sequences"},
]

# Tables exported to SQL files for offline seeding of another environment
EXPORT_TABLES = [
    {"name": "countries", "conflict_key": "code"},
    {"name": "cities", "conflict_key": "id"},
    {"name": "ports_of_loading", "conflict_key": "port_code"},
    {"name": "destination_ports", "conflict_key": "port_code"},
    {"name": "air_ports", "conflict_key": "code"},
    {"name": "shipping_companies", "conflict_key": "code"},
    {"name": "vat_rates", "conflict_key": "country_code"},
    {"name": "products", "conflict_key": "product_code"},
    {"name": "product_fee_items", "conflict_key": "id"},
    {"name": "tariff_rates", "conflict_key": "hs_code"},
]
EXPORT_BATCH_SIZE = 5000

# Columns never overwritten by an upsert
UPSERT_PRESERVED_COLUMNS = frozenset({"created_at"})

# Order numbering
BILL_BUSINESS_TYPE = "BILL"
INQUIRY_BUSINESS_TYPE = "inquiry"
BILL_NUMBER_PREFIX = "BP"
INQUIRY_NUMBER_PREFIX = "INQ"

# HS code columns normalized to ten digits: (table, column)
HS_CODE_COLUMNS = [
    ("cargo_items", "matched_hs_code"),
    ("cargo_items", "customer_hs_code"),
    ("hs_match_history", "matched_hs_code"),
    ("hs_match_records", "hs_code"),
    ("tariff_rates", "hs_code"),
]
HS_CODE_LENGTH = 10

# Origin values that mean "applies to every origin country"
GENERIC_ORIGIN_CODES = ("", "ERGA_OMNES")

# Matcher confidence scores
MATCH_CONFIDENCE = {
    "exact": 100,
    "prefix8": 90,
    "prefix6": 80,
    "history": 85,
    "history_base": 70,
    "history_step": 5,
    "fuzzy": 60,
    "fuzzy_material": 65,
}
DEFAULT_VAT_RATE = 19.0

# Read-only query guard
FORBIDDEN_QUERY_KEYWORDS = [
    "INSERT", "UPDATE", "DELETE", "DROP", "ALTER", "TRUNCATE", "CREATE",
    "GRANT", "REVOKE", "COPY",
]

# Fee tables checked for missing English names: (table, name column, english column)
FEE_NAME_TABLES = [
    ("product_fee_items", "fee_name", "fee_name_en"),
    ("supplier_price_items", "fee_name", "fee_name_en"),
]
