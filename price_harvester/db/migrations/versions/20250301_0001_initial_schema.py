"""Initial schema.

Revision ID: 0001
Revises:
Create Date: 2025-03-01

This migration creates:
- retailers, merchants, merchant_retailers: account entities
- feeds, feed_runs, feed_run_errors: scheduling and run history
- quarantined_records, feed_corrections: correction workflow
- source_products, source_product_presence, source_product_seen, prices: price history
- products, product_links: catalog matching
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Account entities
    op.create_table(
        "retailers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("website", sa.String(500), nullable=True),
        sa.Column("eligibility", sa.String(20), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_retailers_name", "retailers", ["name"])
    op.create_index("ix_retailers_eligibility", "retailers", ["eligibility"])

    op.create_table(
        "merchants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("tier", sa.String(30), nullable=True),
        sa.Column("subscription_status", sa.String(20), nullable=True),
        sa.Column("subscription_expires_at", sa.DateTime(), nullable=True),
        sa.Column("last_subscription_notice_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "merchant_retailers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("merchant_id", sa.String(36), sa.ForeignKey("merchants.id"), nullable=False),
        sa.Column("retailer_id", sa.String(36), sa.ForeignKey("retailers.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("listing_status", sa.String(20), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("merchant_id", "retailer_id", name="uq_merchant_retailer"),
    )
    op.create_index("ix_merchant_retailers_merchant_id", "merchant_retailers", ["merchant_id"])
    op.create_index("ix_merchant_retailers_retailer_id", "merchant_retailers", ["retailer_id"])

    # Feeds and runs
    op.create_table(
        "feeds",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("retailer_id", sa.String(36), sa.ForeignKey("retailers.id"), nullable=False),
        sa.Column("merchant_id", sa.String(36), sa.ForeignKey("merchants.id"), nullable=True),
        sa.Column("transport", sa.String(20), nullable=True),
        sa.Column("url", sa.String(2000), nullable=True),
        sa.Column("host", sa.String(255), nullable=True),
        sa.Column("port", sa.Integer(), nullable=True),
        sa.Column("path", sa.String(1000), nullable=True),
        sa.Column("username", sa.String(255), nullable=True),
        sa.Column("password", sa.String(255), nullable=True),
        sa.Column("format", sa.String(10), nullable=True),
        sa.Column("compression", sa.String(10), nullable=True),
        sa.Column("max_file_size_bytes", sa.Integer(), nullable=True),
        sa.Column("max_rows", sa.Integer(), nullable=True),
        sa.Column("schedule_frequency_hours", sa.Integer(), nullable=True),
        sa.Column("next_run_at", sa.DateTime(), nullable=True),
        sa.Column("manual_run_pending", sa.Boolean(), nullable=True),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=True),
        sa.Column("last_content_hash", sa.String(64), nullable=True),
        sa.Column("last_remote_mtime", sa.DateTime(), nullable=True),
        sa.Column("last_remote_size", sa.Integer(), nullable=True),
        sa.Column("last_run_at", sa.DateTime(), nullable=True),
        sa.Column("last_success_at", sa.DateTime(), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_feeds_retailer_id", "feeds", ["retailer_id"])
    op.create_index("ix_feeds_merchant_id", "feeds", ["merchant_id"])
    op.create_index("ix_feeds_manual_run_pending", "feeds", ["manual_run_pending"])
    op.create_index("ix_feeds_due", "feeds", ["status", "next_run_at"])

    op.create_table(
        "feed_runs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("feed_id", sa.String(36), sa.ForeignKey("feeds.id"), nullable=False),
        sa.Column("trigger", sa.String(20), nullable=True),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("rows_read", sa.Integer(), nullable=True),
        sa.Column("rows_parsed", sa.Integer(), nullable=True),
        sa.Column("row_count", sa.Integer(), nullable=True),
        sa.Column("products_upserted", sa.Integer(), nullable=True),
        sa.Column("prices_written", sa.Integer(), nullable=True),
        sa.Column("prices_unchanged", sa.Integer(), nullable=True),
        sa.Column("quarantined_count", sa.Integer(), nullable=True),
        sa.Column("error_count", sa.Integer(), nullable=True),
        sa.Column("skipped_reason", sa.String(30), nullable=True),
        sa.Column("error_code", sa.String(40), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index("ix_feed_runs_feed_id", "feed_runs", ["feed_id"])
    op.create_index("ix_feed_runs_status_finished", "feed_runs", ["status", "finished_at"])

    op.create_table(
        "feed_run_errors",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "run_id",
            sa.String(36),
            sa.ForeignKey("feed_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("row_number", sa.Integer(), nullable=True),
        sa.Column("code", sa.String(40), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("raw_row_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_feed_run_errors_run_id", "feed_run_errors", ["run_id"])

    # Quarantine
    op.create_table(
        "quarantined_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("feed_id", sa.String(36), sa.ForeignKey("feeds.id"), nullable=False),
        sa.Column("retailer_id", sa.String(36), nullable=False),
        sa.Column("run_id", sa.String(36), nullable=True),
        sa.Column("match_key", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("raw_data_json", sa.Text(), nullable=True),
        sa.Column("parsed_fields_json", sa.Text(), nullable=True),
        sa.Column("blocking_errors_json", sa.Text(), nullable=True),
        sa.Column("primary_error_code", sa.String(30), nullable=True),
        sa.Column("source_product_id", sa.String(36), nullable=True),
        sa.Column("dismissed_by", sa.String(255), nullable=True),
        sa.Column("dismiss_note", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("dismissed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("feed_id", "match_key", name="uq_quarantine_feed_match_key"),
    )
    op.create_index("ix_quarantined_records_feed_id", "quarantined_records", ["feed_id"])
    op.create_index("ix_quarantined_records_retailer_id", "quarantined_records", ["retailer_id"])
    op.create_index("ix_quarantined_records_status", "quarantined_records", ["status"])
    op.create_index(
        "ix_quarantined_records_primary_error_code", "quarantined_records", ["primary_error_code"]
    )

    op.create_table(
        "feed_corrections",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "quarantined_record_id",
            sa.String(36),
            sa.ForeignKey("quarantined_records.id"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("field_name", sa.String(50), nullable=False),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=False),
        sa.Column("author", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index(
        "ix_feed_corrections_quarantined_record_id", "feed_corrections", ["quarantined_record_id"]
    )

    # Source products and prices
    op.create_table(
        "source_products",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("feed_id", sa.String(36), sa.ForeignKey("feeds.id"), nullable=False),
        sa.Column("retailer_id", sa.String(36), nullable=False),
        sa.Column("identity_type", sa.String(20), nullable=False),
        sa.Column("identity_key", sa.String(600), nullable=False),
        sa.Column("record_hash", sa.String(64), nullable=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("url", sa.String(2000), nullable=False),
        sa.Column("url_hash", sa.String(64), nullable=True),
        sa.Column("upc", sa.String(14), nullable=True),
        sa.Column("sku", sa.String(255), nullable=True),
        sa.Column("network_item_id", sa.String(255), nullable=True),
        sa.Column("brand", sa.String(255), nullable=True),
        sa.Column("category", sa.String(255), nullable=True),
        sa.Column("image_url", sa.String(2000), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("feed_id", "identity_key", name="uq_source_product_identity"),
    )
    op.create_index("ix_source_products_feed_id", "source_products", ["feed_id"])
    op.create_index("ix_source_products_retailer_id", "source_products", ["retailer_id"])
    op.create_index("ix_source_products_upc", "source_products", ["upc"])
    op.create_index("ix_source_products_record_hash", "source_products", ["feed_id", "record_hash"])

    op.create_table(
        "source_product_presence",
        sa.Column(
            "source_product_id",
            sa.String(36),
            sa.ForeignKey("source_products.id"),
            primary_key=True,
        ),
        sa.Column("last_seen_at", sa.DateTime(), nullable=False),
        sa.Column("last_run_id", sa.String(36), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "source_product_seen",
        sa.Column("run_id", sa.String(36), primary_key=True),
        sa.Column("source_product_id", sa.String(36), primary_key=True),
        sa.Column("seen_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "prices",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "source_product_id", sa.String(36), sa.ForeignKey("source_products.id"), nullable=False
        ),
        sa.Column("retailer_id", sa.String(36), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("original_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("price_type", sa.String(10), nullable=True),
        sa.Column("in_stock", sa.Boolean(), nullable=True),
        sa.Column("price_signature", sa.String(64), nullable=False),
        sa.Column("run_trigger", sa.String(20), nullable=False),
        sa.Column("run_id", sa.String(36), nullable=False),
        sa.Column("observed_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint(
            "source_product_id", "run_id", "price_signature", name="uq_price_product_run_signature"
        ),
    )
    op.create_index("ix_prices_retailer_id", "prices", ["retailer_id"])
    op.create_index("ix_prices_run_id", "prices", ["run_id"])
    op.create_index("ix_prices_product_observed", "prices", ["source_product_id", "observed_at"])

    # Catalog matching
    op.create_table(
        "products",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("brand", sa.String(255), nullable=True),
        sa.Column("upc", sa.String(14), nullable=True),
        sa.Column("caliber", sa.String(50), nullable=True),
        sa.Column("grain_weight", sa.Integer(), nullable=True),
        sa.Column("round_count", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_products_brand", "products", ["brand"])
    op.create_index("ix_products_upc", "products", ["upc"])
    op.create_index("ix_products_caliber", "products", ["caliber"])

    op.create_table(
        "product_links",
        sa.Column(
            "source_product_id",
            sa.String(36),
            sa.ForeignKey("source_products.id"),
            primary_key=True,
        ),
        sa.Column("product_id", sa.String(36), sa.ForeignKey("products.id"), nullable=True),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("match_type", sa.String(20), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("tier", sa.String(10), nullable=True),
        sa.Column("resolver_version", sa.String(20), nullable=False),
        sa.Column("reason_code", sa.String(40), nullable=True),
        sa.Column("evidence_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_product_links_product_id", "product_links", ["product_id"])
    op.create_index("ix_product_links_status", "product_links", ["status"])
    op.create_index("ix_product_links_resolver_version", "product_links", ["resolver_version"])


def downgrade() -> None:
    op.drop_table("product_links")
    op.drop_table("products")
    op.drop_table("prices")
    op.drop_table("source_product_seen")
    op.drop_table("source_product_presence")
    op.drop_table("source_products")
    op.drop_table("feed_corrections")
    op.drop_table("quarantined_records")
    op.drop_table("feed_run_errors")
    op.drop_table("feed_runs")
    op.drop_table("feeds")
    op.drop_table("merchant_retailers")
    op.drop_table("merchants")
    op.drop_table("retailers")
