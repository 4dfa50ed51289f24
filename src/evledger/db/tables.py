"""SQLAlchemy table definitions for evledger."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
)

from .enums import (
    BillingStatus,
    ClearingStatus,
    Lifecycle,
    PaymentStatus,
    PayoutStatus,
    RoamingType,
    SessionStatus,
    sql_in,
)

# Use naming convention for constraints (helps with migrations)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)

# Schema version tracking
schema_version = Table(
    "schema_version",
    metadata,
    Column("version", Integer, primary_key=True),
    Column("applied_at", DateTime, server_default=func.now()),
)

# Tariff profiles (workspace price lists)
tariff_profiles = Table(
    "tariff_profiles",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("workspace_id", String(64), nullable=False),
    Column("name", String(100), nullable=False),
    Column("base_price_per_kwh", Float, nullable=False),
    Column("price_per_minute", Float, nullable=False, server_default="0"),
    Column("session_start_fee", Float, nullable=False, server_default="0"),
    Column("currency", String(3), nullable=False, server_default="EUR"),
    Column("ms_fee_percent", Float, nullable=False),  # fraction, 0.15 = 15%
    Column("is_active", Boolean, server_default="1"),
    Column("valid_from", DateTime, nullable=False),
    Column("valid_until", DateTime),
    Column("version", Integer, nullable=False, server_default="1"),
    Column("lifecycle", String(20), nullable=False, server_default=Lifecycle.ACTIVE.value),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now()),
    CheckConstraint(f"lifecycle IN ({sql_in(Lifecycle)})", name="lifecycle_check"),
    CheckConstraint("ms_fee_percent >= 0 AND ms_fee_percent <= 1", name="ms_fee_range"),
)

Index("idx_tariff_profiles_workspace", tariff_profiles.c.workspace_id)

# Tariff assignments (station-level when connector_id is NULL)
tariff_assignments = Table(
    "tariff_assignments",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "tariff_id",
        Integer,
        ForeignKey("tariff_profiles.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("station_id", String(64), nullable=False),
    Column("connector_id", String(64)),
    Column("valid_from", DateTime, nullable=False),
    Column("valid_until", DateTime),
    Column("created_at", DateTime, server_default=func.now()),
)

Index(
    "idx_tariff_assignments_target",
    tariff_assignments.c.station_id,
    tariff_assignments.c.connector_id,
)

# End users (payment profile and wallet)
end_users = Table(
    "end_users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(254)),
    Column("stripe_customer_id", String(255)),
    Column("stripe_payment_method_id", String(255)),
    Column("wallet_balance_cents", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime, server_default=func.now()),
)

# Wallet credits, one row per idempotency reference
wallet_transactions = Table(
    "wallet_transactions",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "end_user_id",
        String(64),
        ForeignKey("end_users.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("amount_cents", Integer, nullable=False),
    Column("reference", String(200), nullable=False, unique=True),
    Column("created_at", DateTime, server_default=func.now()),
)

# Payout statements
payout_statements = Table(
    "payout_statements",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("workspace_id", String(64), nullable=False),
    Column("period_start", DateTime, nullable=False),
    Column("period_end", DateTime, nullable=False),
    Column("status", String(20), nullable=False, server_default=PayoutStatus.DRAFT.value),
    Column("total_sessions", Integer, nullable=False, server_default="0"),
    Column("total_energy_kwh", Float, nullable=False, server_default="0"),
    Column("total_gross_amount", Float, nullable=False, server_default="0"),
    Column("total_ms_fee_amount", Float, nullable=False, server_default="0"),
    Column("total_sub_cpo_earning", Float, nullable=False, server_default="0"),
    Column("currency", String(3), nullable=False, server_default="EUR"),
    Column("created_by", String(200)),
    Column("finalized_at", DateTime),
    Column("payout_date", DateTime),
    Column("payout_reference", String(200)),
    Column("payout_amount", Float),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now()),
    CheckConstraint(f"status IN ({sql_in(PayoutStatus)})", name="status_check"),
)

# At most one live statement per exact period; cancelled ones don't count
Index(
    "uq_payout_statements_period",
    payout_statements.c.workspace_id,
    payout_statements.c.period_start,
    payout_statements.c.period_end,
    unique=True,
    postgresql_where=(payout_statements.c.status != PayoutStatus.CANCELLED.value),
    sqlite_where=(payout_statements.c.status != PayoutStatus.CANCELLED.value),
)

# Charging sessions (the ledger unit)
charging_sessions = Table(
    "charging_sessions",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("workspace_id", String(64), nullable=False),
    Column("station_id", String(64), nullable=False),
    Column("connector_id", String(64)),
    Column("end_user_id", String(64)),
    Column("start_time", DateTime, nullable=False),
    Column("end_time", DateTime),
    Column("energy_kwh", Float),
    Column("duration_seconds", Integer),
    Column("status", String(20), nullable=False, server_default=SessionStatus.ACTIVE.value),
    Column(
        "billing_status",
        String(20),
        nullable=False,
        server_default=BillingStatus.NOT_BILLED.value,
    ),
    Column("billable", Boolean, nullable=False, server_default="1"),
    # Frozen tariff snapshot
    Column("tariff_snapshot_id", Integer),
    Column("tariff_snapshot_version", Integer),
    Column("tariff_base_price_per_kwh", Float),
    Column("tariff_price_per_minute", Float),
    Column("tariff_session_start_fee", Float),
    Column("tariff_ms_fee_percent", Float),  # percent units, 15 = 15%
    Column("currency", String(3), nullable=False, server_default="EUR"),
    Column("tariff_snapshot_json", Text),
    # Billing outcome
    Column("gross_amount", Float),
    Column("ms_fee_amount", Float),
    Column("sub_cpo_earning_amount", Float),
    Column("billing_breakdown_json", Text),
    Column("billed_at", DateTime),
    # Payment mirror
    Column(
        "payment_status",
        String(20),
        nullable=False,
        server_default=PaymentStatus.NONE.value,
    ),
    Column("stripe_payment_intent_id", String(255)),
    Column("payment_reference", String(64), unique=True),  # processor idempotency key stem
    Column("hold_amount_cents", Integer),
    Column("captured_amount_cents", Integer),
    Column("paid_at", DateTime),
    Column("payment_last_error_code", String(100)),
    Column("payment_last_error_message", Text),
    # Roaming clearing
    Column("roaming_type", String(20), nullable=False, server_default=RoamingType.NONE.value),
    Column("hubject_session_id", String(100), unique=True),
    Column(
        "clearing_status",
        String(20),
        nullable=False,
        server_default=ClearingStatus.NONE.value,
    ),
    Column("roaming_gross_amount", Float),
    Column("roaming_net_amount", Float),
    Column("clearing_reference", String(200)),
    Column("clearing_dispute_reason", Text),
    Column("clearing_cdr_json", Text),
    Column("clearing_settled_at", DateTime),
    Column(
        "payout_statement_id",
        Integer,
        ForeignKey("payout_statements.id", ondelete="SET NULL"),
    ),
    Column("created_at", DateTime, server_default=func.now()),
    CheckConstraint(f"status IN ({sql_in(SessionStatus)})", name="status_check"),
    CheckConstraint(f"billing_status IN ({sql_in(BillingStatus)})", name="billing_status_check"),
    CheckConstraint(f"payment_status IN ({sql_in(PaymentStatus)})", name="payment_status_check"),
    CheckConstraint(f"roaming_type IN ({sql_in(RoamingType)})", name="roaming_type_check"),
    CheckConstraint(f"clearing_status IN ({sql_in(ClearingStatus)})", name="clearing_status_check"),
)

Index("idx_sessions_workspace_start", charging_sessions.c.workspace_id, charging_sessions.c.start_time)
Index("idx_sessions_payment_intent", charging_sessions.c.stripe_payment_intent_id)
Index("idx_sessions_payout_statement", charging_sessions.c.payout_statement_id)

# Payout line items (copy of session figures at generation time)
payout_line_items = Table(
    "payout_line_items",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "statement_id",
        Integer,
        ForeignKey("payout_statements.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column(
        "session_id",
        Integer,
        ForeignKey("charging_sessions.id"),
        nullable=False,
    ),
    Column("session_start_time", DateTime, nullable=False),
    Column("station_id", String(64)),
    Column("energy_kwh", Float, nullable=False, server_default="0"),
    Column("gross_amount", Float, nullable=False, server_default="0"),
    Column("ms_fee_amount", Float, nullable=False, server_default="0"),
    Column("sub_cpo_earning", Float, nullable=False, server_default="0"),
    Column("currency", String(3), nullable=False, server_default="EUR"),
)

Index("idx_payout_line_items_statement", payout_line_items.c.statement_id)

# Processed webhook deliveries (idempotency ledger)
processed_webhook_events = Table(
    "processed_webhook_events",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("event_id", String(255), nullable=False, unique=True),
    Column("event_type", String(100), nullable=False),
    Column("payment_intent_id", String(255)),
    Column("session_id", Integer),
    Column("outcome", String(50), nullable=False),
    Column("processed_at", DateTime, server_default=func.now()),
)

SCHEMA_VERSION = 1
