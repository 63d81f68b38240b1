from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()


def _money(name: str) -> Column:
    return Column(name, Numeric(12, 2), nullable=False, server_default="0")


def _timestamps() -> list[Column]:
    return [
        Column("created_at", DateTime, nullable=False, server_default=func.now()),
        Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    ]


users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    *_timestamps(),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("description", String(500)),
    Column("start_year", Integer, nullable=False),
    *_timestamps(),
)

payment_methods = Table(
    "payment_methods",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("institution", String(100)),
    Column("sort_order", Integer, nullable=False, server_default="0"),
    Column("is_savings_account", Boolean, nullable=False, server_default="0"),
    Column("savings_type", String(20)),
    Column("settlement_day", Integer),
    Column("linked_payment_method_id", Integer, ForeignKey("payment_methods.id", ondelete="SET NULL")),
    *_timestamps(),
)

budget_years = Table(
    "budget_years",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False),
    Column("year", Integer, nullable=False),
    _money("initial_balance"),
    *_timestamps(),
    UniqueConstraint("budget_id", "year", name="budget_years_budget_year_unique"),
)

budget_groups = Table(
    "budget_groups",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("slug", String(100), nullable=False),
    Column("type", String(20), nullable=False, server_default="expense"),
    Column("sort_order", Integer, nullable=False, server_default="0"),
    *_timestamps(),
    UniqueConstraint("budget_id", "slug", name="budget_groups_budget_slug_unique"),
)

budget_items = Table(
    "budget_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("year_id", Integer, ForeignKey("budget_years.id", ondelete="CASCADE"), nullable=False),
    Column("group_id", Integer, ForeignKey("budget_groups.id", ondelete="SET NULL")),
    Column("name", String(200), nullable=False),
    Column("slug", String(200), nullable=False),
    Column("sort_order", Integer, nullable=False, server_default="0"),
    _money("yearly_budget"),
    Column("savings_account_id", Integer, ForeignKey("payment_methods.id", ondelete="CASCADE")),
    *_timestamps(),
)

monthly_values = Table(
    "monthly_values",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("item_id", Integer, ForeignKey("budget_items.id", ondelete="CASCADE"), nullable=False),
    Column("month", Integer, nullable=False),
    _money("budget"),
    _money("actual"),
    *_timestamps(),
    UniqueConstraint("item_id", "month", name="monthly_values_item_month_unique"),
)

# payment_method_id is RESTRICT: a payment method cannot be dropped while transactions use it.
transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("year_id", Integer, ForeignKey("budget_years.id", ondelete="CASCADE"), nullable=False),
    Column("item_id", Integer, ForeignKey("budget_items.id", ondelete="SET NULL")),
    Column("date", Date, nullable=False),
    Column("description", String(500)),
    Column("comment", String(500)),
    Column("third_party", String(200)),
    Column("payment_method_id", Integer, ForeignKey("payment_methods.id", ondelete="RESTRICT"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("accounting_month", Integer, nullable=False),
    Column("accounting_year", Integer, nullable=False),
    Column("warning", String(50)),
    *_timestamps(),
)

assets = Table(
    "assets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("sort_order", Integer, nullable=False, server_default="0"),
    Column("is_system", Boolean, nullable=False, server_default="0"),
    Column("is_debt", Boolean, nullable=False, server_default="0"),
    Column("parent_asset_id", Integer, ForeignKey("assets.id", ondelete="CASCADE")),
    Column("savings_type", String(20)),
    *_timestamps(),
    UniqueConstraint("budget_id", "name", "is_debt", name="assets_budget_name_debt_unique"),
)

asset_values = Table(
    "asset_values",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("asset_id", Integer, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False),
    Column("year_id", Integer, ForeignKey("budget_years.id", ondelete="CASCADE"), nullable=False),
    _money("value"),
    *_timestamps(),
    UniqueConstraint("asset_id", "year_id", name="asset_values_asset_year_unique"),
)

transfers = Table(
    "transfers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("year_id", Integer, ForeignKey("budget_years.id", ondelete="CASCADE"), nullable=False),
    Column("date", Date, nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("description", String(500)),
    Column("source_account_id", Integer, ForeignKey("payment_methods.id", ondelete="CASCADE"), nullable=False),
    Column("destination_account_id", Integer, ForeignKey("payment_methods.id", ondelete="CASCADE"), nullable=False),
    Column("accounting_month", Integer, nullable=False),
    Column("accounting_year", Integer, nullable=False),
    *_timestamps(),
)

account_balances = Table(
    "account_balances",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("year_id", Integer, ForeignKey("budget_years.id", ondelete="CASCADE"), nullable=False),
    Column("payment_method_id", Integer, ForeignKey("payment_methods.id", ondelete="CASCADE"), nullable=False),
    _money("initial_balance"),
    *_timestamps(),
    UniqueConstraint("year_id", "payment_method_id", name="account_balances_year_payment_method_unique"),
)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(database_url, future=True, pool_pre_ping=True)


def create_schema(engine: Engine) -> None:
    metadata.create_all(engine)
