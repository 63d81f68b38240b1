from __future__ import annotations

import logging
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Any, Iterator

from pydantic import BaseModel
from sqlalchemy import Table, delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .db import (
    account_balances,
    asset_values,
    assets,
    budget_groups,
    budget_items,
    budget_years,
    budgets,
    build_engine,
    create_schema,
    monthly_values,
    payment_methods,
    transactions,
    transfers,
    users,
)
from .errors import AppError
from .schemas import BACKUP_ENTITY_MODELS, BACKUP_SCHEMA_VERSION, BackupPayload, ImportSummary
from .services.backup import TRANSACTION_INSERT_CHUNK_SIZE, chunked, remap, remap_optional, validate_backup_payload

logger = logging.getLogger(__name__)

MEMORY_DATABASE_URL = "sqlite+pysqlite:///:memory:"

_TABLES: dict[str, Table] = {
    "paymentMethods": payment_methods,
    "budgetYears": budget_years,
    "budgetGroups": budget_groups,
    "budgetItems": budget_items,
    "monthlyValues": monthly_values,
    "transactions": transactions,
    "assets": assets,
    "assetValues": asset_values,
    "transfers": transfers,
    "accountBalances": account_balances,
}

# Document field -> column, per document array. Bookkeeping columns
# (user_id, budget_id, created_at, updated_at) never leave the store.
_COLUMNS: dict[str, dict[str, str]] = {
    "paymentMethods": {
        "id": "id",
        "name": "name",
        "institution": "institution",
        "sortOrder": "sort_order",
        "isSavingsAccount": "is_savings_account",
        "savingsType": "savings_type",
        "settlementDay": "settlement_day",
        "linkedPaymentMethodId": "linked_payment_method_id",
    },
    "budgetYears": {"id": "id", "year": "year", "initialBalance": "initial_balance"},
    "budgetGroups": {"id": "id", "name": "name", "slug": "slug", "type": "type", "sortOrder": "sort_order"},
    "budgetItems": {
        "id": "id",
        "yearId": "year_id",
        "groupId": "group_id",
        "name": "name",
        "slug": "slug",
        "sortOrder": "sort_order",
        "yearlyBudget": "yearly_budget",
        "savingsAccountId": "savings_account_id",
    },
    "monthlyValues": {"itemId": "item_id", "month": "month", "budget": "budget", "actual": "actual"},
    "transactions": {
        "yearId": "year_id",
        "itemId": "item_id",
        "date": "date",
        "description": "description",
        "comment": "comment",
        "thirdParty": "third_party",
        "paymentMethodId": "payment_method_id",
        "amount": "amount",
        "accountingMonth": "accounting_month",
        "accountingYear": "accounting_year",
        "warning": "warning",
    },
    "assets": {
        "id": "id",
        "name": "name",
        "sortOrder": "sort_order",
        "isSystem": "is_system",
        "isDebt": "is_debt",
        "parentAssetId": "parent_asset_id",
        "savingsType": "savings_type",
    },
    "assetValues": {"assetId": "asset_id", "yearId": "year_id", "value": "value"},
    "transfers": {
        "yearId": "year_id",
        "date": "date",
        "amount": "amount",
        "description": "description",
        "sourceAccountId": "source_account_id",
        "destinationAccountId": "destination_account_id",
        "accountingMonth": "accounting_month",
        "accountingYear": "accounting_year",
    },
    "accountBalances": {"yearId": "year_id", "paymentMethodId": "payment_method_id", "initialBalance": "initial_balance"},
}


def _record_values(key: str, record: BaseModel, **overrides: Any) -> dict[str, Any]:
    values = {column: getattr(record, field) for field, column in _COLUMNS[key].items() if field != "id"}
    values.update(overrides)
    return values


class Persistence:
    def __init__(self, database_url: str, default_user_id: str) -> None:
        self.engine: Engine = build_engine(database_url)
        self.default_user_id = default_user_id
        create_schema(self.engine)
        # A SQLite store runs on one shared connection, so every unit of work must hold it exclusively.
        self._lock = threading.RLock() if self.engine.dialect.name == "sqlite" else None

    def _exclusive(self):
        return self._lock if self._lock is not None else nullcontext()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        with self._exclusive(), self.engine.connect() as conn:
            yield conn

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        with self._exclusive(), self.engine.begin() as conn:
            yield conn

    # -- budget context ------------------------------------------------

    def get_or_create_default_budget(self, user_id: str) -> dict[str, Any]:
        """Return the user's first budget, creating the user and budget on first use."""
        with self._begin() as conn:
            found = conn.execute(select(users.c.id).where(users.c.id == user_id).with_for_update()).first()
            if found is None:
                conn.execute(insert(users).values(id=user_id, email=f"{user_id}@local"))
            row = conn.execute(
                select(budgets.c.id, budgets.c.user_id, budgets.c.description, budgets.c.start_year)
                .where(budgets.c.user_id == user_id)
                .order_by(budgets.c.id)
                .limit(1)
            ).first()
            if row is not None:
                return dict(row._mapping)
            start_year = datetime.now(timezone.utc).year
            result = conn.execute(insert(budgets).values(user_id=user_id, description=None, start_year=start_year))
            budget_id = result.inserted_primary_key[0]
            logger.info("Created default budget %s for user %s", budget_id, user_id)
            return {"id": budget_id, "user_id": user_id, "description": None, "start_year": start_year}

    def count_entities(self, user_id: str, budget_id: int) -> ImportSummary:
        year_ids = select(budget_years.c.id).where(budget_years.c.budget_id == budget_id)
        item_ids = select(budget_items.c.id).where(budget_items.c.year_id.in_(year_ids))
        asset_ids = select(assets.c.id).where(assets.c.budget_id == budget_id)
        filters = {
            "paymentMethods": payment_methods.c.user_id == user_id,
            "budgetYears": budget_years.c.budget_id == budget_id,
            "budgetGroups": budget_groups.c.budget_id == budget_id,
            "budgetItems": budget_items.c.year_id.in_(year_ids),
            "monthlyValues": monthly_values.c.item_id.in_(item_ids),
            "transactions": transactions.c.year_id.in_(year_ids),
            "assets": assets.c.budget_id == budget_id,
            "assetValues": asset_values.c.asset_id.in_(asset_ids),
            "transfers": transfers.c.year_id.in_(year_ids),
            "accountBalances": account_balances.c.year_id.in_(year_ids),
        }
        with self._connect() as conn:
            counts = {
                key: conn.execute(select(func.count()).select_from(_TABLES[key]).where(clause)).scalar_one()
                for key, clause in filters.items()
            }
        return ImportSummary(**counts)

    # -- export ----------------------------------------------------------

    def _select(self, conn: Connection, key: str, where: Any, *order_by: Any) -> list[dict[str, Any]]:
        table = _TABLES[key]
        columns = [table.c[column].label(field) for field, column in _COLUMNS[key].items()]
        stmt = select(*columns).where(where).order_by(*order_by, table.c.id)
        return [dict(row._mapping) for row in conn.execute(stmt)]

    def export_backup(self, user_id: str, budget_id: int) -> BackupPayload:
        # All reads share one connection and one (read-only) transaction.
        with self._connect() as conn:
            pms = self._select(conn, "paymentMethods", payment_methods.c.user_id == user_id, payment_methods.c.sort_order)
            years = self._select(conn, "budgetYears", budget_years.c.budget_id == budget_id, budget_years.c.year)
            year_ids = [y["id"] for y in years]
            groups = self._select(conn, "budgetGroups", budget_groups.c.budget_id == budget_id, budget_groups.c.sort_order)
            items = (
                self._select(conn, "budgetItems", budget_items.c.year_id.in_(year_ids), budget_items.c.sort_order)
                if year_ids
                else []
            )
            item_ids = [i["id"] for i in items]
            mvs = self._select(conn, "monthlyValues", monthly_values.c.item_id.in_(item_ids)) if item_ids else []
            txns = self._select(conn, "transactions", transactions.c.year_id.in_(year_ids)) if year_ids else []
            asset_rows = self._select(conn, "assets", assets.c.budget_id == budget_id, assets.c.sort_order)
            asset_ids = [a["id"] for a in asset_rows]
            avs = self._select(conn, "assetValues", asset_values.c.asset_id.in_(asset_ids)) if asset_ids else []
            xfers = self._select(conn, "transfers", transfers.c.year_id.in_(year_ids)) if year_ids else []
            balances = self._select(conn, "accountBalances", account_balances.c.year_id.in_(year_ids)) if year_ids else []

        exported_at = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        rows = {
            "paymentMethods": pms,
            "budgetYears": years,
            "budgetGroups": groups,
            "budgetItems": items,
            "monthlyValues": mvs,
            "transactions": txns,
            "assets": asset_rows,
            "assetValues": avs,
            "transfers": xfers,
            "accountBalances": balances,
        }
        # Stored rows are trusted as-is; the record constraints only gate imports.
        return BackupPayload.model_construct(
            schemaVersion=BACKUP_SCHEMA_VERSION,
            exportedAt=exported_at,
            **{key: [model.model_construct(**row) for row in rows[key]] for key, model in BACKUP_ENTITY_MODELS.items()},
        )

    # -- import ----------------------------------------------------------

    def import_backup(self, user_id: str, budget_id: int, payload: Any) -> ImportSummary:
        """Replace the user's budget data with the contents of a backup document.

        The document is validated before anything is deleted. Deletion and
        insertion share one transaction, so either the whole document lands
        or the store is left untouched.
        """
        document = validate_backup_payload(payload)
        try:
            with self._begin() as conn:
                if conn.dialect.name == "postgresql":
                    # Serialises concurrent imports into the same budget; released at commit/rollback.
                    conn.execute(select(func.pg_advisory_xact_lock(budget_id)))
                self._delete_budget_data(conn, user_id, budget_id)
                self._insert_document(conn, user_id, budget_id, document)
        except SQLAlchemyError as exc:
            logger.exception("Backup import failed for user %s budget %s", user_id, budget_id)
            raise AppError(500, "Backup import failed; no changes were applied", "BACKUP_IMPORT_FAILED") from exc

        summary = ImportSummary.from_payload(document)
        logger.info("Imported backup for user %s budget %s: %s", user_id, budget_id, summary.model_dump())
        return summary

    def _delete_budget_data(self, conn: Connection, user_id: str, budget_id: int) -> None:
        year_ids = conn.execute(select(budget_years.c.id).where(budget_years.c.budget_id == budget_id)).scalars().all()
        if year_ids:
            conn.execute(delete(transfers).where(transfers.c.year_id.in_(year_ids)))
            conn.execute(delete(account_balances).where(account_balances.c.year_id.in_(year_ids)))
            conn.execute(delete(transactions).where(transactions.c.year_id.in_(year_ids)))
            item_ids = conn.execute(select(budget_items.c.id).where(budget_items.c.year_id.in_(year_ids))).scalars().all()
            if item_ids:
                conn.execute(delete(monthly_values).where(monthly_values.c.item_id.in_(item_ids)))
            conn.execute(delete(budget_items).where(budget_items.c.year_id.in_(year_ids)))

        conn.execute(delete(budget_groups).where(budget_groups.c.budget_id == budget_id))
        conn.execute(delete(budget_years).where(budget_years.c.budget_id == budget_id))

        asset_ids = conn.execute(select(assets.c.id).where(assets.c.budget_id == budget_id)).scalars().all()
        if asset_ids:
            conn.execute(delete(asset_values).where(asset_values.c.asset_id.in_(asset_ids)))
        conn.execute(delete(assets).where(assets.c.budget_id == budget_id))

        conn.execute(delete(payment_methods).where(payment_methods.c.user_id == user_id))

    def _insert_document(self, conn: Connection, user_id: str, budget_id: int, document: BackupPayload) -> None:
        # Payment methods: links are resolved in a second pass once every new id is known.
        pm_ids: dict[int, int] = {}
        for pm in document.paymentMethods:
            values = _record_values("paymentMethods", pm, user_id=user_id, linked_payment_method_id=None)
            pm_ids[pm.id] = conn.execute(insert(payment_methods).values(**values)).inserted_primary_key[0]
        for pm in document.paymentMethods:
            if pm.linkedPaymentMethodId is None:
                continue
            conn.execute(
                update(payment_methods)
                .where(payment_methods.c.id == remap(pm_ids, pm.id, "payment method"))
                .values(linked_payment_method_id=remap(pm_ids, pm.linkedPaymentMethodId, "linked payment method"))
            )

        year_ids: dict[int, int] = {}
        for y in document.budgetYears:
            values = _record_values("budgetYears", y, budget_id=budget_id)
            year_ids[y.id] = conn.execute(insert(budget_years).values(**values)).inserted_primary_key[0]

        group_ids: dict[int, int] = {}
        for g in document.budgetGroups:
            values = _record_values("budgetGroups", g, budget_id=budget_id)
            group_ids[g.id] = conn.execute(insert(budget_groups).values(**values)).inserted_primary_key[0]

        item_ids: dict[int, int] = {}
        for item in document.budgetItems:
            values = _record_values(
                "budgetItems",
                item,
                year_id=remap(year_ids, item.yearId, "year"),
                group_id=remap_optional(group_ids, item.groupId, "group"),
                savings_account_id=remap_optional(pm_ids, item.savingsAccountId, "payment method"),
            )
            item_ids[item.id] = conn.execute(insert(budget_items).values(**values)).inserted_primary_key[0]

        mv_rows = [
            _record_values("monthlyValues", mv, item_id=remap(item_ids, mv.itemId, "item"))
            for mv in document.monthlyValues
        ]
        if mv_rows:
            conn.execute(insert(monthly_values), mv_rows)

        txn_rows = [
            _record_values(
                "transactions",
                t,
                year_id=remap(year_ids, t.yearId, "year"),
                item_id=remap_optional(item_ids, t.itemId, "item"),
                payment_method_id=remap(pm_ids, t.paymentMethodId, "payment method"),
            )
            for t in document.transactions
        ]
        for chunk in chunked(txn_rows, TRANSACTION_INSERT_CHUNK_SIZE):
            conn.execute(insert(transactions), list(chunk))

        # Assets: same two-pass scheme as payment methods, for parent references.
        asset_ids: dict[int, int] = {}
        for a in document.assets:
            values = _record_values("assets", a, budget_id=budget_id, parent_asset_id=None)
            asset_ids[a.id] = conn.execute(insert(assets).values(**values)).inserted_primary_key[0]
        for a in document.assets:
            if a.parentAssetId is None:
                continue
            conn.execute(
                update(assets)
                .where(assets.c.id == remap(asset_ids, a.id, "asset"))
                .values(parent_asset_id=remap(asset_ids, a.parentAssetId, "parent asset"))
            )

        av_rows = [
            _record_values(
                "assetValues",
                av,
                asset_id=remap(asset_ids, av.assetId, "asset"),
                year_id=remap(year_ids, av.yearId, "year"),
            )
            for av in document.assetValues
        ]
        if av_rows:
            conn.execute(insert(asset_values), av_rows)

        balance_rows = [
            _record_values(
                "accountBalances",
                ab,
                year_id=remap(year_ids, ab.yearId, "year"),
                payment_method_id=remap(pm_ids, ab.paymentMethodId, "payment method"),
            )
            for ab in document.accountBalances
        ]
        if balance_rows:
            conn.execute(insert(account_balances), balance_rows)

        transfer_rows = [
            _record_values(
                "transfers",
                xf,
                year_id=remap(year_ids, xf.yearId, "year"),
                source_account_id=remap(pm_ids, xf.sourceAccountId, "source account"),
                destination_account_id=remap(pm_ids, xf.destinationAccountId, "destination account"),
            )
            for xf in document.transfers
        ]
        if transfer_rows:
            conn.execute(insert(transfers), transfer_rows)


def get_persistence() -> Persistence:
    if settings.storage_backend == "postgres":
        return Persistence(settings.database_url, settings.default_user_id)
    return Persistence(MEMORY_DATABASE_URL, settings.default_user_id)
