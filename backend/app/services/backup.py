from typing import Any, Iterator, Optional, Sequence, TypeVar

from pydantic import BaseModel, ValidationError

from ..errors import AppError, invalid_reference, invalid_schema
from ..schemas import BACKUP_ENTITY_MODELS, BACKUP_SCHEMA_VERSION, ApiErrorDetail, BackupPayload

T = TypeVar("T")

# Keeps each statement well under PostgreSQL's bind parameter limit.
TRANSACTION_INSERT_CHUNK_SIZE = 500

_ENTITY_NOUNS = {
    "paymentMethods": "Payment method",
    "budgetItems": "Budget item",
    "monthlyValues": "Monthly value",
    "transactions": "Transaction",
    "assets": "Asset",
    "assetValues": "Asset value",
    "transfers": "Transfer",
    "accountBalances": "Account balance",
}

# array -> ((field, target array, kind), ...); checked in this order.
_REFERENCES: tuple[tuple[str, tuple[tuple[str, str, str], ...]], ...] = (
    (
        "budgetItems",
        (
            ("yearId", "budgetYears", "year"),
            ("groupId", "budgetGroups", "group"),
            ("savingsAccountId", "paymentMethods", "payment method"),
        ),
    ),
    ("monthlyValues", (("itemId", "budgetItems", "item"),)),
    (
        "transactions",
        (
            ("yearId", "budgetYears", "year"),
            ("itemId", "budgetItems", "item"),
            ("paymentMethodId", "paymentMethods", "payment method"),
        ),
    ),
    (
        "assetValues",
        (
            ("assetId", "assets", "asset"),
            ("yearId", "budgetYears", "year"),
        ),
    ),
    (
        "transfers",
        (
            ("yearId", "budgetYears", "year"),
            ("sourceAccountId", "paymentMethods", "source account"),
            ("destinationAccountId", "paymentMethods", "destination account"),
        ),
    ),
    (
        "accountBalances",
        (
            ("yearId", "budgetYears", "year"),
            ("paymentMethodId", "paymentMethods", "payment method"),
        ),
    ),
    ("assets", (("parentAssetId", "assets", "parent asset"),)),
    ("paymentMethods", (("linkedPaymentMethodId", "paymentMethods", "linked payment method"),)),
)


def validate_backup_payload(payload: Any) -> BackupPayload:
    """Check a backup document without touching the store.

    Checks run in a fixed order (object shape, schema version, array
    presence, record shape, references) and stop at the first violation,
    so the same input always reports the same error. Returns the parsed
    document.
    """
    if not isinstance(payload, dict):
        raise invalid_schema("Invalid backup payload: expected a JSON object", "body")

    version = payload.get("schemaVersion")
    if isinstance(version, bool) or version != BACKUP_SCHEMA_VERSION:
        message = f"Unsupported backup schema version: {version}. Expected: {BACKUP_SCHEMA_VERSION}"
        raise AppError(
            400,
            message,
            "BACKUP_UNSUPPORTED_VERSION",
            [ApiErrorDetail(field="schemaVersion", message=message)],
        )

    for key in BACKUP_ENTITY_MODELS:
        if not isinstance(payload.get(key), list):
            raise invalid_schema(f'Missing or invalid "{key}" array in backup payload', key)

    records = {key: _parse_records(key, payload[key], model) for key, model in BACKUP_ENTITY_MODELS.items()}
    exported_at = payload.get("exportedAt")
    document = BackupPayload(
        schemaVersion=BACKUP_SCHEMA_VERSION,
        exportedAt=exported_at if isinstance(exported_at, str) else None,
        **records,
    )
    _check_references(document)
    return document


def _parse_records(key: str, rows: list[Any], model: type[BaseModel]) -> list[BaseModel]:
    parsed: list[BaseModel] = []
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            raise invalid_schema(f"{key}[{index}] must be an object", f"{key}[{index}]")
        try:
            parsed.append(model.model_validate(row))
        except ValidationError as exc:
            err = exc.errors()[0]
            loc = ".".join(str(part) for part in err.get("loc", ()))
            field = f"{key}[{index}].{loc}" if loc else f"{key}[{index}]"
            raise invalid_schema(f"Invalid {field}: {err.get('msg', 'invalid value')}", field) from exc
    return parsed


def _entity_label(key: str, record: BaseModel) -> str:
    noun = _ENTITY_NOUNS[key]
    name = getattr(record, "name", None)
    return f'{noun} "{name}"' if name else noun


def _check_references(document: BackupPayload) -> None:
    known_ids = {
        key: {record.id for record in getattr(document, key)}
        for key in ("paymentMethods", "budgetYears", "budgetGroups", "budgetItems", "assets")
    }
    for key, fields in _REFERENCES:
        for index, record in enumerate(getattr(document, key)):
            for field, target, kind in fields:
                value = getattr(record, field)
                if value is None or value in known_ids[target]:
                    continue
                raise invalid_reference(
                    f"{_entity_label(key, record)} references unknown {kind} backup ID: {value}",
                    f"{key}[{index}].{field}",
                )


def remap(id_map: dict[int, int], old_id: int, kind: str) -> int:
    """Translate a backup id into the id the row received on import."""
    new_id = id_map.get(old_id)
    if new_id is None:
        raise AppError(
            500,
            f"Backup import could not resolve {kind} backup ID {old_id}",
            "BACKUP_ID_REMAP_FAILED",
        )
    return new_id


def remap_optional(id_map: dict[int, int], old_id: Optional[int], kind: str) -> Optional[int]:
    if old_id is None:
        return None
    return remap(id_map, old_id, kind)


def chunked(rows: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]
