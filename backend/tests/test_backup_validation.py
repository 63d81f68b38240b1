import copy

import pytest

from app.errors import AppError
from app.schemas import BACKUP_ENTITY_MODELS, BackupPayload
from app.services.backup import validate_backup_payload


def _error(payload) -> AppError:
    with pytest.raises(AppError) as exc_info:
        validate_backup_payload(payload)
    return exc_info.value


def test_valid_document_is_parsed(backup_document) -> None:
    document = validate_backup_payload(backup_document)
    assert isinstance(document, BackupPayload)
    assert len(document.paymentMethods) == 3
    assert len(document.transactions) == 2
    assert document.budgetGroups[0].type == "income"
    assert document.paymentMethods[2].savingsType == "epargne"


def test_validation_does_not_modify_input(backup_document) -> None:
    before = copy.deepcopy(backup_document)
    validate_backup_payload(backup_document)
    assert backup_document == before


@pytest.mark.parametrize("payload", [None, [], "backup", 42])
def test_non_object_payload_is_rejected(payload) -> None:
    err = _error(payload)
    assert err.status_code == 400
    assert err.code == "BACKUP_INVALID_SCHEMA"
    assert err.details[0].field == "body"


@pytest.mark.parametrize("version", [None, 0, 2, "1", 1.5, True])
def test_unsupported_schema_version(backup_document, version) -> None:
    if version is None:
        del backup_document["schemaVersion"]
    else:
        backup_document["schemaVersion"] = version
    err = _error(backup_document)
    assert err.status_code == 400
    assert err.code == "BACKUP_UNSUPPORTED_VERSION"
    assert "Expected: 1" in err.message
    assert err.details[0].field == "schemaVersion"


def test_version_is_checked_before_anything_else() -> None:
    err = _error({"schemaVersion": 2, "budgetItems": "not a list"})
    assert err.code == "BACKUP_UNSUPPORTED_VERSION"


@pytest.mark.parametrize("key", list(BACKUP_ENTITY_MODELS))
def test_missing_array_is_rejected(backup_document, key) -> None:
    del backup_document[key]
    err = _error(backup_document)
    assert err.code == "BACKUP_INVALID_SCHEMA"
    assert err.details[0].field == key
    assert key in err.message


def test_array_of_wrong_type_is_rejected(backup_document) -> None:
    backup_document["transfers"] = {"0": {}}
    err = _error(backup_document)
    assert err.code == "BACKUP_INVALID_SCHEMA"
    assert err.details[0].field == "transfers"


def test_first_missing_array_in_declaration_order_is_reported(backup_document) -> None:
    del backup_document["accountBalances"]
    del backup_document["budgetYears"]
    err = _error(backup_document)
    assert err.details[0].field == "budgetYears"


def test_record_missing_required_field(backup_document) -> None:
    del backup_document["budgetItems"][2]["yearId"]
    err = _error(backup_document)
    assert err.code == "BACKUP_INVALID_SCHEMA"
    assert err.details[0].field == "budgetItems[2].yearId"


def test_record_that_is_not_an_object(backup_document) -> None:
    backup_document["monthlyValues"][1] = [31, 1]
    err = _error(backup_document)
    assert err.code == "BACKUP_INVALID_SCHEMA"
    assert err.details[0].field == "monthlyValues[1]"


@pytest.mark.parametrize(
    ("key", "index", "field", "value"),
    [
        ("monthlyValues", 0, "month", 13),
        ("transactions", 1, "accountingMonth", 0),
        ("transactions", 0, "amount", "a lot"),
        ("transactions", 0, "date", "2024-13-45"),
        ("budgetGroups", 1, "type", "luxury"),
        ("paymentMethods", 2, "savingsType", "piggy-bank"),
        ("budgetYears", 0, "id", "five"),
        ("budgetItems", 1, "yearId", "5"),
        ("transactions", 0, "paymentMethodId", 11.0),
        ("assets", 0, "parentAssetId", True),
        ("paymentMethods", 2, "isSavingsAccount", "yes"),
        ("assets", 1, "isDebt", 0),
    ],
)
def test_wrongly_typed_field(backup_document, key, index, field, value) -> None:
    backup_document[key][index][field] = value
    err = _error(backup_document)
    assert err.code == "BACKUP_INVALID_SCHEMA"
    assert err.details[0].field == f"{key}[{index}].{field}"


def test_optional_fields_fall_back_to_defaults(backup_document) -> None:
    backup_document["budgetGroups"] = [{"id": 20, "name": "Salary", "slug": "salary"}]
    for item in backup_document["budgetItems"]:
        item["groupId"] = None
    document = validate_backup_payload(backup_document)
    group = document.budgetGroups[0]
    assert group.type == "expense"
    assert group.sortOrder == 0


def test_dangling_budget_item_year(backup_document) -> None:
    backup_document["budgetItems"][1]["yearId"] = 999
    err = _error(backup_document)
    assert err.status_code == 400
    assert err.code == "BACKUP_INVALID_REFERENCE"
    assert err.message == 'Budget item "Rent" references unknown year backup ID: 999'
    assert err.details[0].field == "budgetItems[1].yearId"


@pytest.mark.parametrize(
    ("key", "index", "field", "kind"),
    [
        ("budgetItems", 1, "yearId", "year"),
        ("budgetItems", 0, "groupId", "group"),
        ("budgetItems", 2, "savingsAccountId", "payment method"),
        ("monthlyValues", 3, "itemId", "item"),
        ("transactions", 0, "itemId", "item"),
        ("transactions", 1, "yearId", "year"),
        ("transactions", 1, "paymentMethodId", "payment method"),
        ("assetValues", 0, "assetId", "asset"),
        ("assetValues", 1, "yearId", "year"),
        ("transfers", 0, "yearId", "year"),
        ("transfers", 0, "destinationAccountId", "destination account"),
        ("accountBalances", 0, "yearId", "year"),
        ("accountBalances", 1, "paymentMethodId", "payment method"),
        ("assets", 0, "parentAssetId", "parent asset"),
        ("paymentMethods", 0, "linkedPaymentMethodId", "linked payment method"),
    ],
)
def test_dangling_references(backup_document, key, index, field, kind) -> None:
    backup_document[key][index][field] = 4242
    err = _error(backup_document)
    assert err.code == "BACKUP_INVALID_REFERENCE"
    assert err.details[0].field == f"{key}[{index}].{field}"
    assert f"references unknown {kind} backup ID: 4242" in err.message


def test_reference_label_falls_back_to_entity_kind(backup_document) -> None:
    backup_document["transfers"][0]["sourceAccountId"] = 77
    err = _error(backup_document)
    assert err.message == "Transfer references unknown source account backup ID: 77"


def test_first_reference_violation_wins(backup_document) -> None:
    backup_document["paymentMethods"][0]["linkedPaymentMethodId"] = 1
    backup_document["transactions"][1]["yearId"] = 2
    backup_document["budgetItems"][2]["yearId"] = 3
    err = _error(backup_document)
    assert err.details[0].field == "budgetItems[2].yearId"


def test_null_references_are_accepted(backup_document) -> None:
    backup_document["paymentMethods"][0]["linkedPaymentMethodId"] = None
    backup_document["assets"][0]["parentAssetId"] = None
    backup_document["budgetItems"][0]["groupId"] = None
    document = validate_backup_payload(backup_document)
    assert document.paymentMethods[0].linkedPaymentMethodId is None
    assert document.assets[0].parentAssetId is None
    assert document.budgetItems[0].groupId is None


def test_empty_document_is_valid() -> None:
    payload = {"schemaVersion": 1, **{key: [] for key in BACKUP_ENTITY_MODELS}}
    document = validate_backup_payload(payload)
    assert document.exportedAt is None
    assert document.transactions == []
