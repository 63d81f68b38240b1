import copy
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

import app.main as main_module
from app.persistence import MEMORY_DATABASE_URL, Persistence

DEFAULT_USER_ID = "00000000-0000-0000-0000-000000000001"
OTHER_USER_ID = "00000000-0000-0000-0000-000000000002"

# Arrays whose records carry their own id, and the reference fields pointing into them.
_ID_ARRAYS = ("paymentMethods", "budgetYears", "budgetGroups", "budgetItems", "assets")
_REFERENCE_FIELDS = {
    "linkedPaymentMethodId": "paymentMethods",
    "savingsAccountId": "paymentMethods",
    "paymentMethodId": "paymentMethods",
    "sourceAccountId": "paymentMethods",
    "destinationAccountId": "paymentMethods",
    "yearId": "budgetYears",
    "groupId": "budgetGroups",
    "itemId": "budgetItems",
    "assetId": "assets",
    "parentAssetId": "assets",
}

SAMPLE_DOCUMENT: dict[str, Any] = {
    "schemaVersion": 1,
    "exportedAt": "2025-01-31T09:15:00.000Z",
    "paymentMethods": [
        {
            "id": 10,
            "name": "Credit Card",
            "institution": "Bank A",
            "sortOrder": 0,
            "isSavingsAccount": False,
            "savingsType": None,
            "settlementDay": 25,
            "linkedPaymentMethodId": 11,
        },
        {
            "id": 11,
            "name": "Checking",
            "institution": "Bank A",
            "sortOrder": 1,
            "isSavingsAccount": False,
            "savingsType": None,
            "settlementDay": None,
            "linkedPaymentMethodId": None,
        },
        {
            "id": 12,
            "name": "Savings",
            "institution": None,
            "sortOrder": 2,
            "isSavingsAccount": True,
            "savingsType": "epargne",
            "settlementDay": None,
            "linkedPaymentMethodId": None,
        },
    ],
    "budgetYears": [
        {"id": 5, "year": 2024, "initialBalance": "100.00"},
        {"id": 6, "year": 2025, "initialBalance": "250.50"},
    ],
    "budgetGroups": [
        {"id": 20, "name": "Salary", "slug": "salary", "type": "income", "sortOrder": 0},
        {"id": 21, "name": "Housing", "slug": "housing", "type": "expense", "sortOrder": 1},
    ],
    "budgetItems": [
        {
            "id": 30,
            "yearId": 5,
            "groupId": 20,
            "name": "Paycheck",
            "slug": "paycheck",
            "sortOrder": 0,
            "yearlyBudget": "48000.00",
            "savingsAccountId": None,
        },
        {
            "id": 31,
            "yearId": 5,
            "groupId": 21,
            "name": "Rent",
            "slug": "rent",
            "sortOrder": 1,
            "yearlyBudget": "14400.00",
            "savingsAccountId": None,
        },
        {
            "id": 32,
            "yearId": 6,
            "groupId": None,
            "name": "Emergency fund",
            "slug": "emergency-fund",
            "sortOrder": 2,
            "yearlyBudget": "1200.00",
            "savingsAccountId": 12,
        },
    ],
    "monthlyValues": [
        {"itemId": 30, "month": 1, "budget": "4000.00", "actual": "4000.00"},
        {"itemId": 31, "month": 1, "budget": "1200.00", "actual": "1150.00"},
        {"itemId": 31, "month": 2, "budget": "1200.00", "actual": "1200.00"},
        {"itemId": 32, "month": 1, "budget": "100.00", "actual": "0.00"},
    ],
    "transactions": [
        {
            "yearId": 5,
            "itemId": 31,
            "date": "2024-01-03",
            "description": "January rent",
            "comment": None,
            "thirdParty": "Landlord",
            "paymentMethodId": 11,
            "amount": "-1150.00",
            "accountingMonth": 1,
            "accountingYear": 2024,
            "warning": None,
        },
        {
            "yearId": 5,
            "itemId": None,
            "date": "2024-01-20",
            "description": "Unassigned purchase",
            "comment": "check receipt",
            "thirdParty": None,
            "paymentMethodId": 10,
            "amount": "-42.50",
            "accountingMonth": 2,
            "accountingYear": 2024,
            "warning": "unassigned",
        },
    ],
    "assets": [
        {
            "id": 41,
            "name": "Apartment",
            "sortOrder": 0,
            "isSystem": False,
            "isDebt": False,
            "parentAssetId": 40,
            "savingsType": None,
        },
        {
            "id": 40,
            "name": "Real estate",
            "sortOrder": 1,
            "isSystem": True,
            "isDebt": False,
            "parentAssetId": None,
            "savingsType": None,
        },
    ],
    "assetValues": [
        {"assetId": 41, "yearId": 5, "value": "250000.00"},
        {"assetId": 40, "yearId": 5, "value": "250000.00"},
    ],
    "transfers": [
        {
            "yearId": 5,
            "date": "2024-01-28",
            "amount": "500.00",
            "description": "Monthly saving",
            "sourceAccountId": 11,
            "destinationAccountId": 12,
            "accountingMonth": 1,
            "accountingYear": 2024,
        },
    ],
    "accountBalances": [
        {"yearId": 5, "paymentMethodId": 11, "initialBalance": "1000.00"},
        {"yearId": 5, "paymentMethodId": 12, "initialBalance": "5000.00"},
    ],
}


def canonicalize(document: dict[str, Any]) -> dict[str, Any]:
    """Replace every id and reference with the referenced record's position.

    Two documents describing the same graph under different ids compare equal.
    """
    positions = {
        key: {record["id"]: index for index, record in enumerate(document[key])} for key in _ID_ARRAYS
    }
    result: dict[str, Any] = {"schemaVersion": document["schemaVersion"]}
    for key, records in document.items():
        if not isinstance(records, list):
            continue
        converted = []
        for record in records:
            row = dict(record)
            if "id" in row:
                row["id"] = positions[key][row["id"]]
            for field, target in _REFERENCE_FIELDS.items():
                if row.get(field) is not None:
                    row[field] = positions[target][row[field]]
            converted.append(row)
        result[key] = converted
    return result


@pytest.fixture
def persistence() -> Persistence:
    return Persistence(MEMORY_DATABASE_URL, DEFAULT_USER_ID)


@pytest.fixture
def user_id() -> str:
    return DEFAULT_USER_ID


@pytest.fixture
def budget_id(persistence: Persistence, user_id: str) -> int:
    return persistence.get_or_create_default_budget(user_id)["id"]


@pytest.fixture
def backup_document() -> dict[str, Any]:
    return copy.deepcopy(SAMPLE_DOCUMENT)


@pytest.fixture
def canonical() -> Callable[[dict[str, Any]], dict[str, Any]]:
    return canonicalize


@pytest.fixture
def snapshot(persistence: Persistence) -> Callable[[str, int], dict[str, Any]]:
    def _snapshot(user: str, budget: int) -> dict[str, Any]:
        return persistence.export_backup(user, budget).model_dump(mode="json", exclude={"exportedAt"})

    return _snapshot


@pytest.fixture
def client(persistence: Persistence, tmp_path, monkeypatch) -> TestClient:
    monkeypatch.setattr(main_module, "persistence", persistence)
    monkeypatch.setattr(main_module, "BACKUP_DIR", tmp_path / "backups")
    return TestClient(main_module.app)
