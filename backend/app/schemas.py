import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, field_validator

BACKUP_SCHEMA_VERSION = 1


class GroupType(str, Enum):
    income = "income"
    expense = "expense"
    savings = "savings"


class SavingsType(str, Enum):
    epargne = "epargne"
    prevoyance = "prevoyance"
    investissements = "investissements"


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    error: ApiErrorPayload


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: str


class BackupPaymentMethod(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: StrictInt
    name: str = Field(min_length=1, max_length=100)
    institution: Optional[str] = None
    sortOrder: int = 0
    isSavingsAccount: StrictBool = False
    savingsType: Optional[SavingsType] = None
    settlementDay: Optional[int] = Field(default=None, ge=1, le=31)
    linkedPaymentMethodId: Optional[StrictInt] = None


class BackupBudgetYear(BaseModel):
    id: StrictInt
    year: int
    initialBalance: Decimal = Decimal("0")


class BackupBudgetGroup(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: StrictInt
    name: str = Field(min_length=1, max_length=100)
    slug: str = Field(min_length=1, max_length=100)
    type: GroupType = Field(default=GroupType.expense, validate_default=True)
    sortOrder: int = 0


class BackupBudgetItem(BaseModel):
    id: StrictInt
    yearId: StrictInt
    groupId: Optional[StrictInt] = None
    name: str = Field(min_length=1, max_length=200)
    slug: str = Field(min_length=1, max_length=200)
    sortOrder: int = 0
    yearlyBudget: Decimal = Decimal("0")
    savingsAccountId: Optional[StrictInt] = None


class BackupMonthlyValue(BaseModel):
    itemId: StrictInt
    month: int = Field(ge=1, le=12)
    budget: Decimal = Decimal("0")
    actual: Decimal = Decimal("0")


class BackupTransaction(BaseModel):
    yearId: StrictInt
    itemId: Optional[StrictInt] = None
    date: dt.date
    description: Optional[str] = None
    comment: Optional[str] = None
    thirdParty: Optional[str] = None
    paymentMethodId: StrictInt
    amount: Decimal
    accountingMonth: int = Field(ge=1, le=12)
    accountingYear: int
    warning: Optional[str] = None


class BackupAsset(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: StrictInt
    name: str = Field(min_length=1, max_length=100)
    sortOrder: int = 0
    isSystem: StrictBool = False
    isDebt: StrictBool = False
    parentAssetId: Optional[StrictInt] = None
    savingsType: Optional[SavingsType] = None


class BackupAssetValue(BaseModel):
    assetId: StrictInt
    yearId: StrictInt
    value: Decimal = Decimal("0")


class BackupTransfer(BaseModel):
    yearId: StrictInt
    date: dt.date
    amount: Decimal
    description: Optional[str] = None
    sourceAccountId: StrictInt
    destinationAccountId: StrictInt
    accountingMonth: int = Field(ge=1, le=12)
    accountingYear: int


class BackupAccountBalance(BaseModel):
    yearId: StrictInt
    paymentMethodId: StrictInt
    initialBalance: Decimal = Decimal("0")


class BackupPayload(BaseModel):
    schemaVersion: int = BACKUP_SCHEMA_VERSION
    exportedAt: Optional[str] = None
    paymentMethods: list[BackupPaymentMethod] = Field(default_factory=list)
    budgetYears: list[BackupBudgetYear] = Field(default_factory=list)
    budgetGroups: list[BackupBudgetGroup] = Field(default_factory=list)
    budgetItems: list[BackupBudgetItem] = Field(default_factory=list)
    monthlyValues: list[BackupMonthlyValue] = Field(default_factory=list)
    transactions: list[BackupTransaction] = Field(default_factory=list)
    assets: list[BackupAsset] = Field(default_factory=list)
    assetValues: list[BackupAssetValue] = Field(default_factory=list)
    transfers: list[BackupTransfer] = Field(default_factory=list)
    accountBalances: list[BackupAccountBalance] = Field(default_factory=list)


# Document array name -> record model, in validation and import order.
BACKUP_ENTITY_MODELS: dict[str, type[BaseModel]] = {
    "paymentMethods": BackupPaymentMethod,
    "budgetYears": BackupBudgetYear,
    "budgetGroups": BackupBudgetGroup,
    "budgetItems": BackupBudgetItem,
    "monthlyValues": BackupMonthlyValue,
    "transactions": BackupTransaction,
    "assets": BackupAsset,
    "assetValues": BackupAssetValue,
    "transfers": BackupTransfer,
    "accountBalances": BackupAccountBalance,
}


class ImportSummary(BaseModel):
    paymentMethods: int = 0
    budgetYears: int = 0
    budgetGroups: int = 0
    budgetItems: int = 0
    monthlyValues: int = 0
    transactions: int = 0
    assets: int = 0
    assetValues: int = 0
    transfers: int = 0
    accountBalances: int = 0

    @classmethod
    def from_payload(cls, payload: BackupPayload) -> "ImportSummary":
        return cls(**{key: len(getattr(payload, key)) for key in BACKUP_ENTITY_MODELS})


class BackupValidateResponse(BaseModel):
    valid: bool
    counts: ImportSummary


class BackupRunResponse(BaseModel):
    created: bool
    file: str
    timestamp: dt.datetime

    @field_validator("file")
    @classmethod
    def normalize_separators(cls, value: str) -> str:
        return value.replace("\\", "/")
