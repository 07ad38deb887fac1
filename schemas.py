import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)

from models import Frequency, RecurringSource, TransactionType

# Money is kept as Decimal internally and emitted as a JSON number.
Amount = Annotated[
    Decimal, PlainSerializer(float, return_type=float, when_used="json")
]


def _reject_null(value):
    if value is None:
        raise ValueError("Field may not be null")
    return value


class TransactionFilters(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    type: Optional[TransactionType] = None
    category: Optional[str] = Field(default=None, max_length=100)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    search: Optional[str] = Field(default=None, max_length=200)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class TransactionIn(BaseModel):
    type: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    category: str = Field(..., min_length=1, max_length=100)
    subcategory: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = None
    date: date
    is_recurring: bool = False
    recurrence_frequency: Optional[Frequency] = None


class TransactionPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=12, decimal_places=2
    )
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    subcategory: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = None
    date: Optional[dt.date] = None
    is_recurring: Optional[bool] = None
    recurrence_frequency: Optional[Frequency] = None

    _not_null = field_validator("type", "amount", "category", "date", "is_recurring")(
        _reject_null
    )

    @model_validator(mode="after")
    def validate_frequency_clear(self) -> "TransactionPatch":
        # A frequency may only be cleared together with the recurring flag.
        if (
            "recurrence_frequency" in self.model_fields_set
            and self.recurrence_frequency is None
            and self.is_recurring is not False
        ):
            raise ValueError(
                "recurrence_frequency may only be null when is_recurring is false"
            )
        return self


class BudgetIn(BaseModel):
    monthly_budget: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class RecurringTransactionIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    type: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    category: str = Field(..., min_length=1, max_length=100)
    subcategory: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = None
    frequency: Frequency
    start_date: date


class RecurringTransactionPatch(BaseModel):
    # next_due_date and last_processed are derived, never client supplied.
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=12, decimal_places=2
    )
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    subcategory: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = None
    frequency: Optional[Frequency] = None
    start_date: Optional[date] = None
    is_active: Optional[bool] = None

    _not_null = field_validator(
        "name",
        "type",
        "amount",
        "category",
        "frequency",
        "start_date",
        "is_active",
    )(_reject_null)


class SpaceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    space_id: str
    created_at: datetime
    updated_at: datetime


class SpaceCreatedOut(BaseModel):
    space_id: str
    message: str = "Space created successfully"


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    space_id: str
    type: TransactionType
    amount: Amount
    category: str
    subcategory: Optional[str] = None
    description: Optional[str] = None
    date: date
    is_recurring: bool
    recurrence_frequency: Optional[Frequency] = None
    created_at: datetime
    updated_at: datetime


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    space_id: str
    monthly_budget: Amount
    created_at: datetime
    updated_at: datetime


class RecurringTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    space_id: str
    name: str
    type: TransactionType
    amount: Amount
    category: str
    subcategory: Optional[str] = None
    description: Optional[str] = None
    frequency: Frequency
    start_date: date
    next_due_date: date
    is_active: bool
    last_processed: Optional[date] = None
    source: RecurringSource
    created_at: datetime
    updated_at: datetime
