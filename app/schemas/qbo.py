from __future__ import annotations

from datetime import date
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class QBOModel(BaseModel):
    """Request records accept both the QuickBooks field names and their snake_case form."""

    model_config = ConfigDict(populate_by_name=True)

    def to_qbo(self, *, exclude: Optional[set[str]] = None) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude=exclude)


class QBOReference(QBOModel):
    value: str = Field(min_length=1)
    name: Optional[str] = None


class AccountRef(QBOModel):
    """Either an account id (``value``) or a name to look up and create on miss."""

    value: Optional[str] = None
    name: Optional[str] = None


class Address(QBOModel):
    line1: Optional[str] = Field(default=None, alias="Line1", max_length=500)
    line2: Optional[str] = Field(default=None, alias="Line2", max_length=500)
    city: Optional[str] = Field(default=None, alias="City", max_length=255)
    country_sub_division_code: Optional[str] = Field(default=None, alias="CountrySubDivisionCode", max_length=255)
    postal_code: Optional[str] = Field(default=None, alias="PostalCode", max_length=30)
    country: Optional[str] = Field(default=None, alias="Country", max_length=255)


class EmailAddress(QBOModel):
    address: EmailStr = Field(alias="Address")


class PhoneNumber(QBOModel):
    free_form_number: str = Field(alias="FreeFormNumber", max_length=30)


class CustomerCreate(QBOModel):
    display_name: str = Field(alias="DisplayName", min_length=1, max_length=500)
    primary_email_addr: Optional[Union[EmailAddress, EmailStr]] = Field(default=None, alias="PrimaryEmailAddr")
    primary_phone: Optional[Union[PhoneNumber, str]] = Field(default=None, alias="PrimaryPhone")
    bill_addr: Optional[Address] = Field(default=None, alias="BillAddr")
    notes: Optional[str] = Field(default=None, alias="Notes", max_length=2000)


class CustomerUpdate(QBOModel):
    sync_token: str = Field(alias="SyncToken", min_length=1)
    display_name: Optional[str] = Field(default=None, alias="DisplayName", min_length=1, max_length=500)
    primary_email_addr: Optional[Union[EmailAddress, EmailStr]] = Field(default=None, alias="PrimaryEmailAddr")
    primary_phone: Optional[Union[PhoneNumber, str]] = Field(default=None, alias="PrimaryPhone")
    bill_addr: Optional[Address] = Field(default=None, alias="BillAddr")
    notes: Optional[str] = Field(default=None, alias="Notes", max_length=2000)
    active: Optional[bool] = Field(default=None, alias="Active")


class SalesItemLineDetail(QBOModel):
    item_ref: QBOReference = Field(alias="ItemRef")
    qty: Optional[float] = Field(default=None, alias="Qty")
    unit_price: Optional[float] = Field(default=None, alias="UnitPrice")


class InvoiceLine(QBOModel):
    amount: float = Field(alias="Amount")
    detail_type: Literal["SalesItemLineDetail", "SubTotalLineDetail", "DiscountLineDetail"] = Field(
        default="SalesItemLineDetail",
        alias="DetailType",
    )
    sales_item_line_detail: Optional[SalesItemLineDetail] = Field(default=None, alias="SalesItemLineDetail")
    description: Optional[str] = Field(default=None, alias="Description", max_length=4000)
    line_num: Optional[int] = Field(default=None, alias="LineNum", ge=1)


class InvoiceCreate(QBOModel):
    customer_ref: QBOReference = Field(alias="CustomerRef")
    line: list[InvoiceLine] = Field(alias="Line", min_length=1)
    txn_date: Optional[date] = Field(default=None, alias="TxnDate")
    due_date: Optional[date] = Field(default=None, alias="DueDate")
    doc_number: Optional[str] = Field(default=None, alias="DocNumber", max_length=21)


class InvoiceUpdate(QBOModel):
    sync_token: str = Field(alias="SyncToken", min_length=1)
    sparse: bool = True
    customer_ref: Optional[QBOReference] = Field(default=None, alias="CustomerRef")
    line: Optional[list[InvoiceLine]] = Field(default=None, alias="Line")
    txn_date: Optional[date] = Field(default=None, alias="TxnDate")
    due_date: Optional[date] = Field(default=None, alias="DueDate")
    doc_number: Optional[str] = Field(default=None, alias="DocNumber", max_length=21)
    email_status: Optional[Literal["NotSet", "NeedToSend", "EmailSent"]] = Field(default=None, alias="EmailStatus")
    print_status: Optional[Literal["NotSet", "NeedToPrint", "PrintComplete"]] = Field(default=None, alias="PrintStatus")


class InvoiceVoid(QBOModel):
    sync_token: str = Field(alias="SyncToken", min_length=1)


class ItemCreate(QBOModel):
    name: str = Field(alias="Name", min_length=1, max_length=100)
    type: Literal["Inventory", "Service", "NonInventory"] = Field(alias="Type")
    unit_price: Optional[float] = Field(default=None, alias="UnitPrice")
    description: Optional[str] = Field(default=None, alias="Description", max_length=4000)
    sku: Optional[str] = Field(default=None, alias="Sku", max_length=100)
    qty_on_hand: Optional[float] = Field(default=None, alias="QtyOnHand", ge=0)
    inv_start_date: Optional[date] = Field(default=None, alias="InvStartDate")
    income_account_ref: Optional[AccountRef] = Field(default=None, alias="IncomeAccountRef")
    expense_account_ref: Optional[AccountRef] = Field(default=None, alias="ExpenseAccountRef")
    asset_account_ref: Optional[AccountRef] = Field(default=None, alias="AssetAccountRef")


class LinkedTxn(QBOModel):
    txn_id: Optional[str] = Field(default=None, alias="TxnId")
    txn_type: Optional[Literal["Invoice", "CreditMemo", "Bill"]] = Field(default=None, alias="TxnType")


class PaymentLine(QBOModel):
    amount: float = Field(alias="Amount")
    linked_txn: list[LinkedTxn] = Field(alias="LinkedTxn")


class PaymentCreate(QBOModel):
    total_amt: float = Field(alias="TotalAmt")
    customer_ref: QBOReference = Field(alias="CustomerRef")
    line: Optional[list[PaymentLine]] = Field(default=None, alias="Line")
    payment_ref_num: Optional[str] = Field(default=None, alias="PaymentRefNum", max_length=21)
    payment_method_ref: Optional[QBOReference] = Field(default=None, alias="PaymentMethodRef")
    txn_date: Optional[date] = Field(default=None, alias="TxnDate")
    private_note: Optional[str] = Field(default=None, alias="PrivateNote", max_length=4000)


class PaginatedResponse(BaseModel):
    items: list[dict[str, Any]] = Field(default_factory=list)
    total_count: int
    start_position: int
    max_results: int


class AccountListResponse(BaseModel):
    items: list[dict[str, Any]] = Field(default_factory=list)
