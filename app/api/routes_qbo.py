from __future__ import annotations

from dataclasses import asdict
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import apply_bearer_override, get_qbo_service
from app.schemas.qbo import (
    AccountListResponse,
    CustomerCreate,
    CustomerUpdate,
    InvoiceCreate,
    InvoiceUpdate,
    InvoiceVoid,
    ItemCreate,
    PaginatedResponse,
    PaymentCreate,
)
from app.services.qbo_client import Page, QuickBooksService
from app.utils.validators import normalize_max_results, normalize_start_position


router = APIRouter(tags=["quickbooks"], dependencies=[Depends(apply_bearer_override)])


def _page_response(page: Page) -> PaginatedResponse:
    return PaginatedResponse(**asdict(page))


def _paging(max_results: Optional[int], start_position: Optional[int], *, default: int) -> dict[str, int]:
    return {
        "max_results": normalize_max_results(max_results, default=default),
        "start_position": normalize_start_position(start_position),
    }


@router.get("/company")
async def get_company_info(qbo: QuickBooksService = Depends(get_qbo_service)) -> dict[str, Any]:
    return await qbo.get_company_info()


@router.get("/accounts", response_model=PaginatedResponse)
async def list_accounts(
    max_results: Optional[int] = Query(default=None, alias="maxResults"),
    start_position: Optional[int] = Query(default=None, alias="startPosition"),
    qbo: QuickBooksService = Depends(get_qbo_service),
) -> PaginatedResponse:
    page = await qbo.list_accounts(**_paging(max_results, start_position, default=100))
    return _page_response(page)


@router.get("/accounts/income", response_model=AccountListResponse)
async def list_income_accounts(qbo: QuickBooksService = Depends(get_qbo_service)) -> AccountListResponse:
    return AccountListResponse(items=await qbo.list_income_accounts())


@router.get("/customers", response_model=PaginatedResponse)
async def list_customers(
    max_results: Optional[int] = Query(default=None, alias="maxResults"),
    start_position: Optional[int] = Query(default=None, alias="startPosition"),
    qbo: QuickBooksService = Depends(get_qbo_service),
) -> PaginatedResponse:
    page = await qbo.list_customers(**_paging(max_results, start_position, default=20))
    return _page_response(page)


@router.get("/customers/{customer_id}")
async def get_customer(customer_id: str, qbo: QuickBooksService = Depends(get_qbo_service)) -> dict[str, Any]:
    return await qbo.get_customer(customer_id)


@router.post("/customers", status_code=status.HTTP_201_CREATED)
async def create_customer(
    payload: CustomerCreate,
    qbo: QuickBooksService = Depends(get_qbo_service),
) -> dict[str, Any]:
    return await qbo.create_customer(payload)


@router.post("/customers/{customer_id}")
async def update_customer(
    customer_id: str,
    payload: CustomerUpdate,
    qbo: QuickBooksService = Depends(get_qbo_service),
) -> dict[str, Any]:
    return await qbo.update_customer(customer_id, payload)


@router.get("/invoices", response_model=PaginatedResponse)
async def list_invoices(
    max_results: Optional[int] = Query(default=None, alias="maxResults"),
    start_position: Optional[int] = Query(default=None, alias="startPosition"),
    qbo: QuickBooksService = Depends(get_qbo_service),
) -> PaginatedResponse:
    page = await qbo.list_invoices(**_paging(max_results, start_position, default=20))
    return _page_response(page)


@router.get("/invoices/{invoice_id}")
async def get_invoice(invoice_id: str, qbo: QuickBooksService = Depends(get_qbo_service)) -> dict[str, Any]:
    return await qbo.get_invoice(invoice_id)


@router.post("/invoices", status_code=status.HTTP_201_CREATED)
async def create_invoice(
    payload: InvoiceCreate,
    qbo: QuickBooksService = Depends(get_qbo_service),
) -> dict[str, Any]:
    return await qbo.create_invoice(payload)


@router.post("/invoices/{invoice_id}/void")
async def void_invoice(
    invoice_id: str,
    payload: InvoiceVoid,
    qbo: QuickBooksService = Depends(get_qbo_service),
) -> dict[str, Any]:
    return await qbo.void_invoice(invoice_id, payload.sync_token)


@router.post("/invoices/{invoice_id}")
async def update_invoice(
    invoice_id: str,
    payload: InvoiceUpdate,
    qbo: QuickBooksService = Depends(get_qbo_service),
) -> dict[str, Any]:
    return await qbo.update_invoice(invoice_id, payload)


@router.get("/items", response_model=PaginatedResponse)
async def list_items(
    max_results: Optional[int] = Query(default=None, alias="maxResults"),
    start_position: Optional[int] = Query(default=None, alias="startPosition"),
    qbo: QuickBooksService = Depends(get_qbo_service),
) -> PaginatedResponse:
    page = await qbo.list_items(**_paging(max_results, start_position, default=20))
    return _page_response(page)


@router.get("/items/{item_id}")
async def get_item(item_id: str, qbo: QuickBooksService = Depends(get_qbo_service)) -> dict[str, Any]:
    return await qbo.get_item(item_id)


@router.post("/items", status_code=status.HTTP_201_CREATED)
async def create_item(
    payload: ItemCreate,
    qbo: QuickBooksService = Depends(get_qbo_service),
) -> dict[str, Any]:
    return await qbo.create_item(payload)


@router.get("/payments", response_model=PaginatedResponse)
async def list_payments(
    max_results: Optional[int] = Query(default=None, alias="maxResults"),
    start_position: Optional[int] = Query(default=None, alias="startPosition"),
    qbo: QuickBooksService = Depends(get_qbo_service),
) -> PaginatedResponse:
    page = await qbo.list_payments(**_paging(max_results, start_position, default=20))
    return _page_response(page)


@router.get("/payments/{payment_id}")
async def get_payment(payment_id: str, qbo: QuickBooksService = Depends(get_qbo_service)) -> dict[str, Any]:
    return await qbo.get_payment(payment_id)


@router.post("/payments", status_code=status.HTTP_201_CREATED)
async def create_payment(
    payload: PaymentCreate,
    qbo: QuickBooksService = Depends(get_qbo_service),
) -> dict[str, Any]:
    return await qbo.create_payment(payload)
