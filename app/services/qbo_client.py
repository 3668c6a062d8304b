from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

import httpx

from app.schemas.qbo import (
    CustomerCreate,
    CustomerUpdate,
    InvoiceCreate,
    InvoiceLine,
    InvoiceUpdate,
    ItemCreate,
    PaymentCreate,
)
from app.services.qbo_faults import (
    DUPLICATE_NAME_FAULT_CODE,
    DuplicateEntityError,
    InvalidRequestError,
    NotFoundError,
    QuickBooksError,
    UpstreamFault,
)
from app.services.qbo_refs import QBOAccountResolver
from app.services.qbo_session import TokenSession
from app.utils.qbo_query import equals, format_count_query, format_query, including_inactive


INVENTORY_TRACKING_FAULT_CODE = "6000"
_EXISTING_ID_PATTERN = re.compile(r"Id=(\d+)")


@dataclass
class Page:
    items: list[dict[str, Any]] = field(default_factory=list)
    total_count: int = 0
    start_position: int = 1
    max_results: int = 0


class QuickBooksService:
    """Business operations over the accounting API; every call goes through the shared token session."""

    def __init__(self, session: TokenSession):
        self.session = session
        self.settings = session.settings
        self.logger = logging.getLogger("app.services.qbo")
        self.accounts = QBOAccountResolver(self)

    async def get_company_info(self) -> dict[str, Any]:
        realm_id = self.session.state.tenant_id
        data = await self.get(f"companyinfo/{realm_id}")
        return data.get("CompanyInfo", data)

    async def get(self, resource: str, *, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        response = await self.session.authenticated_call("GET", resource, params=params)
        return self._json(response)

    async def query(self, statement: str) -> dict[str, Any]:
        self.logger.debug("qbo_query", extra={"query": statement})
        return await self.get("query", params={"query": statement})

    async def query_rows(self, entity: str, *, where: Optional[str] = None) -> list[dict[str, Any]]:
        payload = await self.query(format_query(entity, where=where))
        return self._rows(payload, entity)

    async def post(
        self,
        entity: str,
        payload: dict[str, Any],
        *,
        operation: Optional[str] = None,
    ) -> dict[str, Any]:
        params = {"operation": operation} if operation else None
        response = await self.session.authenticated_call(
            "POST",
            entity.lower(),
            params=params,
            json=payload,
        )
        return self._extract_entity(self._json(response), entity)

    async def list_entity(
        self,
        entity: str,
        *,
        max_results: int,
        start_position: int = 1,
        where: Optional[str] = None,
    ) -> Page:
        payload = await self.query(
            format_query(entity, where=where, start_position=start_position, max_results=max_results)
        )
        items = self._rows(payload, entity)
        total_count = await self._count(entity, where=where, fallback=len(items))
        return Page(
            items=items,
            total_count=total_count,
            start_position=start_position,
            max_results=max_results,
        )

    async def get_by_id(self, entity: str, entity_id: str) -> dict[str, Any]:
        rows = await self.query_rows(entity, where=equals("Id", entity_id))
        if not rows:
            raise NotFoundError(f"{entity} with ID {entity_id} not found")
        return rows[0]

    # Accounts

    async def list_accounts(self, max_results: int = 100, start_position: int = 1) -> Page:
        return await self.list_entity("Account", max_results=max_results, start_position=start_position)

    async def list_income_accounts(self) -> list[dict[str, Any]]:
        return await self.query_rows("Account", where=equals("AccountType", "Income"))

    # Customers

    async def list_customers(self, max_results: int = 20, start_position: int = 1) -> Page:
        return await self.list_entity("Customer", max_results=max_results, start_position=start_position)

    async def get_customer(self, customer_id: str) -> dict[str, Any]:
        return await self.get_by_id("Customer", customer_id)

    async def create_customer(self, data: CustomerCreate) -> dict[str, Any]:
        payload = self._customer_payload(data.to_qbo())
        created = await self.post("Customer", payload)
        self.logger.info("customer_created", extra={"customer_id": created.get("Id")})
        return created

    async def update_customer(self, customer_id: str, data: CustomerUpdate) -> dict[str, Any]:
        payload = self._customer_payload(data.to_qbo())
        payload.update({"Id": customer_id, "sparse": True})
        return await self.post("Customer", payload, operation="update")

    # Invoices

    async def list_invoices(self, max_results: int = 20, start_position: int = 1) -> Page:
        return await self.list_entity("Invoice", max_results=max_results, start_position=start_position)

    async def get_invoice(self, invoice_id: str) -> dict[str, Any]:
        return await self.get_by_id("Invoice", invoice_id)

    async def create_invoice(self, data: InvoiceCreate) -> dict[str, Any]:
        payload = data.to_qbo(exclude={"line"})
        payload["Line"] = self._invoice_lines(data.line)
        created = await self.post("Invoice", payload)
        self.logger.info("invoice_created", extra={"invoice_id": created.get("Id")})
        return created

    async def update_invoice(self, invoice_id: str, data: InvoiceUpdate) -> dict[str, Any]:
        payload = data.to_qbo(exclude={"line"})
        if data.line is not None:
            payload["Line"] = self._invoice_lines(data.line)
        payload["Id"] = invoice_id
        return await self.post("Invoice", payload, operation="update")

    async def void_invoice(self, invoice_id: str, sync_token: str) -> dict[str, Any]:
        voided = await self.post("Invoice", {"Id": invoice_id, "SyncToken": sync_token}, operation="void")
        self.logger.info("invoice_voided", extra={"invoice_id": invoice_id})
        return voided

    # Items

    async def list_items(self, max_results: int = 20, start_position: int = 1) -> Page:
        return await self.list_entity("Item", max_results=max_results, start_position=start_position)

    async def get_item(self, item_id: str) -> dict[str, Any]:
        return await self.get_by_id("Item", item_id)

    async def find_item_by_name(self, name: str) -> Optional[dict[str, Any]]:
        try:
            rows = await self.query_rows("Item", where=including_inactive(equals("Name", name)))
        except (QuickBooksError, httpx.HTTPError) as exc:
            self.logger.warning("item_lookup_failed", extra={"item_name": name, "error": str(exc)})
            return None
        return rows[0] if rows else None

    async def create_item(self, data: ItemCreate) -> dict[str, Any]:
        existing = await self.find_item_by_name(data.name)
        if existing:
            raise DuplicateEntityError(
                f'An item with the name "{data.name}" already exists',
                code="DUPLICATE_ITEM_NAME",
                extra={
                    "existing_item": {
                        "Id": existing.get("Id"),
                        "Name": existing.get("Name"),
                        "Type": existing.get("Type"),
                    }
                },
            )

        payload = data.to_qbo(
            exclude={
                "qty_on_hand",
                "inv_start_date",
                "income_account_ref",
                "expense_account_ref",
                "asset_account_ref",
            }
        )
        if data.type in ("Service", "NonInventory"):
            self._require_account_ref(data.income_account_ref, "IncomeAccountRef", data.type)
            payload["IncomeAccountRef"] = await self.accounts.resolve_account_ref(
                data.income_account_ref,
                "Income",
                "ServiceIncome" if data.type == "Service" else "SalesOfProductIncome",
            )
        else:
            self._require_account_ref(data.income_account_ref, "IncomeAccountRef", data.type)
            self._require_account_ref(data.expense_account_ref, "ExpenseAccountRef", data.type)
            self._require_account_ref(data.asset_account_ref, "AssetAccountRef", data.type)
            payload["IncomeAccountRef"] = await self.accounts.resolve_account_ref(
                data.income_account_ref, "Income", "SalesOfProductIncome"
            )
            payload["ExpenseAccountRef"] = await self.accounts.resolve_account_ref(
                data.expense_account_ref, "Cost of Goods Sold", "SuppliesMaterialsCogs"
            )
            payload["AssetAccountRef"] = await self.accounts.resolve_account_ref(
                data.asset_account_ref, "Asset", "Inventory"
            )
            payload["TrackQtyOnHand"] = True
            payload["QtyOnHand"] = data.qty_on_hand if data.qty_on_hand is not None else 0
            payload["InvStartDate"] = (data.inv_start_date or date.today()).isoformat()

        try:
            created = await self.post("Item", payload)
        except UpstreamFault as exc:
            translated = self._translate_item_fault(exc, data.name)
            if translated is None:
                raise
            raise translated from exc
        self.logger.info("item_created", extra={"item_id": created.get("Id"), "item_type": data.type})
        return created

    # Payments

    async def list_payments(self, max_results: int = 20, start_position: int = 1) -> Page:
        return await self.list_entity("Payment", max_results=max_results, start_position=start_position)

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        return await self.get_by_id("Payment", payment_id)

    async def create_payment(self, data: PaymentCreate) -> dict[str, Any]:
        created = await self.post("Payment", data.to_qbo())
        self.logger.info("payment_created", extra={"payment_id": created.get("Id")})
        return created

    async def _count(self, entity: str, *, where: Optional[str], fallback: int) -> int:
        try:
            payload = await self.query(format_count_query(entity, where=where))
        except (QuickBooksError, httpx.HTTPError) as exc:
            self.logger.warning(
                "qbo_count_failed",
                extra={"entity": entity, "fallback": fallback, "error": str(exc)},
            )
            return fallback
        query_response = payload.get("QueryResponse") or {}
        if query_response.get("totalCount") is not None:
            try:
                return int(query_response["totalCount"])
            except (TypeError, ValueError):
                self.logger.warning(
                    "qbo_count_unreadable",
                    extra={"entity": entity, "fallback": fallback, "total_count": query_response["totalCount"]},
                )
                return fallback
        rows = query_response.get(entity)
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            try:
                return int(rows[0].get("Count")) or fallback
            except (TypeError, ValueError):
                return fallback
        return fallback

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamFault(
                "QuickBooks returned an unreadable body",
                status_code=502,
                payload=response.text[:500],
            ) from exc
        if not isinstance(data, dict):
            raise UpstreamFault("QuickBooks returned an unexpected body", status_code=502, payload=data)
        return data

    def _rows(self, payload: dict[str, Any], entity: str) -> list[dict[str, Any]]:
        query_response = payload.get("QueryResponse") or {}
        rows = query_response.get(entity) or []
        if isinstance(rows, dict):
            return [rows]
        return list(rows)

    def _extract_entity(self, payload: dict[str, Any], entity: str) -> dict[str, Any]:
        if entity in payload:
            return payload[entity]
        rows = self._rows(payload, entity)
        if rows:
            return rows[0]
        return payload

    def _customer_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        email = payload.get("PrimaryEmailAddr")
        if isinstance(email, str):
            payload["PrimaryEmailAddr"] = {"Address": email}
        phone = payload.get("PrimaryPhone")
        if isinstance(phone, str):
            payload["PrimaryPhone"] = {"FreeFormNumber": phone}
        return payload

    def _invoice_lines(self, lines: list[InvoiceLine]) -> list[dict[str, Any]]:
        shaped: list[dict[str, Any]] = []
        for index, line in enumerate(lines, start=1):
            entry: dict[str, Any] = {"Amount": line.amount, "DetailType": line.detail_type}
            detail = line.sales_item_line_detail
            if line.detail_type == "SalesItemLineDetail" and detail is not None:
                entry["SalesItemLineDetail"] = detail.to_qbo()
            if line.description:
                entry["Description"] = line.description
            entry["LineNum"] = line.line_num or index
            shaped.append(entry)
        return shaped

    def _require_account_ref(self, ref: Any, field_name: str, item_type: str) -> None:
        if ref is None or (not ref.value and not ref.name):
            raise InvalidRequestError(
                f"{field_name} with either value (ID) or name is required for {item_type} items",
                extra={"hint": "Provide an account id (value) or an account name; a missing named account is created."},
            )

    def _translate_item_fault(self, exc: UpstreamFault, name: str) -> Optional[QuickBooksError]:
        if exc.code == DUPLICATE_NAME_FAULT_CODE or "Duplicate Name" in exc.message:
            match = _EXISTING_ID_PATTERN.search(exc.detail or "")
            self.logger.warning("item_duplicate_name", extra={"item_name": name})
            return DuplicateEntityError(
                f'An item with the name "{name}" already exists in QuickBooks',
                code="DUPLICATE_ITEM_NAME",
                detail=exc.detail,
                extra={"existing_item_id": match.group(1) if match else None},
            )
        if exc.code == INVENTORY_TRACKING_FAULT_CODE and "Track quantity on hand" in (exc.detail or ""):
            return InvalidRequestError(
                "Inventory items require quantity tracking to be enabled",
                code="INVENTORY_TRACKING_REQUIRED",
                detail=exc.detail,
            )
        return None
