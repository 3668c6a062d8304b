from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from app.schemas.qbo import AccountRef
from app.services.qbo_faults import DUPLICATE_NAME_FAULT_CODE, InvalidRequestError, UpstreamFault
from app.utils.qbo_query import equals, including_inactive

if TYPE_CHECKING:
    from app.services.qbo_client import QuickBooksService


class QBOAccountResolver:
    """Turns account references given by id or by name into QuickBooks references.

    Named accounts are looked up including inactive ones and created on a miss.
    Results are cached for the lifetime of the resolver, which is one request.
    """

    def __init__(self, qbo_service: "QuickBooksService") -> None:
        self.qbo_service = qbo_service
        self._cache: dict[str, str] = {}

    async def resolve_account_ref(
        self,
        account_ref: Optional[AccountRef],
        account_type: Optional[str] = None,
        account_sub_type: Optional[str] = None,
    ) -> dict[str, str]:
        if account_ref is not None and account_ref.value:
            reference = {"value": account_ref.value}
            if account_ref.name:
                reference["name"] = account_ref.name
            return reference

        if account_ref is not None and account_ref.name:
            if not account_type:
                raise InvalidRequestError(
                    "Account type is required when providing account name without ID",
                    extra={"hint": "Provide accountType when using account name"},
                )
            account_id = await self.find_or_create_account(
                account_ref.name,
                account_type,
                account_sub_type,
            )
            return {"value": account_id, "name": account_ref.name}

        raise InvalidRequestError("Either account value (ID) or name must be provided")

    async def find_or_create_account(
        self,
        name: str,
        account_type: str,
        account_sub_type: Optional[str] = None,
    ) -> str:
        cache_key = self._build_cache_key(name)
        if cache_key in self._cache:
            return self._cache[cache_key]

        record = await self._find_account(name)
        if record is not None:
            self.qbo_service.logger.info(
                "account_found",
                extra={"account_name": name, "account_id": record.get("Id")},
            )
            return self._remember(name, record)

        payload: dict[str, Any] = {
            "Name": name,
            "AccountType": account_type,
            "Active": True,
        }
        if account_sub_type:
            payload["AccountSubType"] = account_sub_type
        self.qbo_service.logger.info(
            "account_create_attempt",
            extra={
                "account_name": name,
                "account_type": account_type,
                "account_sub_type": account_sub_type,
            },
        )
        try:
            created = await self.qbo_service.post("Account", payload)
        except UpstreamFault as exc:
            reused = await self._recover_from_duplicate_account_error(exc, name=name, account_type=account_type)
            if reused is None:
                raise
            return reused

        if not created.get("Id"):
            raise UpstreamFault(
                f"Failed to create account: {name}",
                status_code=502,
                payload=created,
            )
        return self._remember(name, created)

    async def _find_account(self, name: str) -> Optional[dict[str, Any]]:
        rows = await self.qbo_service.query_rows(
            "Account",
            where=including_inactive(equals("Name", name)),
        )
        return rows[0] if rows else None

    async def _recover_from_duplicate_account_error(
        self,
        exc: UpstreamFault,
        *,
        name: str,
        account_type: Optional[str],
    ) -> Optional[str]:
        if exc.code != DUPLICATE_NAME_FAULT_CODE and "Duplicate" not in exc.message:
            return None

        self.qbo_service.logger.warning(
            "account_duplicate_detected",
            extra={
                "account_name": name,
                "account_type": account_type,
            },
        )
        record = await self._find_account(name)
        if record is None:
            self.qbo_service.logger.error(
                "account_duplicate_recovery_failed",
                extra={
                    "account_name": name,
                    "account_type": account_type,
                    "qbo_error_code": exc.code,
                },
            )
            return None

        self.qbo_service.logger.info(
            "account_duplicate_reused",
            extra={
                "account_name": name,
                "reused_account_id": record.get("Id"),
            },
        )
        return self._remember(name, record)

    def _remember(self, name: str, record: dict[str, Any]) -> str:
        account_id = str(record.get("Id"))
        self._cache[self._build_cache_key(name)] = account_id
        return account_id

    def _build_cache_key(self, name: str) -> str:
        return name.strip().casefold()
