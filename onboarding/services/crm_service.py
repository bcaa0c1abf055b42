import logging
import time
from datetime import date, datetime
from typing import Any

import httpx
from pydantic import BaseModel, Field

from onboarding.core.errors import SalesforceError

logger = logging.getLogger(__name__)

TOKEN_PATH = "/services/oauth2/token"
# Salesforce sessions last hours; re-authenticate well before the usual 2h timeout
TOKEN_TTL_SECONDS = 60 * 60


class CrmError(BaseModel):
    message: str
    error_code: str | None = Field(default=None, alias="errorCode")
    fields: list[str] = Field(default_factory=list)


class CrmUpdateResult(BaseModel):
    success: bool
    record_id: str | None = None
    errors: list[str] = Field(default_factory=list)


def _parse_errors(payload: Any) -> list[str]:
    """Salesforce returns a list of {message, errorCode, fields} on failure."""
    if isinstance(payload, list):
        errors = []
        for item in payload:
            if isinstance(item, dict) and "message" in item:
                err = CrmError.model_validate(item)
                errors.append(f"{err.error_code}: {err.message}" if err.error_code else err.message)
        if errors:
            return errors
    if isinstance(payload, dict) and payload.get("message"):
        return [str(payload["message"])]
    return [str(payload)[:200]]


class SalesforceClient:
    """Salesforce REST client (OAuth2 password grant, token cached on the instance)."""

    def __init__(
        self,
        *,
        instance_url: str,
        client_id: str,
        client_secret: str,
        username: str,
        password: str,
        api_version: str = "v59.0",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.instance_url = instance_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.username = username
        self.password = password
        self.api_version = api_version
        self._http = http_client or httpx.AsyncClient()
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._api_base = self.instance_url

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _access_token(self) -> str:
        if self._token and self._token_expires_at > time.time():
            return self._token
        resp = await self._http.post(
            f"{self.instance_url}{TOKEN_PATH}",
            data={
                "grant_type": "password",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "username": self.username,
                "password": self.password,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if resp.status_code != 200:
            logger.warning("Salesforce auth failed: status=%s body=%s", resp.status_code, resp.text[:500])
            raise SalesforceError(f"Salesforce authentication failed ({resp.status_code})")
        payload = resp.json()
        self._token = payload["access_token"]
        self._api_base = payload.get("instance_url", self.instance_url).rstrip("/")
        self._token_expires_at = time.time() + TOKEN_TTL_SECONDS
        return self._token

    def _data_url(self, path: str) -> str:
        return f"{self._api_base}/services/data/{self.api_version}{path}"

    async def query(self, soql: str) -> list[dict[str, Any]]:
        token = await self._access_token()
        resp = await self._http.get(
            self._data_url("/query"),
            params={"q": soql},
            headers={"Authorization": f"Bearer {token}"},
        )
        if resp.status_code != 200:
            try:
                errors = _parse_errors(resp.json())
            except ValueError:
                errors = [resp.text[:200]]
            raise SalesforceError("; ".join(errors))
        return resp.json().get("records", [])

    async def update_record(self, sobject: str, record_id: str, fields: dict[str, Any]) -> CrmUpdateResult:
        token = await self._access_token()
        resp = await self._http.patch(
            self._data_url(f"/sobjects/{sobject}/{record_id}"),
            json=fields,
            headers={"Authorization": f"Bearer {token}"},
        )
        # PATCH returns 204 No Content on success
        if resp.status_code in (200, 204):
            return CrmUpdateResult(success=True, record_id=record_id)
        try:
            errors = _parse_errors(resp.json())
        except ValueError:
            errors = [resp.text[:200]]
        logger.warning("Salesforce update %s/%s failed: %s", sobject, record_id, errors)
        return CrmUpdateResult(success=False, record_id=record_id, errors=errors)

    async def create_record(self, sobject: str, fields: dict[str, Any]) -> CrmUpdateResult:
        token = await self._access_token()
        resp = await self._http.post(
            self._data_url(f"/sobjects/{sobject}"),
            json=fields,
            headers={"Authorization": f"Bearer {token}"},
        )
        if resp.status_code in (200, 201):
            return CrmUpdateResult(success=True, record_id=resp.json().get("id"))
        try:
            errors = _parse_errors(resp.json())
        except ValueError:
            errors = [resp.text[:200]]
        logger.warning("Salesforce create %s failed: %s", sobject, errors)
        return CrmUpdateResult(success=False, errors=errors)

    async def get_record(self, sobject: str, record_id: str, fields: list[str]) -> dict[str, Any] | None:
        token = await self._access_token()
        resp = await self._http.get(
            self._data_url(f"/sobjects/{sobject}/{record_id}"),
            params={"fields": ",".join(fields)},
            headers={"Authorization": f"Bearer {token}"},
        )
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            try:
                errors = _parse_errors(resp.json())
            except ValueError:
                errors = [resp.text[:200]]
            raise SalesforceError("; ".join(errors))
        return resp.json()

    async def find_user_id(self, email: str) -> str | None:
        """Active Salesforce user with this email; activities are assigned to them."""
        users = await self.query(
            f"SELECT Id FROM User WHERE Email = '{_escape(email)}' AND IsActive = true LIMIT 1"
        )
        return users[0]["Id"] if users else None

    async def find_order_id(self, onboarding_record_id: str) -> str | None:
        """Order belonging to the onboarding record's account."""
        records = await self.query(
            f"SELECT Id, Account_Name__c FROM Onboarding_Trainer__c WHERE Id = '{_escape(onboarding_record_id)}' LIMIT 1"
        )
        if not records or not records[0].get("Account_Name__c"):
            return None
        account_id = records[0]["Account_Name__c"]
        orders = await self.query(f"SELECT Id FROM Order WHERE AccountId = '{_escape(account_id)}' LIMIT 1")
        return orders[0]["Id"] if orders else None


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def event_fields(
    *,
    subject: str,
    start: datetime,
    end: datetime,
    owner_id: str,
    what_id: str,
    event_type: str,
    description: str = "",
    location: str = "",
    new: bool = True,
) -> dict[str, Any]:
    """Salesforce Event (activity) assigned to the trainer for KPI tracking."""
    fields: dict[str, Any] = {
        "Subject": subject[:255],
        "StartDateTime": start.isoformat(),
        "EndDateTime": end.isoformat(),
        "OwnerId": owner_id,
        "WhatId": what_id,
        "Type": event_type,
        "Description": description,
        "Location": location[:255],
        "IsAllDayEvent": False,
        "IsPrivate": False,
    }
    if new:
        # Read-only once the Event exists
        fields["IsRecurrence"] = False
        fields["IsReminderSet"] = False
    return fields


def task_fields(
    *,
    subject: str,
    description: str,
    owner_id: str,
    what_id: str,
    due: date,
    status: str = "Open",
    priority: str = "Normal",
) -> dict[str, Any]:
    return {
        "Subject": subject[:255],
        "Description": description,
        "Status": status,
        "Priority": priority,
        "OwnerId": owner_id,
        "WhatId": what_id,
        "ActivityDate": due.isoformat(),
    }
