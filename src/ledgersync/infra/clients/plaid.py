from __future__ import annotations

import http.client
import json
import os
from typing import Any, Literal, Self, cast
import urllib.error
import urllib.request

from pydantic import BaseModel, Field, ValidationError, field_validator

PlaidEnv = Literal["sandbox", "development", "production"]

REAUTH_ERROR_CODES = frozenset(
    {"ITEM_LOGIN_REQUIRED", "ITEM_LOCKED", "USER_PERMISSION_REVOKED"}
)
MUTATION_DURING_PAGINATION = "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"
PRODUCT_NOT_READY = "PRODUCT_NOT_READY"


class PlaidClientError(Exception):
    """Base error for Plaid client failures."""

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code

    @property
    def requires_reauth(self) -> bool:
        """Whether the user must re-authenticate the bank connection."""
        return self.error_code in REAUTH_ERROR_CODES

    @property
    def is_mutation_during_pagination(self) -> bool:
        return self.error_code == MUTATION_DURING_PAGINATION

    @property
    def is_product_not_ready(self) -> bool:
        """Whether the item is still preparing its initial transaction data."""
        return self.error_code == PRODUCT_NOT_READY


PLAID_ENV_MAP: dict[PlaidEnv, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}


class PlaidBaseModel(BaseModel):
    """Shared base for Plaid response models with a short parse alias."""

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class RawTransaction(PlaidBaseModel):
    """A transaction as delivered by /transactions/sync.

    ``amount`` follows Plaid's convention: positive is money leaving the
    account.
    """

    transaction_id: str
    account_id: str
    name: str | None = None
    merchant_name: str | None = None
    original_description: str | None = None
    amount: float
    date: str
    authorized_date: str | None = None
    pending: bool = False


class DeltaPage(PlaidBaseModel):
    """One page of changes since a cursor."""

    added: list[RawTransaction] = Field(default_factory=list)
    modified: list[RawTransaction] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    next_cursor: str = ""
    has_more: bool = False

    @field_validator("removed", mode="before")
    @classmethod
    def _removed_ids(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [
            item.get("transaction_id") if isinstance(item, dict) else item
            for item in value
        ]


class PlaidErrorBody(PlaidBaseModel):
    error_code: str | None = None
    error_message: str | None = None


class PlaidClient:
    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        env: PlaidEnv = "sandbox",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client_id = client_id
        self._secret = secret
        self._env = env
        self._timeout_seconds = timeout_seconds

    @property
    def env(self) -> PlaidEnv:
        return self._env

    @classmethod
    def from_env(cls, *, timeout_seconds: float = 30.0) -> PlaidClient:
        """Construct a PlaidClient from environment variables.

        Required:
        - PLAID_CLIENT_ID
        - PLAID_ENV (defaults to sandbox)
        - PLAID_<ENV>_SECRET (e.g. PLAID_SANDBOX_SECRET)
        """
        env_str = os.getenv("PLAID_ENV", "sandbox").lower()
        if env_str not in PLAID_ENV_MAP:
            raise PlaidClientError(
                f"Invalid PLAID_ENV={env_str!r}. "
                "Expected one of: sandbox, development, production."
            )
        env = cast(PlaidEnv, env_str)

        client_id = cls._getenv_or_die("PLAID_CLIENT_ID")
        secret = cls._getenv_or_die(f"PLAID_{env.upper()}_SECRET")
        return cls(
            client_id=client_id,
            secret=secret,
            env=env,
            timeout_seconds=timeout_seconds,
        )

    @staticmethod
    def _getenv_or_die(name: str) -> str:
        value = os.getenv(name)
        if not value:
            raise PlaidClientError(f"Missing required environment variable: {name}")
        return value

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        try:
            return cast(dict[str, Any], json.loads(body))
        except json.JSONDecodeError as e:
            raise PlaidClientError(
                f"Failed to parse Plaid response as JSON: {e}: {body}"
            ) from e

    def _error_from_http(self, e: urllib.error.HTTPError) -> PlaidClientError:
        err_body = e.read().decode("utf-8", "ignore")
        try:
            parsed = PlaidErrorBody.parse(json.loads(err_body))
        except (json.JSONDecodeError, ValidationError):
            return PlaidClientError(f"Plaid API error ({e.code}): {err_body}")
        message = parsed.error_message or err_body
        return PlaidClientError(
            f"Plaid API error ({e.code}, {parsed.error_code}): {message}",
            error_code=parsed.error_code,
        )

    def _post(
        self,
        path: str,
        payload: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        url = PLAID_ENV_MAP[self._env].rstrip("/") + path
        data = json.dumps(
            {"client_id": self._client_id, "secret": self._secret, **payload}
        ).encode("utf-8")
        req = urllib.request.Request(  # noqa: S310
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(  # noqa: S310 - external HTTPS
                req, timeout=timeout or self._timeout_seconds
            ) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:  # pragma: no cover - network-dependent
            raise self._error_from_http(e) from e
        except urllib.error.URLError as e:  # pragma: no cover - network-dependent
            raise PlaidClientError(f"Network error calling Plaid API: {e}") from e
        except TimeoutError as e:  # pragma: no cover - network-dependent
            raise PlaidClientError(f"Timed out calling Plaid API {path}") from e
        except (http.client.HTTPException, OSError) as e:
            raise PlaidClientError(
                f"Connection error calling Plaid API {path}: {e!r}"
            ) from e

        return self._parse_json_response(body)

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 500,
        timeout: float | None = None,
    ) -> DeltaPage:
        """Fetch one page of /transactions/sync changes after ``cursor``."""
        payload: dict[str, Any] = {
            "access_token": access_token,
            "count": count,
            "options": {"include_original_description": True},
        }
        if cursor:
            payload["cursor"] = cursor

        raw = self._post("/transactions/sync", payload, timeout=timeout)
        try:
            page = DeltaPage.parse(raw)
        except ValidationError as e:
            raise PlaidClientError(f"Unexpected /transactions/sync payload: {e}") from e
        if not page.next_cursor:
            page.next_cursor = cursor or ""
        return page
