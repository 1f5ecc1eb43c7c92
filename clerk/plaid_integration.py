import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import plaid
import urllib3
from plaid.api import plaid_api
from plaid.model.accounts_balance_get_request import AccountsBalanceGetRequest
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.country_code import CountryCode
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products
from plaid.model.transactions_sync_request import TransactionsSyncRequest
from plaid.model.transactions_sync_request_options import TransactionsSyncRequestOptions

from clerk.settings import ConfigError, Settings

logger = logging.getLogger(__name__)

CLIENT_NAME = "clerk"

# Plaid error codes that mean the stored access token no longer works until
# the user goes through Link again.
CREDENTIAL_ERROR_CODES = {
    "ITEM_LOGIN_REQUIRED",
    "INVALID_ACCESS_TOKEN",
    "ACCESS_NOT_GRANTED",
    "ITEM_LOCKED",
    "USER_PERMISSION_REVOKED",
    "PENDING_EXPIRATION",
}

TRANSIENT_ERROR_CODES = {
    "RATE_LIMIT_EXCEEDED",
    "INTERNAL_SERVER_ERROR",
    "PLANNED_MAINTENANCE",
    "INSTITUTION_DOWN",
    "INSTITUTION_NOT_RESPONDING",
    "PRODUCT_NOT_READY",
    "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION",
}


class UpstreamError(Exception):
    """Base exception for Plaid API errors"""

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.error_code = error_code
        super().__init__(message)


class TransientUpstreamError(UpstreamError):
    """Rate limit, outage or network failure; the request may be retried"""
    pass


class CredentialError(UpstreamError):
    """The link's access token must be refreshed through Plaid Link"""
    pass


@dataclass
class DeltaPage:
    """One page of /transactions/sync output."""
    added: List[dict] = field(default_factory=list)
    modified: List[dict] = field(default_factory=list)
    removed: List[dict] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False
    accounts: List[dict] = field(default_factory=list)


def translate_error(exc: Exception) -> UpstreamError:
    """Map a Plaid or network exception onto the upstream error hierarchy."""
    if isinstance(exc, UpstreamError):
        return exc
    if isinstance(exc, (urllib3.exceptions.HTTPError, ConnectionError, TimeoutError)):
        return TransientUpstreamError(f"Network error: {exc}")
    if isinstance(exc, plaid.ApiException):
        status = exc.status or 0
        error_code = None
        message = exc.reason or str(exc)
        try:
            body = json.loads(exc.body) if exc.body else {}
        except (TypeError, ValueError):
            body = {}
        if isinstance(body, dict):
            error_code = body.get("error_code")
            message = body.get("error_message") or message

        if error_code in CREDENTIAL_ERROR_CODES:
            return CredentialError(f"Plaid [{error_code}]: {message}", error_code)
        if error_code in TRANSIENT_ERROR_CODES or status == 429 or status >= 500:
            return TransientUpstreamError(f"Plaid [{error_code or status}]: {message}", error_code)
        return UpstreamError(f"Plaid [{error_code or status}]: {message}", error_code)
    return UpstreamError(str(exc))


def _value(obj):
    """Plaid's generated enum models carry their string in ``.value``."""
    return getattr(obj, "value", obj)


def _to_dict(response) -> dict:
    return response.to_dict() if hasattr(response, "to_dict") else dict(response)


class PlaidClient:
    """Thin wrapper around the generated Plaid API client."""

    def __init__(self, settings: Settings, api: Optional[plaid_api.PlaidApi] = None):
        self.settings = settings
        self.api = api or self._build_api(settings)

    @staticmethod
    def _build_api(settings: Settings) -> plaid_api.PlaidApi:
        if not settings.plaid_client_id or not settings.plaid_secret:
            raise ConfigError("PLAID_CLIENT_ID and PLAID_SECRET must be set")

        host = plaid.Environment.Sandbox
        if settings.plaid_env == "production":
            host = plaid.Environment.Production

        configuration = plaid.Configuration(
            host=host,
            api_key={
                'clientId': settings.plaid_client_id,
                'secret': settings.plaid_secret,
            }
        )
        return plaid_api.PlaidApi(plaid.ApiClient(configuration))

    def _call(self, method, request):
        try:
            return _to_dict(method(request))
        except (plaid.ApiException, urllib3.exceptions.HTTPError, ConnectionError, TimeoutError) as e:
            raise translate_error(e) from e

    def fetch_delta(self, access_token: str, cursor: Optional[str] = None) -> DeltaPage:
        """
        Fetch one page of transaction changes after ``cursor``.

        A ``None`` cursor starts from the beginning of the item's history.
        """
        kwargs = {
            'access_token': access_token,
            'count': self.settings.page_size,
            'options': TransactionsSyncRequestOptions(
                include_personal_finance_category=True,
                include_original_description=True,
            ),
        }
        # The generated model rejects an explicit None cursor.
        if cursor:
            kwargs['cursor'] = cursor

        data = self._call(self.api.transactions_sync, TransactionsSyncRequest(**kwargs))
        return DeltaPage(
            added=data.get("added") or [],
            modified=data.get("modified") or [],
            removed=data.get("removed") or [],
            next_cursor=data.get("next_cursor"),
            has_more=bool(data.get("has_more", False)),
            accounts=[normalize_account(a) for a in data.get("accounts") or []],
        )

    def accounts(self, access_token: str) -> List[dict]:
        data = self._call(self.api.accounts_get, AccountsGetRequest(access_token=access_token))
        return [normalize_account(a) for a in data.get("accounts", [])]

    def balances(self, access_token: str) -> List[dict]:
        """Fetch live balances; slow, Plaid contacts the institution."""
        data = self._call(self.api.accounts_balance_get, AccountsBalanceGetRequest(access_token=access_token))
        return [normalize_account(a) for a in data.get("accounts", [])]

    def create_link_token(self, user_id: str) -> str:
        """
        Generates a Link Token to initialize Plaid Link on the client side.
        """
        request = LinkTokenCreateRequest(
            products=[Products('transactions')],
            client_name=CLIENT_NAME,
            country_codes=[CountryCode(c) for c in self.settings.country_codes],
            language='en',
            user=LinkTokenCreateRequestUser(
                client_user_id=user_id
            )
        )
        data = self._call(self.api.link_token_create, request)
        return data['link_token']

    def exchange_public_token(self, public_token: str):
        """
        Exchanges the public token (from Plaid Link) for an access token.

        Returns:
            (item_id, access_token)
        """
        request = ItemPublicTokenExchangeRequest(
            public_token=public_token
        )
        data = self._call(self.api.item_public_token_exchange, request)
        return data['item_id'], data['access_token']


ACCOUNT_TYPES = {"depository", "credit", "loan", "investment"}


def normalize_account(raw: dict) -> dict:
    """Flatten a Plaid account record into the fields the store keeps."""
    raw = _to_dict(raw) if not isinstance(raw, dict) else raw
    account_type = str(_value(raw.get("type") or "other")).lower()
    if account_type == "brokerage":
        account_type = "investment"
    if account_type not in ACCOUNT_TYPES:
        account_type = "other"
    balances = raw.get("balances") or {}
    return {
        "account_id": raw.get("account_id"),
        "name": raw.get("name") or raw.get("official_name") or raw.get("account_id"),
        "type": account_type,
        "mask": raw.get("mask"),
        "available": balances.get("available"),
        "current": balances.get("current"),
        "currency": balances.get("iso_currency_code") or balances.get("unofficial_currency_code") or "USD",
    }
