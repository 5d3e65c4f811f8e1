"""NetSuite vendor-bill adapter (SuiteTalk REST + SuiteQL).

Provides ERPBillAdapter:
- fetch_records(): SuiteQL listing of VendBill transactions, paged by
  limit/offset until hasMore is false
- fetch_details(): GET /record/v1/vendorBill/{id}
- fetch_line_items(): GET /record/v1/vendorBill/{id}/expense, then each
  line's self link for the full line record
- fetch_related_name(): GET /record/v1/vendor/{id}, cached per adapter

Requests are signed with OAuth 1.0a token-based auth (HMAC-SHA256). Retries
use tenacity (3 attempts, exponential backoff 1-10s) on connection errors,
timeouts, 429 and 5xx only.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
import time
from datetime import date
from typing import Any
from urllib.parse import parse_qsl, quote, urlsplit

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.expense_sync.expenses.schemas import RawRecord, SourceSystem
from src.expense_sync.sources.adapter import SourceAdapter
from src.expense_sync.sync.errors import FetchError, SubsidiaryLookupError

logger = structlog.get_logger(__name__)


def is_transient_http_error(exc: BaseException) -> bool:
    """Return True for failures worth retrying: network, timeout, 429, 5xx."""
    if isinstance(exc, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return False


_netsuite_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(is_transient_http_error),
    reraise=True,
)

_SANDBOX_SUFFIX = re.compile(r"_SB\d+$")

VENDOR_BILL_QUERY = """
    SELECT
        id,
        tranid,
        trandate,
        entity
    FROM transaction
    WHERE
        type = 'VendBill'
        AND trandate >= TO_DATE('{from_date}', 'YYYY-MM-DD')
    ORDER BY trandate DESC
"""


def _enc(value: str) -> str:
    """RFC 3986 percent-encoding used by OAuth 1.0a."""
    return quote(str(value), safe="~")


class ERPBillAdapter(SourceAdapter):
    """NetSuite vendor bills as a SourceAdapter.

    Args:
        account_id: NetSuite account id, sandbox suffix allowed ("1234567_SB1").
        consumer_key: Integration record consumer key.
        consumer_secret: Integration record consumer secret.
        token_id: Access token id.
        token_secret: Access token secret.
        page_size: SuiteQL page size (NetSuite caps this at 1000).
    """

    source_system = SourceSystem.ERP

    TIMEOUT = 30.0

    def __init__(
        self,
        account_id: str,
        consumer_key: str,
        consumer_secret: str,
        token_id: str,
        token_secret: str,
        page_size: int = 100,
    ) -> None:
        self._account_id = account_id
        self._consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self._token_id = token_id
        self._token_secret = token_secret
        self._page_size = page_size
        host = _SANDBOX_SUFFIX.sub("", account_id)
        self._base_url = f"https://{host}.suitetalk.api.netsuite.com"
        self._vendor_names: dict[str, str | None] = {}

    @property
    def base_url(self) -> str:
        return self._base_url

    # ── OAuth 1.0a ──────────────────────────────────────────────────────────

    def authorization_header(
        self,
        method: str,
        url: str,
        nonce: str | None = None,
        timestamp: str | None = None,
    ) -> str:
        """Build the OAuth 1.0a Authorization header for one request.

        Query parameters take part in the signature but not in the header.

        Args:
            method: HTTP method.
            url: Absolute request URL including any query string.
            nonce: Fixed nonce (tests); random when omitted.
            timestamp: Fixed epoch seconds (tests); now when omitted.
        """
        parts = urlsplit(url)
        base_url = f"{parts.scheme}://{parts.netloc}{parts.path}"

        oauth_params = {
            "oauth_consumer_key": self._consumer_key,
            "oauth_token": self._token_id,
            "oauth_signature_method": "HMAC-SHA256",
            "oauth_timestamp": timestamp or str(int(time.time())),
            "oauth_nonce": nonce or secrets.token_urlsafe(16),
            "oauth_version": "1.0",
        }
        signed_params = dict(oauth_params)
        signed_params.update(parse_qsl(parts.query, keep_blank_values=True))

        param_string = "&".join(
            f"{_enc(k)}={_enc(signed_params[k])}" for k in sorted(signed_params)
        )
        base_string = "&".join([method.upper(), _enc(base_url), _enc(param_string)])
        signing_key = f"{_enc(self._consumer_secret)}&{_enc(self._token_secret)}"
        digest = hmac.new(signing_key.encode(), base_string.encode(), hashlib.sha256).digest()
        oauth_params["oauth_signature"] = base64.b64encode(digest).decode()

        header_params = ",".join(f'{_enc(k)}="{_enc(v)}"' for k, v in oauth_params.items())
        return f'OAuth realm="{self._account_id}",{header_params}'

    # ── HTTP ────────────────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client for one request."""
        return httpx.AsyncClient(timeout=self.TIMEOUT)

    @_netsuite_retry
    async def _request(self, method: str, path: str, json: dict | None = None) -> dict:
        url = f"{self._base_url}{path}"
        headers = {
            "Authorization": self.authorization_header(method, url),
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Prefer": "transient",
        }
        async with self._client() as client:
            response = await client.request(method, url, headers=headers, json=json)
            response.raise_for_status()
            return response.json()

    async def _lookup(self, lookup: str, ref: str, path: str) -> dict:
        """GET a subsidiary record, raising SubsidiaryLookupError on any failure."""
        try:
            return await self._request("GET", path)
        except (httpx.HTTPError, ValueError) as exc:
            raise SubsidiaryLookupError(lookup, ref, str(exc)) from exc

    # ── SourceAdapter ───────────────────────────────────────────────────────

    async def fetch_records(self, from_date: date) -> list[RawRecord]:
        """List vendor bills dated on or after from_date via SuiteQL."""
        query = VENDOR_BILL_QUERY.format(from_date=from_date.isoformat())
        records: list[RawRecord] = []
        offset = 0

        try:
            while True:
                page = await self._request(
                    "POST",
                    f"/services/rest/query/v1/suiteql?limit={self._page_size}&offset={offset}",
                    json={"q": query},
                )
                items = page.get("items") or []
                for item in items:
                    entity = item.get("entity")
                    records.append(
                        RawRecord(
                            source_id=str(item["id"]),
                            payload=item,
                            related_ref=str(entity) if entity not in (None, "") else None,
                        )
                    )
                if not page.get("hasMore") or not items:
                    break
                offset += len(items)
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.error("netsuite.fetch_failed", error=str(exc), fetched=len(records))
            raise FetchError(self.source_system.value, str(exc)) from exc

        logger.info("netsuite.bills_fetched", count=len(records), from_date=from_date.isoformat())
        return records

    async def fetch_details(self, record_id: str) -> dict[str, Any] | None:
        try:
            return await self._lookup(
                "bill_detail", record_id, f"/services/rest/record/v1/vendorBill/{record_id}"
            )
        except SubsidiaryLookupError:
            logger.warning("netsuite.bill_detail_failed", bill_id=record_id, exc_info=True)
            return None

    async def fetch_line_items(self, record_id: str) -> list[dict[str, Any]] | None:
        """Fetch full expense lines for a bill.

        The sublist endpoint only returns links; each link is followed for the
        full line. A line whose link cannot be fetched is skipped.
        """
        try:
            sublist = await self._lookup(
                "expense_lines",
                record_id,
                f"/services/rest/record/v1/vendorBill/{record_id}/expense",
            )
        except SubsidiaryLookupError:
            logger.warning("netsuite.expense_lines_failed", bill_id=record_id, exc_info=True)
            return None

        lines: list[dict[str, Any]] = []
        for item in sublist.get("items") or []:
            links = item.get("links") or []
            href = links[0].get("href") if links else None
            if not href:
                lines.append(item)
                continue
            try:
                lines.append(await self._lookup("expense_line", record_id, urlsplit(href).path))
            except SubsidiaryLookupError:
                logger.warning(
                    "netsuite.expense_line_failed",
                    bill_id=record_id,
                    href=href,
                    exc_info=True,
                )
        return lines

    async def start_run(self) -> None:
        self._vendor_names.clear()

    async def fetch_related_name(self, ref_id: str) -> str | None:
        """Resolve a vendor id to companyName -> entityId -> altName."""
        if ref_id in self._vendor_names:
            return self._vendor_names[ref_id]

        try:
            vendor = await self._lookup("vendor", ref_id, f"/services/rest/record/v1/vendor/{ref_id}")
        except SubsidiaryLookupError:
            logger.warning("netsuite.vendor_lookup_failed", vendor_id=ref_id, exc_info=True)
            return None

        name = vendor.get("companyName") or vendor.get("entityId") or vendor.get("altName")
        self._vendor_names[ref_id] = name
        return name
