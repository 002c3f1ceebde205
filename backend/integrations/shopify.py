"""
Shopify Admin API Client

Paginated order retrieval (REST) and batched variant lookups (GraphQL)
for the order and inventory sync workers.

Rate limiting:
  - HTTP 429, or a GraphQL payload error with code THROTTLED, is retried
    after the upstream's hint (Retry-After / query cost restore time) or
    base_delay * 2**retry (2s, 4s, 8s) when there is none.
  - Other HTTP and transport errors are retried once after a short delay.
  - 401/403 are never retried.
  - When the call-limit header reports usage above the threshold, the
    client cools down briefly before handing back the response so the
    next page does not trip the limit.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type

from core.config import Settings, get_settings
from core.security import hash_contact
from integrations.base import (
    MalformedRecord,
    RateLimited,
    StoreCredentials,
    TransientUpstreamError,
    UpstreamAuthError,
)

logger = structlog.get_logger()

ACCESS_TOKEN_HEADER = "X-Shopify-Access-Token"
CALL_LIMIT_HEADER = "X-Shopify-Shop-Api-Call-Limit"
VARIANT_GID_PREFIX = "gid://shopify/ProductVariant/"

VARIANT_ATTRIBUTES_QUERY = """
query VariantAttributes($ids: [ID!]!) {
  nodes(ids: $ids) {
    ... on ProductVariant {
      id
      sku
      title
      price
      inventoryQuantity
      inventoryItem { unitCost { amount } }
      distributor: metafield(namespace: "custom", key: "distributor") { value }
      product { id title vendor tags }
    }
  }
}
"""


@dataclass
class OrderPage:
    """One page of raw upstream orders plus the cursor for the next one."""

    number: int
    records: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None


class ShopifyClient:
    """Client for Shopify Admin API interactions."""

    def __init__(
        self,
        credentials: StoreCredentials,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.credentials = credentials
        self.settings = settings or get_settings()
        self._transport = transport
        self._sleep = sleep
        domain = credentials.shop_domain.strip().removeprefix("https://").rstrip("/")
        self.base_url = f"https://{domain}/admin/api/{self.settings.shopify_api_version}"
        self.headers = {
            ACCESS_TOKEN_HEADER: credentials.access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self.timeout = httpx.Timeout(self.settings.shopify_request_timeout_seconds)
        self.logger = logger.bind(shop_domain=domain)

    # ── Public API ─────────────────────────────────────────────────────

    async def count_orders(self, updated_at_min: datetime) -> int:
        """Number of orders touched since `updated_at_min`."""
        payload = await self._send(
            "GET",
            f"{self.base_url}/orders/count.json",
            params={"status": "any", "updated_at_min": format_timestamp(updated_at_min)},
        )
        return int(payload.get("count", 0))

    async def iter_order_pages(self, updated_at_min: datetime) -> AsyncIterator[OrderPage]:
        """
        Lazily yield order pages updated since `updated_at_min`, oldest first.

        Follow-up pages come from the Link header's rel="next" URL; the
        sequence ends when the upstream stops sending one.
        """
        url: str | None = f"{self.base_url}/orders.json"
        params: dict[str, Any] | None = {
            "status": "any",
            "limit": min(self.settings.shopify_page_size, 250),
            "updated_at_min": format_timestamp(updated_at_min),
            "order": "updated_at asc",
        }
        number = 0
        while url:
            payload, response = await self._send_with_response("GET", url, params=params)
            number += 1
            next_url = response.links.get("next", {}).get("url")
            yield OrderPage(number=number, records=payload.get("orders", []), next_cursor=next_url)
            # page_info URLs reject any filter besides limit, which they already carry
            url, params = next_url, None

    async def fetch_variants(self, variant_ids: list[str]) -> list[dict[str, Any]]:
        """Fetch variant nodes for one batch of ids. Unknown ids are dropped."""
        if len(variant_ids) > self.settings.shopify_batch_size:
            raise ValueError(f"Batch of {len(variant_ids)} exceeds limit of {self.settings.shopify_batch_size}")
        if not variant_ids:
            return []
        payload = await self._send(
            "POST",
            f"{self.base_url}/graphql.json",
            json={
                "query": VARIANT_ATTRIBUTES_QUERY,
                "variables": {"ids": [variant_gid(v) for v in variant_ids]},
            },
            graphql=True,
        )
        nodes = (payload.get("data") or {}).get("nodes") or []
        return [node for node in nodes if node]

    # ── Transport ──────────────────────────────────────────────────────

    async def _send(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        payload, _ = await self._send_with_response(method, url, **kwargs)
        return payload

    async def _send_with_response(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        graphql: bool = False,
    ) -> tuple[dict[str, Any], httpx.Response]:
        async for attempt in self._retrying():
            with attempt:
                response = await self._request_once(method, url, params=params, json=json)
                payload = _decode(response)
                if graphql:
                    _raise_for_graphql_errors(payload)
        await self._cooldown_if_near_limit(response, payload)
        return payload, response

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=self.headers, params=params, json=json)
        except httpx.TransportError as exc:
            raise TransientUpstreamError(f"{method} {url} failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimited(
                f"HTTP 429 from {url}",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code in (401, 403):
            raise UpstreamAuthError(f"HTTP {response.status_code}: store rejected the access token")
        if response.status_code >= 400:
            raise TransientUpstreamError(
                f"HTTP {response.status_code} from {url}",
                status_code=response.status_code,
            )
        return response

    # ── Retry policy ───────────────────────────────────────────────────

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type((RateLimited, TransientUpstreamError)),
            stop=self._should_stop,
            wait=self._wait_seconds,
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _should_stop(self, retry_state: RetryCallState) -> bool:
        exc = retry_state.outcome.exception()
        if isinstance(exc, RateLimited):
            return retry_state.attempt_number > self.settings.shopify_rate_limit_max_retries
        return retry_state.attempt_number > self.settings.shopify_transient_max_retries

    def _wait_seconds(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception()
        if isinstance(exc, RateLimited):
            if exc.retry_after is not None:
                return exc.retry_after
            return self.settings.shopify_base_delay_seconds * 2 ** (retry_state.attempt_number - 1)
        return self.settings.shopify_transient_delay_seconds

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()
        self.logger.warning(
            "shopify.request.retrying",
            attempt=retry_state.attempt_number,
            wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    async def _cooldown_if_near_limit(self, response: httpx.Response, payload: dict[str, Any]) -> None:
        usage = parse_call_limit(response.headers.get(CALL_LIMIT_HEADER))
        if usage is None:
            usage = graphql_usage(payload)
        if usage is not None and usage > self.settings.shopify_usage_threshold:
            self.logger.info(
                "shopify.rate_limit.cooldown",
                usage=round(usage, 3),
                cooldown_seconds=self.settings.shopify_cooldown_seconds,
            )
            await self._sleep(self.settings.shopify_cooldown_seconds)


# ── Response helpers ──────────────────────────────────────────────────────


def _decode(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise TransientUpstreamError(f"Non-JSON response from {response.request.url}") from exc
    if not isinstance(payload, dict):
        raise TransientUpstreamError(f"Unexpected payload type {type(payload).__name__}")
    return payload


def _raise_for_graphql_errors(payload: dict[str, Any]) -> None:
    errors = payload.get("errors")
    if not errors:
        return
    if isinstance(errors, str):
        raise TransientUpstreamError(f"GraphQL error: {errors}")

    codes = {(err.get("extensions") or {}).get("code") for err in errors if isinstance(err, dict)}
    if "THROTTLED" in codes:
        raise RateLimited("GraphQL query throttled", retry_after=graphql_retry_after(payload))
    if "ACCESS_DENIED" in codes:
        raise UpstreamAuthError("GraphQL access denied")
    messages = "; ".join(str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors)
    raise TransientUpstreamError(f"GraphQL errors: {messages}")


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def parse_call_limit(value: str | None) -> float | None:
    """Usage ratio from an "X-Shopify-Shop-Api-Call-Limit: 32/40" header."""
    if not value or "/" not in value:
        return None
    used, _, limit = value.partition("/")
    try:
        used_n, limit_n = float(used), float(limit)
    except ValueError:
        return None
    if limit_n <= 0:
        return None
    return used_n / limit_n


def _throttle_status(payload: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    cost = (payload.get("extensions") or {}).get("cost") or {}
    return cost, cost.get("throttleStatus") or {}


def graphql_usage(payload: dict[str, Any]) -> float | None:
    _, status = _throttle_status(payload)
    maximum = status.get("maximumAvailable")
    available = status.get("currentlyAvailable")
    if not maximum or available is None:
        return None
    return 1.0 - float(available) / float(maximum)


def graphql_retry_after(payload: dict[str, Any]) -> float | None:
    """Seconds until the query-cost bucket refills enough for the request."""
    cost, status = _throttle_status(payload)
    requested = cost.get("requestedQueryCost")
    available = status.get("currentlyAvailable")
    restore_rate = status.get("restoreRate")
    if requested is None or available is None or not restore_rate:
        return None
    return max(0.0, (float(requested) - float(available)) / float(restore_rate))


# ── Value helpers ─────────────────────────────────────────────────────────


def format_timestamp(value: datetime) -> str:
    """Render a naive-UTC (or aware) datetime the way the Admin API expects."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 upstream timestamp into naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise MalformedRecord(f"Unparseable timestamp: {value!r}") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def variant_gid(variant_id: str) -> str:
    return variant_id if variant_id.startswith("gid://") else f"{VARIANT_GID_PREFIX}{variant_id}"


def gid_tail(gid: str | None) -> str | None:
    """'gid://shopify/ProductVariant/123' -> '123'."""
    if not gid:
        return None
    return str(gid).rsplit("/", 1)[-1] or None


def custom_variant_key(order_id: str, position: int) -> str:
    """Deterministic stand-in key for line items without a catalog variant."""
    return f"custom:{order_id}:{position}"


def _blank_to_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _money(value: Any, *, field_name: str) -> float:
    if value in (None, ""):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise MalformedRecord(f"{field_name} is not a number: {value!r}") from exc


def _optional_money(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _optional_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


# ── Mapping ───────────────────────────────────────────────────────────────


def map_order(order: dict[str, Any]) -> dict[str, Any]:
    """Map a Shopify REST order to an `orders` row."""
    order_id = _blank_to_none(order.get("id"))
    if order_id is None:
        raise MalformedRecord("Order is missing its id")

    updated_at = parse_timestamp(order.get("updated_at"))
    placed_at = parse_timestamp(order.get("created_at"))
    if updated_at is None and placed_at is None:
        raise MalformedRecord(f"Order {order_id} has no timestamps")

    customer = order.get("customer") or {}
    customer_id = _blank_to_none(customer.get("id"))
    email = order.get("email") or order.get("contact_email") or customer.get("email")
    phone = order.get("phone") or customer.get("phone")

    return {
        "order_id": order_id,
        "order_name": _blank_to_none(order.get("name")),
        "customer_id": customer_id,
        "contact_hash": hash_contact(email) or hash_contact(phone),
        "currency": _blank_to_none(order.get("currency")),
        "subtotal_price": _money(order.get("subtotal_price"), field_name="subtotal_price"),
        "total_price": _money(order.get("total_price"), field_name="total_price"),
        "total_tax": _money(order.get("total_tax"), field_name="total_tax"),
        "total_discounts": _money(order.get("total_discounts"), field_name="total_discounts"),
        "financial_status": _blank_to_none(order.get("financial_status")),
        "fulfillment_status": _blank_to_none(order.get("fulfillment_status")),
        "placed_at": placed_at or updated_at,
        "upstream_updated_at": updated_at or placed_at,
        "cancelled_at": parse_timestamp(order.get("cancelled_at")),
    }


def map_line_item(order_id: str, position: int, item: dict[str, Any]) -> dict[str, Any]:
    """Map one entry of `order["line_items"]` to an `order_line_items` row."""
    quantity = _optional_int(item.get("quantity"))
    if quantity is None or quantity <= 0:
        raise MalformedRecord(f"Line {position} of order {order_id} has quantity {item.get('quantity')!r}")
    price = _money(item.get("price"), field_name="price")
    if price < 0:
        raise MalformedRecord(f"Line {position} of order {order_id} has negative price {price}")

    variant_id = _blank_to_none(item.get("variant_id"))
    return {
        "order_id": order_id,
        "variant_key": variant_id or custom_variant_key(order_id, position),
        "variant_id": variant_id,
        "product_id": _blank_to_none(item.get("product_id")),
        "position": position,
        "upstream_line_id": _blank_to_none(item.get("id")),
        "title": _blank_to_none(item.get("title")),
        "sku": _blank_to_none(item.get("sku")),
        "quantity": quantity,
        "price": price,
        "total_discount": _money(item.get("total_discount"), field_name="total_discount"),
    }


def map_variant_node(node: dict[str, Any]) -> dict[str, Any]:
    """
    Map a GraphQL ProductVariant node to a `product_variants` row.

    Classification attributes (vendor, distributor, tags) that are missing
    or blank map to None so the upsert clears stale local values.
    """
    variant_id = gid_tail(node.get("id"))
    if variant_id is None:
        raise MalformedRecord("Variant node is missing its id")

    product = node.get("product") or {}
    inventory_item = node.get("inventoryItem") or {}
    unit_cost = (inventory_item.get("unitCost") or {}).get("amount")
    distributor = (node.get("distributor") or {}).get("value")
    tags = product.get("tags")
    if isinstance(tags, list):
        tags = ", ".join(t.strip() for t in tags if t and t.strip())

    return {
        "variant_id": variant_id,
        "product_id": gid_tail(product.get("id")),
        "sku": _blank_to_none(node.get("sku")),
        "title": _blank_to_none(node.get("title")),
        "product_title": _blank_to_none(product.get("title")),
        "price": _optional_money(node.get("price")),
        "cost": _optional_money(unit_cost),
        "stock_quantity": _optional_int(node.get("inventoryQuantity")),
        "vendor": _blank_to_none(product.get("vendor")),
        "distributor": _blank_to_none(distributor),
        "tags": _blank_to_none(tags),
    }
