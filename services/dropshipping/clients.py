"""Supplier API clients.

Every call goes through ``requests`` with an explicit timeout and is never
retried here: timeouts, network errors and non-2xx answers raise
``ExternalServiceException``; HTTP 429 (or a supplier-specific throttle code)
raises ``RateLimitedException`` and pushes the supplier's window out.
Scheduling retries is the caller's job.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from models.suppliers import SupplierOrder
from services.base import ExternalServiceException, RateLimitedException, ServiceException, ValidationException
from services.dropshipping.rate_limit import AUTH, DATA, SupplierRateLimiter
from services.dropshipping.token_cache import InMemoryTokenCache, TokenCache, TokenData

logger = logging.getLogger('dropshipping')

DEFAULT_TIMEOUT = 15.0


@dataclass
class OrderLine:
    supplier_product_id: str
    quantity: int
    sku: Optional[str] = None


@dataclass
class SupplierOrderPayload:
    supplier_order_id: int
    order_number: str
    shipping_address: Dict[str, Any]
    items: List[OrderLine] = field(default_factory=list)
    customer_email: Optional[str] = None


@dataclass
class SubmitResult:
    success: bool
    external_order_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class StatusReport:
    """Supplier answer for one order; ``status`` is the local state or None if unmapped."""

    status: Optional[str]
    raw_status: str = ''
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


@dataclass
class AuthToken:
    token: str
    expires_at: float


def _parse_datetime(value) -> Optional[datetime]:
    """Naive UTC datetime from an ISO string or an epoch timestamp (s or ms)."""
    if value in (None, ''):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10 ** 11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
    except ValueError:
        logger.warning("Unparseable supplier date %r", value)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_retry_after(value, default: float) -> float:
    if value is None:
        return default
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return default


class SupplierApiClient:
    """Generic REST supplier: bearer API key, ``orders`` resource."""

    name = 'generic'
    HEALTH_PATH = 'status'

    STATUS_MAP = {
        'pending': SupplierOrder.SENT,
        'processing': SupplierOrder.SENT,
        'confirmed': SupplierOrder.SENT,
        'shipped': SupplierOrder.SHIPPED,
        'in_transit': SupplierOrder.SHIPPED,
        'delivered': SupplierOrder.DELIVERED,
        'completed': SupplierOrder.DELIVERED,
        'failed': SupplierOrder.FAILED,
        'error': SupplierOrder.FAILED,
        'exception': SupplierOrder.FAILED,
        'cancelled': SupplierOrder.CANCELLED,
        'canceled': SupplierOrder.CANCELLED,
    }

    def __init__(
        self,
        supplier_id,
        api_endpoint: str,
        api_key: str,
        api_email: Optional[str] = None,
        rate_limiter: Optional[SupplierRateLimiter] = None,
        token_cache: Optional[TokenCache] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not api_endpoint or not api_key:
            raise ValidationException(
                f"Supplier {supplier_id} has no API credentials configured", details={'supplier_id': supplier_id}
            )
        self.supplier_id = supplier_id
        self.api_endpoint = api_endpoint.rstrip('/') + '/'
        self.api_key = api_key
        self.api_email = api_email
        self.rate_limiter = rate_limiter
        self.token_cache = token_cache
        self.timeout = timeout
        self.session = session or requests.Session()
        self._clock = clock

    # ===== HTTP =====

    def _url(self, path: str) -> str:
        return self.api_endpoint + path.lstrip('/')

    def _request(
        self,
        method: str,
        path: str,
        kind: str = DATA,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        rate_limited: bool = True,
    ) -> Dict[str, Any]:
        if rate_limited and self.rate_limiter is not None:
            self.rate_limiter.acquire(self.supplier_id, kind)

        url = self._url(path)
        try:
            response = self.session.request(
                method, url, headers=headers, json=json, params=params, timeout=self.timeout
            )
        except requests.Timeout:
            raise ExternalServiceException(self.name, f"{method} {path} timed out after {self.timeout}s")
        except requests.RequestException as e:
            raise ExternalServiceException(self.name, f"{method} {path} failed: {e}")

        if response.status_code == 429:
            interval = 300.0 if kind == AUTH else 1.0
            retry_after = _parse_retry_after(response.headers.get('Retry-After'), interval)
            if self.rate_limiter is not None:
                self.rate_limiter.defer(self.supplier_id, kind, retry_after)
            raise RateLimitedException(self.supplier_id, kind, retry_after)

        if not 200 <= response.status_code < 300:
            raise ExternalServiceException(
                self.name,
                f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError:
            return {}

    def _auth_headers(self) -> Dict[str, str]:
        return {'Authorization': f'Bearer {self.api_key}'}

    # ===== Contract =====

    def map_status(self, raw_status) -> Optional[str]:
        return self.STATUS_MAP.get(str(raw_status or '').strip().lower())

    def authenticate(self) -> AuthToken:
        # static API key, never expires on our side
        return AuthToken(token=self.api_key, expires_at=float('inf'))

    def build_order_body(self, payload: SupplierOrderPayload) -> Dict[str, Any]:
        return {
            'order_id': payload.supplier_order_id,
            'customer_order_id': payload.order_number,
            'shipping_address': payload.shipping_address,
            'items': [
                {'product_id': line.supplier_product_id, 'quantity': line.quantity, 'sku': line.sku}
                for line in payload.items
            ],
        }

    def submit_order(self, payload: SupplierOrderPayload) -> SubmitResult:
        data = self._request('POST', 'orders', headers=self._auth_headers(), json=self.build_order_body(payload))
        if data.get('success') is False:
            return SubmitResult(success=False, error=data.get('message') or data.get('error') or 'Order rejected')
        external_id = data.get('id') or data.get('order_id') or data.get('external_id')
        if not external_id:
            return SubmitResult(success=False, error='Supplier response did not include an order id')
        return SubmitResult(success=True, external_order_id=str(external_id))

    def get_order_status(self, external_order_id: str) -> StatusReport:
        data = self._request('GET', f'orders/{external_order_id}', headers=self._auth_headers())
        raw_status = data.get('status') or 'processing'
        return StatusReport(
            status=self.map_status(raw_status),
            raw_status=str(raw_status),
            tracking_number=data.get('tracking_number'),
            tracking_url=data.get('tracking_url'),
            carrier=data.get('carrier'),
            estimated_delivery=_parse_datetime(data.get('estimated_delivery')),
        )

    def _check_connection(self) -> None:
        self._request('GET', self.HEALTH_PATH, headers=self._auth_headers())

    def test_connection(self) -> bool:
        """True when the supplier accepts our credentials.

        Rate limits are re-raised so the caller can show the wait; any other
        service error means the connection is not usable.
        """
        try:
            self._check_connection()
        except RateLimitedException:
            raise
        except ServiceException as e:
            logger.warning("Connection test failed for supplier %s: %s", self.supplier_id, e.message)
            return False
        logger.info("Connection test succeeded for supplier %s", self.supplier_id)
        return True

    def close(self) -> None:
        self.session.close()


GenericSupplierApiClient = SupplierApiClient


class CJDropshippingClient(SupplierApiClient):
    """CJ Dropshipping: e-mail + API key login, cached access/refresh tokens."""

    name = 'cjdropshipping'

    RATE_LIMIT_CODE = 1600200
    AUTH_RETRY_AFTER = 300.0
    ACCESS_TOKEN_DAYS = 15
    REFRESH_TOKEN_DAYS = 180

    STATUS_MAP = {
        'PENDING': SupplierOrder.SENT,
        'PROCESSING': SupplierOrder.SENT,
        'PROCESSED': SupplierOrder.SENT,
        'DISPATCHED': SupplierOrder.SHIPPED,
        'SHIPPED': SupplierOrder.SHIPPED,
        'COMPLETED': SupplierOrder.DELIVERED,
        'DELIVERED': SupplierOrder.DELIVERED,
        'CLOSED': SupplierOrder.CANCELLED,
        'CANCELLED': SupplierOrder.CANCELLED,
    }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        if self.token_cache is None:
            self.token_cache = InMemoryTokenCache(clock=self._clock)

    def map_status(self, raw_status) -> Optional[str]:
        return self.STATUS_MAP.get(str(raw_status or '').strip().upper())

    @staticmethod
    def _is_success(data: Dict[str, Any]) -> bool:
        return data.get('result') is True or (data.get('result') is None and data.get('code') == 200)

    def _store_tokens(self, data: Dict[str, Any], previous: Optional[TokenData] = None) -> AuthToken:
        body = data.get('data') or {}
        now = self._clock()
        access_expiry = _parse_datetime(body.get('accessTokenExpiryDate'))
        refresh_expiry = _parse_datetime(body.get('refreshTokenExpiryDate'))
        access_expires_at = (
            access_expiry.replace(tzinfo=timezone.utc).timestamp() if access_expiry
            else now + timedelta(days=self.ACCESS_TOKEN_DAYS).total_seconds()
        )
        refresh_token = body.get('refreshToken')
        if refresh_expiry:
            refresh_expires_at = refresh_expiry.replace(tzinfo=timezone.utc).timestamp()
        elif not refresh_token and previous is not None and previous.refresh_token:
            # refresh answers may omit the refresh token; the old one stays valid
            refresh_token = previous.refresh_token
            refresh_expires_at = previous.refresh_expires_at
        else:
            refresh_expires_at = now + timedelta(days=self.REFRESH_TOKEN_DAYS).total_seconds()
        self.token_cache.store(
            self.supplier_id,
            body['accessToken'],
            access_expires_at,
            refresh_token=refresh_token,
            refresh_expires_at=refresh_expires_at,
            now=now,
        )
        return AuthToken(token=body['accessToken'], expires_at=access_expires_at)

    def _token_call(
        self,
        path: str,
        body: Dict[str, Any],
        rate_limited: bool = True,
        previous: Optional[TokenData] = None,
    ) -> AuthToken:
        data = self._request('POST', path, kind=AUTH, json=body, rate_limited=rate_limited)
        if data.get('code') == self.RATE_LIMIT_CODE:
            if self.rate_limiter is not None:
                self.rate_limiter.defer(self.supplier_id, AUTH, self.AUTH_RETRY_AFTER)
            raise RateLimitedException(self.supplier_id, AUTH, self.AUTH_RETRY_AFTER)
        if not data.get('result') or not (data.get('data') or {}).get('accessToken'):
            raise ExternalServiceException(
                self.name, f"Authentication failed: {data.get('message') or 'no access token returned'}"
            )
        return self._store_tokens(data, previous=previous)

    def authenticate(self) -> AuthToken:
        """Return a usable access token: cached, refreshed, or from a fresh login.

        Only the full login counts against the five-minute auth window; a
        token refresh is sent without claiming it, so a rejected refresh can
        still fall back to logging in.
        """
        cached = self.token_cache.load(self.supplier_id)
        if self.token_cache.get_access_token(self.supplier_id, now=self._clock()):
            return AuthToken(token=cached.access_token, expires_at=cached.access_expires_at)

        refresh_token = self.token_cache.get_refresh_token(self.supplier_id, now=self._clock())
        if refresh_token:
            try:
                return self._token_call(
                    'v1/authentication/refreshAccessToken',
                    {'refreshToken': refresh_token},
                    rate_limited=False,
                    previous=cached,
                )
            except ExternalServiceException as e:
                logger.warning("Token refresh failed for supplier %s, logging in again: %s", self.supplier_id, e)
                self.token_cache.invalidate(self.supplier_id)

        if not self.api_email:
            raise ValidationException(
                f"Supplier {self.supplier_id} needs an API e-mail to authenticate with CJ Dropshipping",
                details={'supplier_id': self.supplier_id},
            )
        return self._token_call(
            'v1/authentication/getAccessToken', {'email': self.api_email, 'password': self.api_key}
        )

    def _check_connection(self) -> None:
        self.authenticate()

    def _auth_headers(self) -> Dict[str, str]:
        return {'CJ-Access-Token': self.authenticate().token}

    def _data_request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            return self._request(method, path, headers=self._auth_headers(), **kwargs)
        except ExternalServiceException as e:
            if e.status_code == 401:
                self.token_cache.invalidate(self.supplier_id)
            raise

    def build_order_body(self, payload: SupplierOrderPayload) -> Dict[str, Any]:
        address = payload.shipping_address or {}
        return {
            'orderNumber': payload.order_number,
            'shippingAddress': {
                'name': address.get('name'),
                'phone': address.get('phone'),
                'email': address.get('email') or payload.customer_email,
                'address1': address.get('address1'),
                'address2': address.get('address2') or '',
                'city': address.get('city'),
                'province': address.get('state') or '',
                'country': address.get('country'),
                'zip': address.get('postal_code'),
            },
            'productList': [{'vid': line.supplier_product_id, 'quantity': line.quantity} for line in payload.items],
        }

    def submit_order(self, payload: SupplierOrderPayload) -> SubmitResult:
        data = self._data_request('POST', 'v1/shopping/order/create', json=self.build_order_body(payload))
        if not self._is_success(data):
            return SubmitResult(
                success=False,
                error=f"{data.get('message') or 'Unknown error'} (code {data.get('code')})",
            )
        body = data.get('data') or {}
        external_id = body.get('orderId') or body.get('id') or body.get('orderNo')
        if not external_id:
            return SubmitResult(success=False, error='CJ response did not include an order id')
        return SubmitResult(success=True, external_order_id=str(external_id))

    def get_order_status(self, external_order_id: str) -> StatusReport:
        data = self._data_request('GET', 'v1/shopping/order/getOrder', params={'orderId': external_order_id})
        if not self._is_success(data) or not data.get('data'):
            raise ExternalServiceException(
                self.name,
                f"Status query for {external_order_id} failed: {data.get('message') or 'Unknown error'} "
                f"(code {data.get('code')})",
            )
        details = data['data']
        logistics = details.get('logisticsInfo') or {}
        raw_status = str(details.get('orderStatus') or details.get('status') or '')
        return StatusReport(
            status=self.map_status(raw_status),
            raw_status=raw_status,
            tracking_number=details.get('trackingNumber') or details.get('trackingNo') or logistics.get('trackingNumber'),
            tracking_url=details.get('trackingUrl') or logistics.get('trackingUrl'),
            carrier=details.get('logisticsName') or logistics.get('logisticsName'),
            estimated_delivery=_parse_datetime(
                details.get('estimatedDeliveryTime') or details.get('estimatedDeliveryDate')
            ),
        )


class AliExpressClient(SupplierApiClient):
    name = 'aliexpress'
    HEALTH_PATH = 'ping'

    STATUS_MAP = {
        'PLACE_ORDER_SUCCESS': SupplierOrder.SENT,
        'WAIT_SELLER_SEND_GOODS': SupplierOrder.SENT,
        'WAIT_BUYER_ACCEPT_GOODS': SupplierOrder.SHIPPED,
        'WAIT_GROUP_SUCCESS': SupplierOrder.SHIPPED,
        'FINISH': SupplierOrder.DELIVERED,
        'IN_CANCEL': SupplierOrder.CANCELLED,
    }

    def map_status(self, raw_status) -> Optional[str]:
        return self.STATUS_MAP.get(str(raw_status or '').strip().upper())

    def _auth_headers(self) -> Dict[str, str]:
        return {'X-API-KEY': self.api_key}

    def build_order_body(self, payload: SupplierOrderPayload) -> Dict[str, Any]:
        address = payload.shipping_address or {}
        return {
            'out_order_id': payload.order_number,
            'logistic_address': {
                'contact_person': address.get('name'),
                'address': address.get('address1'),
                'address2': address.get('address2'),
                'city': address.get('city'),
                'province': address.get('state'),
                'zip': address.get('postal_code'),
                'country': address.get('country'),
                'phone_number': address.get('phone'),
            },
            'product_items': [
                {'product_id': line.supplier_product_id, 'product_count': line.quantity, 'sku_attr': line.sku}
                for line in payload.items
            ],
        }

    def submit_order(self, payload: SupplierOrderPayload) -> SubmitResult:
        data = self._request(
            'POST', 'drop/shipping/order/create', headers=self._auth_headers(), json=self.build_order_body(payload)
        )
        if str(data.get('code')) != '0':
            return SubmitResult(success=False, error=data.get('message') or f"AliExpress error code {data.get('code')}")
        external_id = (data.get('result') or {}).get('order_id')
        if not external_id:
            return SubmitResult(success=False, error='AliExpress response did not include an order id')
        return SubmitResult(success=True, external_order_id=str(external_id))

    def get_order_status(self, external_order_id: str) -> StatusReport:
        data = self._request(
            'GET', 'drop/shipping/order/get', headers=self._auth_headers(), params={'order_id': external_order_id}
        )
        result = data.get('result') or {}
        logistics = result.get('logistics_info') or {}
        raw_status = str(result.get('order_status') or '')
        return StatusReport(
            status=self.map_status(raw_status),
            raw_status=raw_status,
            tracking_number=logistics.get('logistics_no'),
            tracking_url=logistics.get('tracking_url'),
            carrier=logistics.get('logistics_service'),
        )


def create_supplier_client(
    supplier,
    rate_limiter: Optional[SupplierRateLimiter] = None,
    token_cache: Optional[TokenCache] = None,
    timeout: float = DEFAULT_TIMEOUT,
    session: Optional[requests.Session] = None,
) -> SupplierApiClient:
    """Pick the client class from the supplier's API endpoint."""
    endpoint = (supplier.api_endpoint or '').lower()
    if 'aliexpress' in endpoint:
        client_class = AliExpressClient
    elif 'cjdropshipping' in endpoint or 'cj-dropshipping' in endpoint:
        client_class = CJDropshippingClient
    else:
        client_class = GenericSupplierApiClient

    return client_class(
        supplier.id,
        supplier.api_endpoint,
        supplier.api_key,
        api_email=supplier.api_email,
        rate_limiter=rate_limiter,
        token_cache=token_cache,
        timeout=timeout,
        session=session,
    )
