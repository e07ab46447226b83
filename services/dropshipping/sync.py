"""
Supplier Order Sync
===================
Maquina de estados de las ordenes a proveedores:

    PENDING -> SENT -> {SHIPPED, FAILED} -> {DELIVERED, CANCELLED}

El mapeo de estados del proveedor es puro (``check_order_updates``); el
servicio ``SupplierOrderSync`` hace el I/O: envia ordenes, consulta estados,
aplica los cambios, propaga tracking a los items y avisa al cliente.
"""
from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from flask import current_app

from extensions import db
from models import DropshippingSettings, Order, Supplier, SupplierOrder
from services.base import (
    BaseService,
    ExternalServiceException,
    NotFoundException,
    RateLimitedException,
    ServiceException,
    ValidationException,
)
from services.dropshipping.clients import (
    DEFAULT_TIMEOUT,
    OrderLine,
    StatusReport,
    SupplierApiClient,
    SupplierOrderPayload,
    create_supplier_client,
)
from services.dropshipping.rate_limit import DATA, SupplierRateLimiter
from services.dropshipping.token_cache import TokenCache
from services.notifications import ShipmentNotifier

logger = logging.getLogger('dropshipping')

TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    SupplierOrder.PENDING: (SupplierOrder.SENT,),
    SupplierOrder.SENT: (SupplierOrder.SHIPPED, SupplierOrder.FAILED),
    SupplierOrder.SHIPPED: (SupplierOrder.DELIVERED, SupplierOrder.CANCELLED),
    SupplierOrder.FAILED: (SupplierOrder.DELIVERED, SupplierOrder.CANCELLED),
    SupplierOrder.DELIVERED: (),
    SupplierOrder.CANCELLED: (),
}

POLLED_STATES = (SupplierOrder.SENT, SupplierOrder.SHIPPED, SupplierOrder.FAILED)
FULFILLED_STATES = (SupplierOrder.SHIPPED, SupplierOrder.DELIVERED)
TRACKING_FIELDS = ('tracking_number', 'tracking_url', 'carrier', 'estimated_delivery')

# longest local wait for a data window before the call is deferred instead
DEFAULT_MAX_WAIT = 2.0

CENTS = Decimal('0.01')


def plan_transition(current: str, target: str) -> Optional[Tuple[str, ...]]:
    """Shortest legal path from ``current`` to ``target``, excluding ``current``.

    Returns ``()`` when already there and ``None`` when ``target`` is not
    reachable (backwards moves, terminal states, unknown states).
    """
    if current not in TRANSITIONS or target not in TRANSITIONS:
        return None
    if current == target:
        return ()

    queue = deque([(current, ())])
    seen = {current}
    while queue:
        state, path = queue.popleft()
        for following in TRANSITIONS[state]:
            if following in seen:
                continue
            next_path = path + (following,)
            if following == target:
                return next_path
            seen.add(following)
            queue.append((following, next_path))
    return None


@dataclass(frozen=True)
class OrderSnapshot:
    id: int
    status: str
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None

    @classmethod
    def from_model(cls, supplier_order: SupplierOrder) -> 'OrderSnapshot':
        return cls(
            id=supplier_order.id,
            status=supplier_order.status,
            tracking_number=supplier_order.tracking_number,
            tracking_url=supplier_order.tracking_url,
            carrier=supplier_order.carrier,
            estimated_delivery=supplier_order.estimated_delivery,
        )


@dataclass
class OrderUpdate:
    supplier_order_id: int
    previous_status: str
    status: str
    path: Tuple[str, ...] = ()
    tracking: Dict[str, Any] = field(default_factory=dict)
    checked_at: Optional[datetime] = None

    @property
    def status_changed(self) -> bool:
        return bool(self.path)

    @property
    def shipped(self) -> bool:
        return SupplierOrder.SHIPPED in self.path

    def to_dict(self) -> Dict[str, Any]:
        return {
            'supplier_order_id': self.supplier_order_id,
            'previous_status': self.previous_status,
            'status': self.status,
            'path': list(self.path),
            'tracking': {
                key: value.isoformat() if isinstance(value, datetime) else value
                for key, value in self.tracking.items()
            },
        }


def check_order_updates(
    orders: Iterable[OrderSnapshot],
    reports: Mapping[int, StatusReport],
    now: datetime,
) -> List[OrderUpdate]:
    """Map supplier reports onto local orders.

    Orders outside the polled states or without a report are ignored.
    Unmapped supplier statuses and illegal moves leave the status alone but
    still carry new tracking data. Orders with nothing new produce no update.
    """
    updates = []
    for order in orders:
        if order.status not in POLLED_STATES:
            continue
        report = reports.get(order.id)
        if report is None:
            continue

        path: Tuple[str, ...] = ()
        if report.status is None:
            logger.warning(
                "Supplier order %s: unmapped supplier status %r, keeping %s",
                order.id, report.raw_status, order.status,
            )
        else:
            planned = plan_transition(order.status, report.status)
            if planned is None:
                logger.warning(
                    "Supplier order %s: illegal transition %s -> %s (supplier status %r) ignored",
                    order.id, order.status, report.status, report.raw_status,
                )
            else:
                path = planned

        tracking = {}
        for name in TRACKING_FIELDS:
            value = getattr(report, name)
            if value not in (None, '') and value != getattr(order, name):
                tracking[name] = value

        if not path and not tracking:
            continue
        updates.append(
            OrderUpdate(
                supplier_order_id=order.id,
                previous_status=order.status,
                status=path[-1] if path else order.status,
                path=path,
                tracking=tracking,
                checked_at=now,
            )
        )
    return updates


@dataclass
class SendResult:
    supplier_order_id: int
    status: str
    external_order_id: Optional[str] = None
    deferred: bool = False
    retry_after: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'supplier_order_id': self.supplier_order_id,
            'status': self.status,
            'external_order_id': self.external_order_id,
            'deferred': self.deferred,
            'retry_after': self.retry_after,
        }


@dataclass
class PollResult:
    checked: int = 0
    updates: List[OrderUpdate] = field(default_factory=list)
    deferred: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    notified: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'checked': self.checked,
            'updated': [update.to_dict() for update in self.updates],
            'deferred': self.deferred,
            'errors': self.errors,
            'notified': self.notified,
        }


class SupplierOrderSync(BaseService[SupplierOrder]):
    """Envio y seguimiento de ordenes a proveedores dropshipping."""

    model_class = SupplierOrder

    def __init__(
        self,
        rate_limiter: Optional[SupplierRateLimiter] = None,
        token_cache: Optional[TokenCache] = None,
        notifier: Optional[ShipmentNotifier] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client_factory: Callable[..., SupplierApiClient] = create_supplier_client,
        max_wait: float = DEFAULT_MAX_WAIT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__()
        self.rate_limiter = rate_limiter or SupplierRateLimiter()
        self.token_cache = token_cache
        self.notifier = notifier or ShipmentNotifier()
        self.timeout = timeout
        self.client_factory = client_factory
        self.max_wait = max_wait
        self._sleep = sleep

    def _client(self, supplier: Supplier) -> SupplierApiClient:
        return self.client_factory(
            supplier,
            rate_limiter=self.rate_limiter,
            token_cache=self.token_cache,
            timeout=self.timeout,
        )

    def test_supplier_connection(self, supplier_id: int) -> bool:
        """Check a supplier's credentials against its API."""
        supplier = db.session.get(Supplier, supplier_id)
        if supplier is None:
            raise NotFoundException('Supplier', supplier_id)
        if not supplier.has_credentials:
            raise ValidationException(
                f"Supplier {supplier.name} has no API credentials configured", details={'supplier_id': supplier.id}
            )
        client = self._client(supplier)
        try:
            return client.test_connection()
        finally:
            client.close()

    # ===== Creation =====

    def create_supplier_orders(self, order_id: int) -> List[Dict[str, Any]]:
        """Group the order's supplier-sourced items into one PENDING order per supplier.

        Items already attached to a supplier order are left alone, so the
        call is safe to repeat. Sends the new orders right away when
        ``auto_send_orders`` is enabled and the supplier has credentials.
        """
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFoundException('Order', order_id)

        settings = DropshippingSettings.get_or_create()
        cost_ratio = Decimal(settings.default_cost_ratio)

        grouped = defaultdict(list)
        for item in order.items:
            if item.product is None or not item.product.supplier_id or item.supplier_order_id:
                continue
            grouped[item.product.supplier_id].append(item)

        results = []
        for supplier_id, items in sorted(grouped.items()):
            supplier = db.session.get(Supplier, supplier_id)
            if supplier is None:
                continue
            if not supplier.is_active:
                logger.info("Supplier %s is inactive, skipping order %s", supplier.name, order.order_number)
                continue

            items_cost = sum(
                (
                    (Decimal(item.product.cost_price) if item.product.cost_price is not None
                     else Decimal(item.price) * cost_ratio) * item.quantity
                    for item in items
                ),
                Decimal('0'),
            )
            shipping_cost = Decimal(supplier.average_shipping or 0)
            supplier_order = SupplierOrder(
                supplier_id=supplier.id,
                order_id=order.id,
                status=SupplierOrder.PENDING,
                total_cost=(items_cost + shipping_cost).quantize(CENTS, rounding=ROUND_HALF_UP),
                shipping_cost=shipping_cost,
                currency=order.currency,
            )
            db.session.add(supplier_order)
            db.session.flush()
            for item in items:
                item.supplier_order_id = supplier_order.id
                item.supplier_order_status = SupplierOrder.PENDING
            self.commit()
            logger.info(
                "Created supplier order %s for order %s (supplier=%s, items=%s, cost=%s)",
                supplier_order.id, order.order_number, supplier.id, len(items), supplier_order.total_cost,
            )

            result = {
                'supplier_id': supplier.id,
                'supplier_name': supplier.name,
                'supplier_order_id': supplier_order.id,
                'item_count': len(items),
                'success': True,
                'sent': False,
            }
            if settings.auto_send_orders and supplier.has_credentials:
                try:
                    sent = self.send_order(supplier_order.id)
                    result['sent'] = not sent.deferred
                    result['deferred'] = sent.deferred
                except ServiceException as e:
                    result['success'] = False
                    result['error'] = e.message
            results.append(result)
        return results

    # ===== Submission =====

    def _build_payload(self, supplier_order: SupplierOrder) -> SupplierOrderPayload:
        order = supplier_order.order
        address = dict(order.shipping_address or {})
        address.setdefault('name', order.customer_name)
        address.setdefault('email', order.customer_email)
        return SupplierOrderPayload(
            supplier_order_id=supplier_order.id,
            order_number=order.order_number,
            shipping_address=address,
            customer_email=order.customer_email,
            items=[
                OrderLine(
                    supplier_product_id=item.product.supplier_product_id or str(item.product_id),
                    quantity=item.quantity,
                    sku=item.product.sku,
                )
                for item in supplier_order.items
            ],
        )

    def _record_failure(self, supplier_order: SupplierOrder, message: str) -> None:
        supplier_order.error_message = message
        self.commit()
        self._log_error(f"Supplier order {supplier_order.id} not sent: {message}")
        logger.error("Supplier order %s not sent: %s", supplier_order.id, message)

    def send_order(self, supplier_order_id: int) -> SendResult:
        """PENDING -> SENT through the supplier API.

        A rate-limited call is not attempted and comes back as a deferred
        result. Failures are stored on the order, which stays PENDING, and
        re-raised to the caller.
        """
        supplier_order = self.get_by_id_or_fail(supplier_order_id)
        if supplier_order.status != SupplierOrder.PENDING:
            raise ValidationException(
                f"Supplier order {supplier_order_id} is {supplier_order.status}; only PENDING orders can be sent",
                details={'supplier_order_id': supplier_order_id, 'status': supplier_order.status},
            )

        supplier = supplier_order.supplier
        if not supplier.has_credentials:
            message = f"Supplier {supplier.name} has no API credentials configured"
            self._record_failure(supplier_order, message)
            raise ValidationException(message, details={'supplier_id': supplier.id})
        if not supplier.is_active:
            message = f"Supplier {supplier.name} is inactive"
            self._record_failure(supplier_order, message)
            raise ValidationException(message, details={'supplier_id': supplier.id})

        payload = self._build_payload(supplier_order)
        client = self._client(supplier)
        try:
            result = client.submit_order(payload)
        except RateLimitedException as e:
            logger.info(
                "Supplier order %s not sent: %s calls for supplier %s deferred %.1fs",
                supplier_order.id, e.kind, supplier.id, e.retry_after,
            )
            return SendResult(
                supplier_order_id=supplier_order.id,
                status=supplier_order.status,
                deferred=True,
                retry_after=e.retry_after,
            )
        except ServiceException as e:
            self._record_failure(supplier_order, e.message)
            raise
        finally:
            client.close()

        if not result.success:
            self._record_failure(supplier_order, result.error or 'Order rejected by supplier')
            raise ExternalServiceException(client.name, result.error or 'Order rejected by supplier')

        supplier_order.status = SupplierOrder.SENT
        supplier_order.external_order_id = result.external_order_id
        supplier_order.error_message = None
        for item in supplier_order.items:
            item.supplier_order_status = SupplierOrder.SENT
        self.commit()
        logger.info(
            "Supplier order %s sent to %s as %s", supplier_order.id, supplier.name, result.external_order_id
        )
        return SendResult(
            supplier_order_id=supplier_order.id,
            status=supplier_order.status,
            external_order_id=supplier_order.external_order_id,
        )

    # ===== Polling =====

    def _fetch_status(self, client: SupplierApiClient, supplier_order: SupplierOrder) -> StatusReport:
        try:
            return client.get_order_status(supplier_order.external_order_id)
        except RateLimitedException as e:
            if e.kind != DATA or e.retry_after > self.max_wait:
                raise
            self._sleep(e.retry_after)
            return client.get_order_status(supplier_order.external_order_id)

    def _apply_update(self, supplier_order: SupplierOrder, update: OrderUpdate) -> None:
        for name, value in update.tracking.items():
            setattr(supplier_order, name, value)
        if update.status_changed:
            supplier_order.status = update.status
            if update.status != SupplierOrder.FAILED:
                supplier_order.error_message = None
        supplier_order.updated_at = update.checked_at or datetime.utcnow()

        for item in supplier_order.items:
            item.supplier_order_status = supplier_order.status
            item.supplier_tracking_number = supplier_order.tracking_number

        if update.status_changed:
            self._refresh_fulfillment(supplier_order.order)

    @staticmethod
    def _refresh_fulfillment(order: Order) -> None:
        items = list(order.items)
        fulfilled = [
            item for item in items
            if item.supplier_order_id and item.supplier_order_status in FULFILLED_STATES
        ]
        if items and len(fulfilled) == len(items):
            order.fulfillment_status = Order.FULFILLMENT_FULFILLED
        elif fulfilled:
            order.fulfillment_status = Order.FULFILLMENT_PARTIAL

    def _notify(self, supplier_order: SupplierOrder) -> bool:
        try:
            return bool(self.notifier.notify_shipped(supplier_order))
        except Exception:  # notification failures never stop the sync
            logger.exception("Shipment notification failed for supplier order %s", supplier_order.id)
            return False

    def poll(self, now: Optional[datetime] = None) -> PollResult:
        """One polling pass over SENT/SHIPPED/FAILED orders of active suppliers.

        A rate-limited supplier is recorded as deferred together with the
        orders that were not queried; the rest of the run continues with the
        next supplier. Any other service error is stored on its order and
        reported; the remaining orders are still checked.
        """
        now = now or datetime.utcnow()
        result = PollResult()
        settings = DropshippingSettings.get_or_create()

        suppliers = Supplier.query.filter_by(status=Supplier.STATUS_ACTIVE).order_by(Supplier.id).all()
        for supplier in suppliers:
            if not supplier.has_credentials:
                continue
            orders = (
                SupplierOrder.query.filter(
                    SupplierOrder.supplier_id == supplier.id,
                    SupplierOrder.status.in_(POLLED_STATES),
                    SupplierOrder.external_order_id.isnot(None),
                )
                .order_by(SupplierOrder.id)
                .all()
            )
            if not orders:
                continue

            reports: Dict[int, StatusReport] = {}
            client = self._client(supplier)
            try:
                for index, supplier_order in enumerate(orders):
                    try:
                        reports[supplier_order.id] = self._fetch_status(client, supplier_order)
                    except RateLimitedException as e:
                        skipped = [pending.id for pending in orders[index:]]
                        result.deferred.append({
                            'supplier_id': supplier.id,
                            'kind': e.kind,
                            'retry_after': e.retry_after,
                            'supplier_order_ids': skipped,
                        })
                        logger.info(
                            "Polling of supplier %s deferred %.1fs; %s order(s) not checked",
                            supplier.id, e.retry_after, len(skipped),
                        )
                        break
                    except ServiceException as e:
                        supplier_order.error_message = e.message
                        supplier_order.last_checked_at = now
                        result.errors.append({'supplier_order_id': supplier_order.id, 'error': e.message})
                        logger.error("Status check failed for supplier order %s: %s", supplier_order.id, e.message)
                        continue
                    supplier_order.last_checked_at = now
                    result.checked += 1
            finally:
                client.close()

            by_id = {supplier_order.id: supplier_order for supplier_order in orders}
            snapshots = [OrderSnapshot.from_model(by_id[order_id]) for order_id in reports]
            updates = check_order_updates(snapshots, reports, now)
            for update in updates:
                self._apply_update(by_id[update.supplier_order_id], update)
                if update.status_changed:
                    logger.info(
                        "Supplier order %s: %s -> %s",
                        update.supplier_order_id, update.previous_status, " -> ".join(update.path),
                    )
            self.commit()
            result.updates.extend(updates)

            if settings.notify_customer_on_shipment:
                for update in updates:
                    if update.shipped and self._notify(by_id[update.supplier_order_id]):
                        result.notified.append(update.supplier_order_id)

        self._log_info(
            f"Poll finished: checked={result.checked} updated={len(result.updates)} "
            f"deferred={len(result.deferred)} errors={len(result.errors)}"
        )
        return result


def get_supplier_sync(app=None) -> SupplierOrderSync:
    """Build a sync service wired to the app's shared rate limiter and token cache."""
    app = app or current_app
    return SupplierOrderSync(
        rate_limiter=app.extensions.get('supplier_rate_limiter'),
        token_cache=app.extensions.get('supplier_token_cache'),
        notifier=ShipmentNotifier.from_config(app.config),
        timeout=app.config.get('SUPPLIER_HTTP_TIMEOUT', DEFAULT_TIMEOUT),
    )
