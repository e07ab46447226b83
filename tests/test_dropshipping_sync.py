"""
Tests for supplier order creation, submission and status polling.
"""
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from extensions import db
from models import DropshippingSettings, Order, OrderItem, Supplier, SupplierOrder
from services.base import ExternalServiceException, NotFoundException, RateLimitedException, ValidationException
from services.dropshipping.clients import StatusReport, SubmitResult
from services.dropshipping.rate_limit import AUTH, DATA
from services.dropshipping.sync import (
    OrderSnapshot,
    SupplierOrderSync,
    check_order_updates,
    plan_transition,
)
from services.notifications import ShipmentNotifier


NOW = datetime(2024, 5, 20, 12, 0)


class FakeClient:
    """Stands in for a supplier API client; answers are queued per external id."""

    name = 'fake'

    def __init__(self):
        self.submit_answer = SubmitResult(success=True, external_order_id='EXT-1')
        self.statuses = {}
        self.submitted = []
        self.queried = []
        self.closed = 0
        self.connection_ok = True

    def submit_order(self, payload):
        self.submitted.append(payload)
        if isinstance(self.submit_answer, Exception):
            raise self.submit_answer
        return self.submit_answer

    def get_order_status(self, external_order_id):
        self.queried.append(external_order_id)
        answers = self.statuses[external_order_id]
        answer = answers.pop(0) if isinstance(answers, list) else answers
        if isinstance(answer, Exception):
            raise answer
        return answer

    def test_connection(self):
        if isinstance(self.connection_ok, Exception):
            raise self.connection_ok
        return self.connection_ok

    def close(self):
        self.closed += 1


class FakeNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def notify_shipped(self, supplier_order):
        if self.fail:
            raise RuntimeError('SMTP down')
        self.sent.append(supplier_order.id)
        return True


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def sync(app, client, notifier, sleeps):
    return SupplierOrderSync(
        notifier=notifier,
        client_factory=lambda supplier, **kwargs: client,
        sleep=sleeps.append,
    )


@pytest.fixture
def supplier_order(make_supplier, make_product, make_order, dropshipping_settings):
    """Create a storefront order with supplier items and its supplier order."""

    def _supplier_order(status=SupplierOrder.PENDING, external_order_id=None, supplier=None, extra_lines=()):
        supplier = supplier or make_supplier()
        product = make_product(supplier=supplier, price='20.00', cost_price='12.00', supplier_product_id='V-1')
        order = make_order([(product, 2)] + list(extra_lines))
        results = SupplierOrderSync().create_supplier_orders(order.id)
        supplier_order = db.session.get(SupplierOrder, results[0]['supplier_order_id'])
        if status != SupplierOrder.PENDING:
            supplier_order.status = status
            supplier_order.external_order_id = external_order_id or f'EXT-{supplier_order.id}'
            for item in supplier_order.items:
                item.supplier_order_status = status
            db.session.commit()
        return supplier_order

    return _supplier_order


# ===== State machine =====

@pytest.mark.unit
@pytest.mark.parametrize('current, target, expected', [
    (SupplierOrder.PENDING, SupplierOrder.SENT, (SupplierOrder.SENT,)),
    (SupplierOrder.SENT, SupplierOrder.SENT, ()),
    (SupplierOrder.SENT, SupplierOrder.DELIVERED, (SupplierOrder.SHIPPED, SupplierOrder.DELIVERED)),
    (SupplierOrder.SENT, SupplierOrder.CANCELLED, (SupplierOrder.SHIPPED, SupplierOrder.CANCELLED)),
    (SupplierOrder.FAILED, SupplierOrder.DELIVERED, (SupplierOrder.DELIVERED,)),
    (SupplierOrder.SHIPPED, SupplierOrder.SENT, None),
    (SupplierOrder.DELIVERED, SupplierOrder.CANCELLED, None),
    (SupplierOrder.SHIPPED, SupplierOrder.FAILED, None),
    (SupplierOrder.SENT, 'LOST', None),
])
def test_plan_transition(current, target, expected):
    assert plan_transition(current, target) == expected


@pytest.mark.unit
def test_check_order_updates():
    """Test the pure mapping of supplier reports onto local orders."""
    orders = [
        OrderSnapshot(id=1, status=SupplierOrder.SENT),
        OrderSnapshot(id=2, status=SupplierOrder.SHIPPED, tracking_number='TRK-2'),
        OrderSnapshot(id=3, status=SupplierOrder.SHIPPED),
        OrderSnapshot(id=4, status=SupplierOrder.SENT),
        OrderSnapshot(id=5, status=SupplierOrder.DELIVERED),
        OrderSnapshot(id=6, status=SupplierOrder.SENT),
    ]
    reports = {
        1: StatusReport(SupplierOrder.SHIPPED, 'shipped', tracking_number='TRK-1', carrier='UPS'),
        2: StatusReport(SupplierOrder.SHIPPED, 'shipped', tracking_number='TRK-2'),
        3: StatusReport(SupplierOrder.SENT, 'processing', tracking_number='TRK-3'),
        4: StatusReport(None, 'on-hold'),
        5: StatusReport(SupplierOrder.CANCELLED, 'cancelled'),
    }

    updates = {update.supplier_order_id: update for update in check_order_updates(orders, reports, NOW)}

    assert set(updates) == {1, 3}
    assert updates[1].path == (SupplierOrder.SHIPPED,)
    assert updates[1].shipped
    assert updates[1].tracking == {'tracking_number': 'TRK-1', 'carrier': 'UPS'}
    assert updates[1].checked_at == NOW
    # backwards move is ignored but new tracking is kept
    assert not updates[3].status_changed
    assert updates[3].status == SupplierOrder.SHIPPED
    assert updates[3].tracking == {'tracking_number': 'TRK-3'}
    assert updates[3].to_dict()['path'] == []


# ===== Creation =====

@pytest.mark.integration
def test_create_groups_items_by_supplier(sync, make_vendor, make_supplier, make_product, make_order,
                                         dropshipping_settings):
    """Test one supplier order per active supplier with estimated costs."""
    supplier = make_supplier(average_shipping='5.00')
    inactive = make_supplier(status=Supplier.STATUS_INACTIVE)
    vendor = make_vendor()
    with_cost = make_product(supplier=supplier, price='20.00', cost_price='12.00')
    without_cost = make_product(supplier=supplier, price='10.00')
    dormant = make_product(supplier=inactive, price='15.00')
    own = make_product(vendor=vendor, price='30.00')
    order = make_order([(with_cost, 2), (without_cost, 1), (dormant, 1), (own, 1)])

    results = sync.create_supplier_orders(order.id)

    assert len(results) == 1
    assert results[0]['supplier_id'] == supplier.id
    assert results[0]['item_count'] == 2
    assert results[0]['success'] and not results[0]['sent']

    supplier_order = db.session.get(SupplierOrder, results[0]['supplier_order_id'])
    # 12.00 * 2 + 10.00 * 0.70 + 5.00 shipping
    assert supplier_order.total_cost == Decimal('36.00')
    assert supplier_order.shipping_cost == Decimal('5.00')
    assert supplier_order.status == SupplierOrder.PENDING
    assert supplier_order.external_order_id is None
    assert {item.product_id for item in supplier_order.items} == {with_cost.id, without_cost.id}
    assert all(item.supplier_order_status == SupplierOrder.PENDING for item in supplier_order.items)

    # repeated calls do not duplicate supplier orders
    assert sync.create_supplier_orders(order.id) == []
    assert SupplierOrder.query.count() == 1


@pytest.mark.integration
def test_create_unknown_order(sync):
    with pytest.raises(NotFoundException):
        sync.create_supplier_orders(55555)


@pytest.mark.integration
def test_create_sends_when_auto_send_enabled(sync, client, make_supplier, make_product, make_order,
                                             dropshipping_settings):
    dropshipping_settings.auto_send_orders = True
    db.session.commit()
    supplier = make_supplier()
    product = make_product(supplier=supplier, price='20.00')
    order = make_order([(product, 1)])

    results = sync.create_supplier_orders(order.id)

    assert results[0]['sent'] is True
    assert results[0]['deferred'] is False
    supplier_order = db.session.get(SupplierOrder, results[0]['supplier_order_id'])
    assert supplier_order.status == SupplierOrder.SENT
    assert len(client.submitted) == 1


@pytest.mark.integration
def test_auto_send_failure_keeps_order_pending(sync, client, make_supplier, make_product, make_order,
                                               dropshipping_settings):
    dropshipping_settings.auto_send_orders = True
    db.session.commit()
    client.submit_answer = ExternalServiceException('fake', 'HTTP 500')
    product = make_product(supplier=make_supplier(), price='20.00')
    order = make_order([(product, 1)])

    results = sync.create_supplier_orders(order.id)

    assert results[0]['success'] is False
    assert results[0]['error'] == 'fake: HTTP 500'
    assert db.session.get(SupplierOrder, results[0]['supplier_order_id']).status == SupplierOrder.PENDING


# ===== Submission =====

@pytest.mark.integration
def test_send_order(sync, client, supplier_order):
    """Test PENDING -> SENT on a successful submission."""
    pending = supplier_order()

    result = sync.send_order(pending.id)

    assert result.status == SupplierOrder.SENT
    assert result.external_order_id == 'EXT-1'
    assert not result.deferred
    db.session.expire_all()
    stored = db.session.get(SupplierOrder, pending.id)
    assert stored.status == SupplierOrder.SENT
    assert stored.external_order_id == 'EXT-1'
    assert stored.error_message is None
    assert all(item.supplier_order_status == SupplierOrder.SENT for item in stored.items)

    payload = client.submitted[0]
    assert payload.order_number == stored.order.order_number
    assert payload.items[0].supplier_product_id == 'V-1'
    assert payload.items[0].quantity == 2
    assert payload.shipping_address['name'] == 'Jane Buyer'
    assert client.closed == 1


@pytest.mark.integration
def test_send_rate_limited_is_deferred(sync, client, supplier_order):
    """Test that a throttled submission is deferred, not failed."""
    pending = supplier_order()
    client.submit_answer = RateLimitedException(pending.supplier_id, AUTH, 300)

    result = sync.send_order(pending.id)

    assert result.deferred
    assert result.retry_after == 300
    stored = db.session.get(SupplierOrder, pending.id)
    assert stored.status == SupplierOrder.PENDING
    assert stored.error_message is None


@pytest.mark.integration
def test_send_failure_is_recorded(sync, client, supplier_order):
    pending = supplier_order()
    client.submit_answer = ExternalServiceException('fake', 'read timed out')

    with pytest.raises(ExternalServiceException):
        sync.send_order(pending.id)

    db.session.expire_all()
    stored = db.session.get(SupplierOrder, pending.id)
    assert stored.status == SupplierOrder.PENDING
    assert stored.external_order_id is None
    assert stored.error_message == 'fake: read timed out'


@pytest.mark.integration
def test_send_rejected_by_supplier(sync, client, supplier_order):
    pending = supplier_order()
    client.submit_answer = SubmitResult(success=False, error='Out of stock')

    with pytest.raises(ExternalServiceException) as exc_info:
        sync.send_order(pending.id)

    assert exc_info.value.message == 'fake: Out of stock'
    assert db.session.get(SupplierOrder, pending.id).error_message == 'Out of stock'


@pytest.mark.integration
def test_send_requires_pending_order(sync, supplier_order):
    sent = supplier_order(status=SupplierOrder.SENT)
    with pytest.raises(ValidationException):
        sync.send_order(sent.id)


@pytest.mark.integration
def test_send_without_credentials(sync, client, make_supplier, supplier_order):
    pending = supplier_order(supplier=make_supplier(api_key=None))

    with pytest.raises(ValidationException):
        sync.send_order(pending.id)

    assert 'credentials' in db.session.get(SupplierOrder, pending.id).error_message
    assert client.submitted == []


@pytest.mark.integration
def test_send_auth_configuration_error_is_recorded(sync, client, supplier_order):
    """Test that a client-side configuration error is stored like any failed send."""
    pending = supplier_order()
    client.submit_answer = ValidationException('Supplier 1 needs an API e-mail to authenticate with CJ Dropshipping')

    with pytest.raises(ValidationException):
        sync.send_order(pending.id)

    db.session.expire_all()
    stored = db.session.get(SupplierOrder, pending.id)
    assert stored.status == SupplierOrder.PENDING
    assert 'API e-mail' in stored.error_message


@pytest.mark.integration
def test_supplier_connection(sync, client, make_supplier):
    supplier = make_supplier()
    assert sync.test_supplier_connection(supplier.id) is True
    assert client.closed == 1

    client.connection_ok = False
    assert sync.test_supplier_connection(supplier.id) is False


@pytest.mark.integration
def test_supplier_connection_rate_limited(sync, client, make_supplier):
    supplier = make_supplier()
    client.connection_ok = RateLimitedException(supplier.id, AUTH, 120)

    with pytest.raises(RateLimitedException):
        sync.test_supplier_connection(supplier.id)
    assert client.closed == 1


@pytest.mark.integration
def test_supplier_connection_requires_known_supplier_with_credentials(sync, make_supplier):
    with pytest.raises(NotFoundException):
        sync.test_supplier_connection(4242)
    with pytest.raises(ValidationException):
        sync.test_supplier_connection(make_supplier(api_key=None).id)


# ===== Polling =====

@pytest.mark.integration
def test_poll_applies_shipment(sync, client, notifier, supplier_order):
    """Test that a shipped report updates order, items, fulfillment and notifies."""
    sent = supplier_order(status=SupplierOrder.SENT, external_order_id='EXT-9')
    client.statuses['EXT-9'] = StatusReport(
        SupplierOrder.SHIPPED, 'shipped', tracking_number='TRK-9', carrier='UPS',
        tracking_url='https://track.test/TRK-9',
    )

    result = sync.poll(now=NOW)

    assert result.checked == 1
    assert [update.supplier_order_id for update in result.updates] == [sent.id]
    assert result.notified == [sent.id]
    assert notifier.sent == [sent.id]

    db.session.expire_all()
    stored = db.session.get(SupplierOrder, sent.id)
    assert stored.status == SupplierOrder.SHIPPED
    assert stored.tracking_number == 'TRK-9'
    assert stored.carrier == 'UPS'
    assert stored.last_checked_at == NOW
    assert all(item.supplier_order_status == SupplierOrder.SHIPPED for item in stored.items)
    assert all(item.supplier_tracking_number == 'TRK-9' for item in stored.items)
    assert stored.order.fulfillment_status == Order.FULFILLMENT_FULFILLED


@pytest.mark.integration
def test_poll_marks_partial_fulfillment(sync, client, make_vendor, make_product, supplier_order):
    own = make_product(vendor=make_vendor(), price='30.00')
    sent = supplier_order(status=SupplierOrder.SENT, external_order_id='EXT-1', extra_lines=[(own, 1)])
    client.statuses['EXT-1'] = StatusReport(SupplierOrder.SHIPPED, 'shipped')

    sync.poll(now=NOW)

    db.session.expire_all()
    assert db.session.get(Order, sent.order_id).fulfillment_status == Order.FULFILLMENT_PARTIAL


@pytest.mark.integration
def test_poll_walks_through_intermediate_states(sync, client, notifier, supplier_order):
    sent = supplier_order(status=SupplierOrder.SENT, external_order_id='EXT-1')
    client.statuses['EXT-1'] = StatusReport(SupplierOrder.DELIVERED, 'delivered')

    result = sync.poll(now=NOW)

    assert result.updates[0].path == (SupplierOrder.SHIPPED, SupplierOrder.DELIVERED)
    assert db.session.get(SupplierOrder, sent.id).status == SupplierOrder.DELIVERED
    assert notifier.sent == [sent.id]


@pytest.mark.integration
def test_poll_ignores_unmapped_and_backward_statuses(sync, client, notifier, supplier_order):
    sent = supplier_order(status=SupplierOrder.SENT, external_order_id='EXT-1')
    shipped = supplier_order(status=SupplierOrder.SHIPPED, external_order_id='EXT-2')
    client.statuses['EXT-1'] = StatusReport(None, 'on-hold')
    client.statuses['EXT-2'] = StatusReport(SupplierOrder.SENT, 'processing')

    result = sync.poll(now=NOW)

    assert result.checked == 2
    assert result.updates == []
    assert notifier.sent == []
    assert db.session.get(SupplierOrder, sent.id).status == SupplierOrder.SENT
    assert db.session.get(SupplierOrder, shipped.id).status == SupplierOrder.SHIPPED


@pytest.mark.integration
def test_notification_failure_does_not_stop_sync(client, supplier_order, sleeps):
    failing = SupplierOrderSync(
        notifier=FakeNotifier(fail=True),
        client_factory=lambda supplier, **kwargs: client,
        sleep=sleeps.append,
    )
    sent = supplier_order(status=SupplierOrder.SENT, external_order_id='EXT-1')
    client.statuses['EXT-1'] = StatusReport(SupplierOrder.SHIPPED, 'shipped', tracking_number='TRK-1')

    result = failing.poll(now=NOW)

    assert result.notified == []
    db.session.expire_all()
    assert db.session.get(SupplierOrder, sent.id).status == SupplierOrder.SHIPPED


@pytest.mark.integration
def test_poll_respects_notification_setting(sync, client, notifier, supplier_order, dropshipping_settings):
    dropshipping_settings.notify_customer_on_shipment = False
    db.session.commit()
    supplier_order(status=SupplierOrder.SENT, external_order_id='EXT-1')
    client.statuses['EXT-1'] = StatusReport(SupplierOrder.SHIPPED, 'shipped')

    result = sync.poll(now=NOW)

    assert len(result.updates) == 1
    assert result.notified == []
    assert notifier.sent == []


@pytest.mark.integration
def test_poll_defers_rate_limited_supplier(sync, client, make_supplier, supplier_order):
    """Test that a throttled supplier is skipped for the rest of the run."""
    supplier = make_supplier()
    first = supplier_order(status=SupplierOrder.SENT, external_order_id='EXT-1', supplier=supplier)
    second = supplier_order(status=SupplierOrder.SENT, external_order_id='EXT-2', supplier=supplier)
    client.statuses['EXT-1'] = RateLimitedException(supplier.id, DATA, 30)
    client.statuses['EXT-2'] = StatusReport(SupplierOrder.SHIPPED, 'shipped')

    result = sync.poll(now=NOW)

    assert result.checked == 0
    assert result.updates == []
    assert result.deferred == [{
        'supplier_id': supplier.id,
        'kind': DATA,
        'retry_after': 30.0,
        'supplier_order_ids': [first.id, second.id],
    }]
    assert client.queried == ['EXT-1']
    assert db.session.get(SupplierOrder, second.id).status == SupplierOrder.SENT


@pytest.mark.integration
def test_poll_waits_for_short_data_window(sync, client, sleeps, supplier_order):
    sent = supplier_order(status=SupplierOrder.SENT, external_order_id='EXT-1')
    client.statuses['EXT-1'] = [
        RateLimitedException(sent.supplier_id, DATA, 0.5),
        StatusReport(SupplierOrder.SHIPPED, 'shipped'),
    ]

    result = sync.poll(now=NOW)

    assert sleeps == [0.5]
    assert result.checked == 1
    assert result.deferred == []


@pytest.mark.integration
def test_poll_records_errors_and_continues(sync, client, make_supplier, supplier_order):
    supplier = make_supplier()
    broken = supplier_order(status=SupplierOrder.SENT, external_order_id='EXT-1', supplier=supplier)
    healthy = supplier_order(status=SupplierOrder.SENT, external_order_id='EXT-2', supplier=supplier)
    client.statuses['EXT-1'] = ExternalServiceException('fake', 'HTTP 503')
    client.statuses['EXT-2'] = StatusReport(SupplierOrder.SHIPPED, 'shipped')

    result = sync.poll(now=NOW)

    assert result.errors == [{'supplier_order_id': broken.id, 'error': 'fake: HTTP 503'}]
    assert result.checked == 1
    db.session.expire_all()
    stored = db.session.get(SupplierOrder, broken.id)
    assert stored.error_message == 'fake: HTTP 503'
    assert stored.last_checked_at == NOW
    assert stored.status == SupplierOrder.SENT
    assert db.session.get(SupplierOrder, healthy.id).status == SupplierOrder.SHIPPED


@pytest.mark.integration
def test_poll_skips_inactive_suppliers_and_unsent_orders(sync, client, make_supplier, supplier_order):
    inactive = make_supplier()
    supplier_order(status=SupplierOrder.SENT, external_order_id='EXT-1', supplier=inactive)
    inactive.status = Supplier.STATUS_INACTIVE
    db.session.commit()
    supplier_order()
    supplier_order(status=SupplierOrder.DELIVERED, external_order_id='EXT-3')

    result = sync.poll(now=NOW)

    assert result.checked == 0
    assert client.queried == []


# ===== Notifications =====

@pytest.mark.unit
def test_notifier_requires_configuration():
    assert not ShipmentNotifier().send_email('buyer@example.com', 'Hi', '<p>Hi</p>')


@pytest.mark.integration
def test_notifier_sends_shipment_email(monkeypatch, supplier_order):
    smtp = MagicMock()
    monkeypatch.setattr('services.notifications.smtplib.SMTP', smtp)
    notifier = ShipmentNotifier.from_config({
        'SMTP_HOST': 'smtp.test',
        'SMTP_PORT': 2525,
        'SMTP_USER': 'mailer',
        'SMTP_PASSWORD': 'secret',
        'FROM_EMAIL': 'shop@example.com',
    })
    shipped = supplier_order(status=SupplierOrder.SHIPPED, external_order_id='EXT-1')
    shipped.tracking_number = 'TRK-1'
    shipped.estimated_delivery = datetime(2024, 6, 1)

    assert notifier.notify_shipped(shipped)

    smtp.assert_called_once_with('smtp.test', 2525, timeout=10.0)
    server = smtp.return_value.__enter__.return_value
    server.login.assert_called_once_with('mailer', 'secret')
    sender, recipients, message = server.sendmail.call_args[0]
    assert sender == 'shop@example.com'
    assert recipients == ['buyer@example.com']
    assert 'has shipped' in message


@pytest.mark.integration
def test_notifier_escapes_supplier_and_customer_text(monkeypatch, supplier_order):
    """Test that markup in tracking data and the customer name is escaped."""
    notifier = ShipmentNotifier('smtp.test', 587, 'mailer', 'secret')
    sent = []
    monkeypatch.setattr(notifier, 'send_email', lambda to, subject, body: sent.append(body) or True)
    shipped = supplier_order(status=SupplierOrder.SHIPPED, external_order_id='EXT-1')
    shipped.order.customer_name = '<script>alert(1)</script>'
    shipped.tracking_number = 'TRK<b>1</b>'
    shipped.carrier = 'Fast & "Cheap"'
    shipped.tracking_url = 'https://track.example.com/?id=1"><img src=x onerror=alert(1)>'

    assert notifier.notify_shipped(shipped)

    body = sent[0]
    assert '<script>' not in body
    assert '&lt;script&gt;alert(1)&lt;/script&gt;' in body
    assert 'TRK&lt;b&gt;1&lt;/b&gt;' in body
    assert 'Fast &amp; &quot;Cheap&quot;' in body
    assert '<img' not in body
    assert 'href="https://track.example.com/?id=1&quot;&gt;&lt;img' in body


@pytest.mark.integration
def test_notifier_drops_non_web_tracking_links(monkeypatch, supplier_order):
    notifier = ShipmentNotifier('smtp.test', 587, 'mailer', 'secret')
    sent = []
    monkeypatch.setattr(notifier, 'send_email', lambda to, subject, body: sent.append(body) or True)
    shipped = supplier_order(status=SupplierOrder.SHIPPED, external_order_id='EXT-1')
    shipped.tracking_number = 'TRK-1'
    shipped.tracking_url = 'javascript:alert(1)'

    notifier.notify_shipped(shipped)

    assert 'javascript:' not in sent[0]
    assert 'TRK-1' in sent[0]


@pytest.mark.integration
def test_notifier_swallows_smtp_errors(monkeypatch, supplier_order):
    smtp = MagicMock(side_effect=OSError('connection refused'))
    monkeypatch.setattr('services.notifications.smtplib.SMTP', smtp)
    notifier = ShipmentNotifier('smtp.test', 587, 'mailer', 'secret')
    shipped = supplier_order(status=SupplierOrder.SHIPPED, external_order_id='EXT-1')

    assert notifier.notify_shipped(shipped) is False
