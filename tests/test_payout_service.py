"""
Tests for payout generation.
"""
import gc
import threading
from datetime import date, datetime
from decimal import Decimal

import pytest

from extensions import db
from models import CommissionRecord, Payout, Vendor
from services import payout_service
from services.base import NotFoundException, ValidationException
from services.payout_service import PayoutService, previous_month_period


PERIOD_START = datetime(2024, 4, 1)
PERIOD_END = datetime(2024, 5, 1)


@pytest.fixture
def service(app):
    return PayoutService()


@pytest.fixture
def pending_commissions(make_product, make_order):
    """Store PENDING commission records with the given vendor earnings."""

    def _pending(vendor, amounts, created_at=datetime(2024, 4, 15)):
        product = make_product(vendor=vendor, price='100.00')
        order = make_order([(product, 1) for _ in amounts])
        records = []
        for item, amount in zip(order.items, amounts):
            earnings = Decimal(amount)
            record = CommissionRecord(
                order_id=order.id,
                order_item_id=item.id,
                vendor_id=vendor.id,
                product_id=product.id,
                sale_amount=Decimal('100.00'),
                commission_rate=Decimal('0.90'),
                base_commission=earnings + Decimal('0.30'),
                commission_amount=earnings,
                platform_earnings=Decimal('100.00') - earnings,
                transaction_fee=Decimal('0.30'),
                performance_bonus=Decimal('0'),
                status=CommissionRecord.STATUS_PENDING,
                created_at=created_at,
            )
            db.session.add(record)
            records.append(record)
        db.session.commit()
        return [record.id for record in records]

    return _pending


@pytest.mark.integration
def test_payout_groups_pending_records(service, make_vendor, pending_commissions):
    """Test that one payout collects every pending record of the period."""
    vendor = make_vendor(settings={'minimum_payout': Decimal('50.00')})
    record_ids = pending_commissions(vendor, ['120.00', '80.00'])

    payout_id = service.generate_payout(vendor.id, PERIOD_START, PERIOD_END)

    payout = db.session.get(Payout, payout_id)
    assert payout.total_amount == Decimal('200.00')
    assert payout.commission_count == 2
    assert payout.status == Payout.STATUS_PENDING
    assert payout.payment_method == 'bank_transfer'
    for record_id in record_ids:
        record = db.session.get(CommissionRecord, record_id)
        assert record.status == CommissionRecord.STATUS_PAID
        assert record.payout_id == payout_id
        assert record.processed_at is not None

    # a second run has nothing left to pay
    assert service.generate_payout(vendor.id, PERIOD_START, PERIOD_END) is None
    assert Payout.query.count() == 1


@pytest.mark.integration
def test_total_below_minimum_rolls_forward(service, make_vendor, pending_commissions):
    """Test that 45.00 pending against a 50.00 minimum creates nothing."""
    vendor = make_vendor(settings={'minimum_payout': Decimal('50.00')})
    record_ids = pending_commissions(vendor, ['20.00', '25.00'])

    assert service.generate_payout(vendor.id, PERIOD_START, PERIOD_END) is None

    assert Payout.query.count() == 0
    for record_id in record_ids:
        record = db.session.get(CommissionRecord, record_id)
        assert record.status == CommissionRecord.STATUS_PENDING
        assert record.payout_id is None


@pytest.mark.integration
def test_period_is_half_open(service, make_vendor, pending_commissions):
    """Test that records at period_end belong to the next period."""
    vendor = make_vendor(settings={'minimum_payout': Decimal('10.00')})
    included = pending_commissions(vendor, ['30.00'], created_at=PERIOD_START)
    excluded = pending_commissions(vendor, ['40.00'], created_at=PERIOD_END)

    payout_id = service.generate_payout(vendor.id, PERIOD_START, PERIOD_END)

    assert db.session.get(Payout, payout_id).total_amount == Decimal('30.00')
    assert db.session.get(CommissionRecord, included[0]).payout_id == payout_id
    assert db.session.get(CommissionRecord, excluded[0]).status == CommissionRecord.STATUS_PENDING


@pytest.mark.integration
def test_negative_balance_never_pays(service, make_vendor, pending_commissions):
    vendor = make_vendor(settings={'minimum_payout': Decimal('0')})
    pending_commissions(vendor, ['-0.21', '-0.10'])

    assert service.generate_payout(vendor.id, PERIOD_START, PERIOD_END) is None


@pytest.mark.unit
def test_invalid_period_is_rejected(service, make_vendor):
    vendor = make_vendor(settings={})
    with pytest.raises(ValidationException):
        service.generate_payout(vendor.id, PERIOD_END, PERIOD_START)
    with pytest.raises(ValidationException):
        service.generate_payout(vendor.id, PERIOD_START, PERIOD_START)


@pytest.mark.unit
def test_unknown_vendor(service):
    with pytest.raises(NotFoundException):
        service.generate_payout(31337, PERIOD_START, PERIOD_END)


@pytest.mark.integration
@pytest.mark.slow
def test_concurrent_generation_pays_once(app, make_vendor, pending_commissions):
    """Test that parallel runs for one vendor produce a single payout."""
    vendor = make_vendor(settings={'minimum_payout': Decimal('50.00')})
    pending_commissions(vendor, ['120.00', '80.00'])
    vendor_id = vendor.id

    results = []
    errors = []
    barrier = threading.Barrier(4)

    def worker():
        with app.app_context():
            try:
                barrier.wait()
                results.append(PayoutService().generate_payout(vendor_id, PERIOD_START, PERIOD_END))
            except Exception as exc:
                errors.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    payout_ids = [result for result in results if result is not None]
    assert len(payout_ids) == 1
    assert results.count(None) == 3

    db.session.expire_all()
    payouts = Payout.query.filter_by(vendor_id=vendor_id).all()
    assert len(payouts) == 1
    assert payouts[0].total_amount == Decimal('200.00')
    assert CommissionRecord.query.filter_by(payout_id=payouts[0].id).count() == 2


@pytest.mark.integration
def test_generate_for_period(service, make_vendor, pending_commissions):
    """Test the batch run over every vendor with active settings."""
    paid = make_vendor(settings={'minimum_payout': Decimal('25.00')})
    small = make_vendor(settings={'minimum_payout': Decimal('25.00')})
    admin = make_vendor(role=Vendor.ROLE_ADMIN, settings={})
    inactive = make_vendor(settings={'is_active': False})
    pending_commissions(paid, ['60.00'])
    pending_commissions(small, ['5.00'])
    pending_commissions(admin, ['60.00'])
    pending_commissions(inactive, ['60.00'])

    results = service.generate_payouts_for_period(PERIOD_START, PERIOD_END)

    by_vendor = {result['vendor_id']: result for result in results}
    assert set(by_vendor) == {paid.id, small.id}
    assert by_vendor[paid.id]['payout_id'] is not None
    assert by_vendor[small.id]['payout_id'] is None
    assert all(result['error'] is None for result in results)
    assert Payout.query.count() == 1


@pytest.mark.integration
def test_vendor_payouts_listing(service, make_vendor, pending_commissions):
    vendor = make_vendor(settings={})
    pending_commissions(vendor, ['100.00'])
    payout_id = service.generate_payout(vendor.id, PERIOD_START, PERIOD_END)

    listing = service.get_vendor_payouts(vendor.id, currency='EUR')

    assert len(listing) == 1
    assert listing[0]['id'] == payout_id
    assert listing[0]['currency'] == 'EUR'
    assert listing[0]['total_amount'] == Decimal('92.00')
    assert listing[0]['period_start'] == PERIOD_START.isoformat()


@pytest.mark.integration
def test_complete_payout(service, make_vendor, pending_commissions):
    """Test the PENDING -> COMPLETED transition."""
    vendor = make_vendor(settings={})
    pending_commissions(vendor, ['100.00'])
    payout_id = service.generate_payout(vendor.id, PERIOD_START, PERIOD_END)

    payout = service.complete_payout(payout_id)
    assert payout.status == Payout.STATUS_COMPLETED
    assert payout.processed_at is not None
    # idempotent
    assert service.complete_payout(payout_id).status == Payout.STATUS_COMPLETED

    payout.status = Payout.STATUS_FAILED
    db.session.commit()
    with pytest.raises(ValidationException):
        service.complete_payout(payout_id)
    with pytest.raises(NotFoundException):
        service.complete_payout(987654)


@pytest.mark.integration
def test_vendor_lock_is_released_after_payout(service, make_vendor, pending_commissions):
    """Test that the per-vendor lock registry does not keep finished vendors."""
    vendor = make_vendor(settings={})
    pending_commissions(vendor, ['100.00'])

    service.generate_payout(vendor.id, PERIOD_START, PERIOD_END)
    gc.collect()

    assert vendor.id not in payout_service._vendor_locks


@pytest.mark.unit
def test_vendor_lock_is_shared_while_held():
    held = payout_service._vendor_lock(4242)
    with held:
        assert payout_service._vendor_lock(4242) is held
    assert payout_service._vendor_lock(4343) is not held


@pytest.mark.integration
def test_subscription_fee_is_charged_once_per_period(service, make_vendor):
    """Test the monthly plan fee as a negative SUBSCRIPTION_FEE payout."""
    vendor = make_vendor(plan_type='PROFESSIONAL', settings={})

    fee_id = service.charge_subscription_fee(vendor.id, PERIOD_START, PERIOD_END)

    fee = db.session.get(Payout, fee_id)
    assert fee.total_amount == Decimal('-39.99')
    assert fee.payment_method == Payout.METHOD_SUBSCRIPTION_FEE
    assert fee.status == Payout.STATUS_PENDING
    assert fee.commission_count == 0
    assert fee.period_start == PERIOD_START
    assert fee.period_end == PERIOD_END

    assert service.charge_subscription_fee(vendor.id, PERIOD_START, PERIOD_END) is None
    assert Payout.query.filter_by(vendor_id=vendor.id).count() == 1

    next_id = service.charge_subscription_fee(vendor.id, PERIOD_END, datetime(2024, 6, 1))
    assert next_id is not None
    assert Payout.query.filter_by(vendor_id=vendor.id).count() == 2


@pytest.mark.integration
def test_subscription_fees_batch(service, make_vendor, pending_commissions):
    """Test that the batch skips free plans, admins and inactive settings."""
    starter = make_vendor(plan_type='STARTER', settings={})
    enterprise = make_vendor(plan_type='ENTERPRISE', settings={})
    admin = make_vendor(plan_type='ENTERPRISE', role=Vendor.ROLE_ADMIN, settings={})
    inactive = make_vendor(plan_type='PROFESSIONAL', settings={'is_active': False})
    pending_commissions(enterprise, ['100.00'])

    results = service.charge_subscription_fees(PERIOD_START, PERIOD_END)

    by_vendor = {result['vendor_id']: result for result in results}
    assert set(by_vendor) == {starter.id, enterprise.id}
    assert by_vendor[starter.id]['payout_id'] is None
    fee = db.session.get(Payout, by_vendor[enterprise.id]['payout_id'])
    assert fee.total_amount == Decimal('-99.99')
    assert Payout.query.filter(Payout.vendor_id.in_([admin.id, inactive.id])).count() == 0

    # commissions are paid out separately from the fee
    payout_id = service.generate_payout(enterprise.id, PERIOD_START, PERIOD_END)
    assert db.session.get(Payout, payout_id).total_amount == Decimal('100.00')

    again = service.charge_subscription_fees(PERIOD_START, PERIOD_END)
    assert all(result['payout_id'] is None for result in again)


@pytest.mark.unit
def test_subscription_fee_rejects_invalid_period(service, make_vendor):
    vendor = make_vendor(plan_type='PROFESSIONAL', settings={})
    with pytest.raises(ValidationException):
        service.charge_subscription_fee(vendor.id, PERIOD_END, PERIOD_START)
    with pytest.raises(NotFoundException):
        service.charge_subscription_fee(31337, PERIOD_START, PERIOD_END)


@pytest.mark.unit
@pytest.mark.parametrize('today, expected', [
    (date(2024, 5, 17), (datetime(2024, 4, 1), datetime(2024, 5, 1))),
    (date(2024, 1, 1), (datetime(2023, 12, 1), datetime(2024, 1, 1))),
    (date(2024, 3, 31), (datetime(2024, 2, 1), datetime(2024, 3, 1))),
])
def test_previous_month_period(today, expected):
    assert previous_month_period(today) == expected
