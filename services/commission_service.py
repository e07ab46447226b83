"""
Commission Service
==================
Calcula y persiste la comision de cada item de orden atribuido a un vendedor,
y agrega el libro de comisiones para los dashboards.

Reparto por item:
    base_commission = sale_amount x rate
    vendor          = base_commission + performance_bonus - transaction_fee
    platform        = sale_amount - vendor

Los montos del vendedor se redondean a centavos (ROUND_HALF_UP) y la
plataforma absorbe el resto, de modo que vendor + platform == sale_amount.
"""

import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config.commission_config import (
    DEFAULT_PERFORMANCE_POLICY,
    PERFORMANCE_LOOKBACK_DAYS,
    VENDOR_PLANS,
    PerformancePolicy,
    get_plan,
)
from extensions import db
from models import CommissionRecord, CommissionSettings, Order, OrderItem, Product, Vendor
from services.base import BaseService, NotFoundException, ServiceException, ValidationException
from services.commission_rates import (
    CommissionPolicy,
    VendorPerformanceMetrics,
    calculate_performance_score,
    normalize_rate,
    normalize_tier_table,
    quantize_money,
    recommend_plan,
    resolve_rates,
    to_decimal,
)
from services.currency import convert_many, get_rate_table, resolve_display_currency

audit_logger = logging.getLogger('commissions')

ZERO = Decimal('0')
_UNSET = object()

CLOSED_ORDER_STATUSES = (Order.STATUS_DELIVERED, Order.STATUS_CANCELLED, Order.STATUS_REFUNDED)


@dataclass
class CommissionBreakdown:
    record_id: int
    order_id: int
    order_item_id: int
    vendor_id: int
    sale_amount: Decimal
    commission_rate: Decimal
    base_commission: Decimal
    transaction_fee: Decimal
    performance_bonus: Decimal
    vendor_earnings: Decimal
    platform_earnings: Decimal
    status: str
    created: bool = field(default=False, compare=False)

    @classmethod
    def from_record(cls, record: CommissionRecord, created: bool = False) -> 'CommissionBreakdown':
        return cls(
            record_id=record.id,
            order_id=record.order_id,
            order_item_id=record.order_item_id,
            vendor_id=record.vendor_id,
            sale_amount=Decimal(record.sale_amount),
            commission_rate=Decimal(record.commission_rate),
            base_commission=Decimal(record.base_commission),
            transaction_fee=Decimal(record.transaction_fee),
            performance_bonus=Decimal(record.performance_bonus),
            vendor_earnings=Decimal(record.commission_amount),
            platform_earnings=Decimal(record.platform_earnings),
            status=record.status,
            created=created,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrendBucket:
    date: str
    sales: Decimal = ZERO
    commission: Decimal = ZERO
    orders: int = 0


@dataclass
class VendorAnalytics:
    vendor_id: int
    currency: str
    window_days: int
    period_start: datetime
    period_end: datetime
    total_sales: Decimal = ZERO
    total_commission: Decimal = ZERO
    total_fees: Decimal = ZERO
    total_bonus: Decimal = ZERO
    net_earnings: Decimal = ZERO
    pending_earnings: Decimal = ZERO
    paid_earnings: Decimal = ZERO
    commission_count: int = 0
    trend: List[TrendBucket] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['period_start'] = self.period_start.isoformat()
        data['period_end'] = self.period_end.isoformat()
        return data


class CommissionService(BaseService[CommissionRecord]):
    """Motor de calculo de comisiones y analitica de vendedores."""

    model_class = CommissionRecord

    def __init__(self, performance_policy: PerformancePolicy = DEFAULT_PERFORMANCE_POLICY):
        super().__init__()
        self.performance_policy = performance_policy

    # ===== Settings =====

    def get_vendor_or_fail(self, vendor_id: int) -> Vendor:
        vendor = db.session.get(Vendor, vendor_id)
        if vendor is None:
            raise NotFoundException('Vendor', vendor_id)
        return vendor

    def get_or_create_settings(self, vendor: Vendor) -> CommissionSettings:
        """Return the vendor's settings, creating them from the plan on first use."""
        settings = CommissionSettings.query.filter_by(vendor_id=vendor.id).first()
        if settings is not None:
            return settings

        plan = get_plan(vendor.plan_type)
        settings = CommissionSettings(
            vendor_id=vendor.id,
            default_commission_rate=plan.commission_rate,
            tiered_rates=None,
            minimum_payout=current_app.config.get('DEFAULT_MINIMUM_PAYOUT', Decimal('25.00')),
            payment_method='bank_transfer',
            is_active=True,
        )
        db.session.add(settings)
        try:
            db.session.commit()
        except IntegrityError:
            # another request created them first
            db.session.rollback()
            settings = CommissionSettings.query.filter_by(vendor_id=vendor.id).first()
            if settings is None:
                raise
            return settings

        self._log_info(f"Created commission settings for vendor {vendor.id} from plan {plan.id}")
        return settings

    def update_settings(
        self,
        vendor_id: int,
        default_commission_rate=None,
        tiered_rates=_UNSET,
        minimum_payout=None,
        payment_method: Optional[str] = None,
        payment_details=_UNSET,
        is_active: Optional[bool] = None,
    ) -> CommissionSettings:
        """Update a vendor's commission settings.

        Every value is validated before anything is written, so a rejected
        update leaves the stored settings untouched. Pass ``tiered_rates=None``
        to return to a flat rate.
        """
        vendor = self.get_vendor_or_fail(vendor_id)

        changes: Dict[str, Any] = {}
        if default_commission_rate is not None:
            changes['default_commission_rate'] = normalize_rate(
                default_commission_rate, field='default_commission_rate'
            )
        if tiered_rates is not _UNSET:
            normalize_tier_table(tiered_rates or ())
            changes['tiered_rates'] = tiered_rates or None
        if minimum_payout is not None:
            amount = to_decimal(minimum_payout, field='minimum_payout')
            if amount < 0:
                raise ValidationException('minimum_payout must not be negative', details={'minimum_payout': str(amount)})
            changes['minimum_payout'] = quantize_money(amount)
        if payment_method is not None:
            changes['payment_method'] = payment_method
        if payment_details is not _UNSET:
            changes['payment_details'] = payment_details
        if is_active is not None:
            changes['is_active'] = bool(is_active)

        settings = self.get_or_create_settings(vendor)
        try:
            for key, value in changes.items():
                setattr(settings, key, value)
            db.session.commit()
        except ValidationException:
            db.session.rollback()
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            self._log_error(f"Error updating commission settings for vendor {vendor_id}: {e}")
            raise ServiceException(f"Error updating commission settings: {e}")

        audit_logger.info("Commission settings updated vendor=%s fields=%s", vendor_id, sorted(changes))
        return settings

    def switch_plan(self, vendor_id: int, plan_type: str) -> Vendor:
        """Move a vendor to another plan. Immediate, idempotent, no prorating."""
        plan_key = (plan_type or '').upper()
        if plan_key not in VENDOR_PLANS:
            raise ValidationException(
                f"Unknown plan {plan_type!r}", details={'plan_type': plan_type, 'plans': sorted(VENDOR_PLANS)}
            )
        vendor = self.get_vendor_or_fail(vendor_id)
        if vendor.plan_type == plan_key:
            return vendor

        previous = vendor.plan_type
        vendor.plan_type = plan_key
        self.commit()
        audit_logger.info("Vendor %s switched plan %s -> %s", vendor_id, previous, plan_key)
        return vendor

    # ===== Calculation =====

    def get_trailing_volume(self, vendor_id: int, now: Optional[datetime] = None) -> Decimal:
        """Sum of non-cancelled sales inside the configured rolling window."""
        now = now or datetime.utcnow()
        window_days = int(current_app.config.get('COMMISSION_VOLUME_WINDOW_DAYS', 30))
        since = now - timedelta(days=window_days)
        total = (
            db.session.query(func.coalesce(func.sum(CommissionRecord.sale_amount), 0))
            .filter(
                CommissionRecord.vendor_id == vendor_id,
                CommissionRecord.status != CommissionRecord.STATUS_CANCELLED,
                CommissionRecord.created_at >= since,
                CommissionRecord.created_at <= now,
            )
            .scalar()
        )
        return Decimal(str(total or 0))

    def get_existing(self, order_item_id: int, vendor_id: int) -> Optional[CommissionRecord]:
        return CommissionRecord.query.filter_by(order_item_id=order_item_id, vendor_id=vendor_id).first()

    def calculate(
        self,
        vendor_id: int,
        sale_amount,
        order_id: int,
        order_item_id: int,
        product_id: Optional[int] = None,
        performance_score: Optional[Decimal] = None,
    ) -> CommissionBreakdown:
        """Compute and persist the commission for one order item.

        Idempotent per ``(order_item_id, vendor_id)``: a repeated call returns
        the stored breakdown without recomputing it.
        """
        amount = to_decimal(sale_amount, field='sale_amount')
        if amount <= 0:
            raise ValidationException(
                'Commissions are only computed for positive sale amounts',
                details={'sale_amount': str(amount)},
            )
        amount = quantize_money(amount)

        vendor = self.get_vendor_or_fail(vendor_id)

        existing = self.get_existing(order_item_id, vendor_id)
        if existing is not None:
            return CommissionBreakdown.from_record(existing)

        settings = self.get_or_create_settings(vendor)
        resolution = resolve_rates(
            amount,
            self.get_trailing_volume(vendor_id),
            CommissionPolicy.from_settings(settings),
            get_plan(vendor.plan_type),
            performance_score=performance_score,
            performance_policy=self.performance_policy,
        )

        base_commission = quantize_money(amount * resolution.base_commission_rate)
        vendor_earnings = base_commission + resolution.performance_bonus - resolution.transaction_fee
        platform_earnings = amount - vendor_earnings

        record = CommissionRecord(
            order_id=order_id,
            order_item_id=order_item_id,
            vendor_id=vendor_id,
            product_id=product_id,
            sale_amount=amount,
            commission_rate=resolution.base_commission_rate,
            base_commission=base_commission,
            commission_amount=vendor_earnings,
            platform_earnings=platform_earnings,
            transaction_fee=resolution.transaction_fee,
            performance_bonus=resolution.performance_bonus,
            status=CommissionRecord.STATUS_PENDING,
        )
        db.session.add(record)
        try:
            db.session.commit()
        except IntegrityError:
            # lost the race against a concurrent retry: return the winner's record
            db.session.rollback()
            existing = self.get_existing(order_item_id, vendor_id)
            if existing is None:
                raise ServiceException(
                    f"Could not store commission for order item {order_item_id}",
                    details={'order_item_id': order_item_id, 'vendor_id': vendor_id},
                )
            return CommissionBreakdown.from_record(existing)
        except SQLAlchemyError as e:
            db.session.rollback()
            self._log_error(f"Error storing commission for order item {order_item_id}: {e}")
            raise ServiceException(f"Error storing commission: {e}")

        audit_logger.info(
            "Commission order=%s item=%s vendor=%s sale=%s rate=%s vendor_earnings=%s platform=%s fee=%s bonus=%s",
            order_id, order_item_id, vendor_id, amount, resolution.base_commission_rate,
            vendor_earnings, platform_earnings, resolution.transaction_fee, resolution.performance_bonus,
        )
        return CommissionBreakdown.from_record(record, created=True)

    def create_commissions_for_order(self, order_id: int) -> List[CommissionBreakdown]:
        """Calculate commissions for every vendor-owned item of an order.

        A failure marks the order's fulfillment as pending and re-raises so
        the caller retries; items already stored are returned as-is on retry.
        """
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFoundException('Order', order_id)

        items = (
            OrderItem.query.join(Product, OrderItem.product_id == Product.id)
            .join(Vendor, Product.vendor_id == Vendor.id)
            .filter(OrderItem.order_id == order_id, Vendor.role == Vendor.ROLE_VENDOR)
            .order_by(OrderItem.id)
            .all()
        )

        scores: Dict[int, Optional[Decimal]] = {}
        breakdowns = []
        try:
            for item in items:
                vendor_id = item.product.vendor_id
                if vendor_id not in scores:
                    scores[vendor_id] = self.get_performance_score(vendor_id)
                breakdowns.append(
                    self.calculate(
                        vendor_id,
                        item.total,
                        order_id=order.id,
                        order_item_id=item.id,
                        product_id=item.product_id,
                        performance_score=scores[vendor_id],
                    )
                )
        except ServiceException as e:
            db.session.rollback()
            order = db.session.get(Order, order_id)
            order.fulfillment_status = Order.FULFILLMENT_PENDING
            db.session.commit()
            self._log_error(f"Commission calculation failed for order {order_id}: {e.message}")
            raise

        self._log_info(f"Order {order_id}: {len(breakdowns)} commission(s) calculated")
        return breakdowns

    def cancel_commissions_for_order(self, order_id: int) -> Dict[str, Any]:
        """Cancel the order's PENDING commissions after a refund.

        Records already paid out are left untouched and reported back so
        finance can recover them.
        """
        now = datetime.utcnow()
        try:
            cancelled = (
                CommissionRecord.query.filter(
                    CommissionRecord.order_id == order_id,
                    CommissionRecord.status == CommissionRecord.STATUS_PENDING,
                    CommissionRecord.payout_id.is_(None),
                ).update(
                    {
                        CommissionRecord.status: CommissionRecord.STATUS_CANCELLED,
                        CommissionRecord.processed_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            self._log_error(f"Error cancelling commissions for order {order_id}: {e}")
            raise ServiceException(f"Error cancelling commissions: {e}")

        paid = [
            record.id
            for record in CommissionRecord.query.filter_by(
                order_id=order_id, status=CommissionRecord.STATUS_PAID
            ).order_by(CommissionRecord.id)
        ]
        if paid:
            audit_logger.warning("Order %s refunded with paid commissions %s", order_id, paid)
        audit_logger.info("Order %s: %s commission(s) cancelled", order_id, cancelled)
        return {'order_id': order_id, 'cancelled': cancelled, 'paid_record_ids': paid}

    # ===== Performance =====

    def get_vendor_performance_metrics(self, vendor_id: int, now: Optional[datetime] = None) -> VendorPerformanceMetrics:
        vendor = self.get_vendor_or_fail(vendor_id)
        since = (now or datetime.utcnow()) - timedelta(days=PERFORMANCE_LOOKBACK_DAYS)

        rows = (
            db.session.query(Order.id, Order.status, OrderItem.total)
            .join(OrderItem, OrderItem.order_id == Order.id)
            .join(Product, OrderItem.product_id == Product.id)
            .filter(Product.vendor_id == vendor_id, Order.created_at >= since)
            .all()
        )

        statuses: Dict[int, str] = {}
        total_sales = ZERO
        for order_id, status, total in rows:
            statuses[order_id] = status
            total_sales += Decimal(str(total or 0))

        order_count = len(statuses)
        delivered = sum(1 for status in statuses.values() if status == Order.STATUS_DELIVERED)
        refunded = sum(1 for status in statuses.values() if status == Order.STATUS_REFUNDED)
        # rates only count orders that reached a final state
        completed = sum(1 for status in statuses.values() if status in CLOSED_ORDER_STATUSES)

        products = Product.query.filter_by(vendor_id=vendor_id).all()
        return VendorPerformanceMetrics(
            total_sales=quantize_money(total_sales),
            order_count=order_count,
            completed_orders=completed,
            average_rating=Decimal(vendor.average_rating) if vendor.average_rating is not None else None,
            fulfillment_rate=Decimal(delivered) / completed if completed else ZERO,
            return_rate=Decimal(refunded) / completed if completed else ZERO,
            active_products=sum(1 for product in products if product.is_active),
            total_products=len(products),
        )

    def get_performance_score(self, vendor_id: int, now: Optional[datetime] = None) -> Optional[Decimal]:
        """Score in [0, 1], or ``None`` when no order of the vendor closed inside the window."""
        metrics = self.get_vendor_performance_metrics(vendor_id, now=now)
        if metrics.completed_orders == 0:
            return None
        return calculate_performance_score(metrics)

    # ===== Analytics =====

    def get_analytics(
        self,
        vendor_id: int,
        window_days: int = 30,
        currency: str = 'USD',
        now: Optional[datetime] = None,
    ) -> VendorAnalytics:
        """Aggregate the vendor's ledger over the last ``window_days`` calendar days.

        The window starts at midnight ``window_days - 1`` days ago, so the
        trend has exactly one bucket per day, today included. Every figure is
        converted together in a single ``convert_many`` pass.
        """
        if int(window_days) < 1:
            raise ValidationException('window_days must be at least 1', details={'window_days': window_days})
        window_days = int(window_days)
        self.get_vendor_or_fail(vendor_id)

        now = now or datetime.utcnow()
        first_day = now.date() - timedelta(days=window_days - 1)
        period_start = datetime.combine(first_day, time.min)
        period_end = datetime.combine(now.date() + timedelta(days=1), time.min)

        records = (
            CommissionRecord.query.filter(
                CommissionRecord.vendor_id == vendor_id,
                CommissionRecord.status != CommissionRecord.STATUS_CANCELLED,
                CommissionRecord.created_at >= period_start,
                CommissionRecord.created_at < period_end,
            )
            .order_by(CommissionRecord.created_at)
            .all()
        )

        buckets = OrderedDict()
        orders_per_day: Dict[str, set] = {}
        for offset in range(window_days):
            key = (first_day + timedelta(days=offset)).isoformat()
            buckets[key] = TrendBucket(date=key)
            orders_per_day[key] = set()

        totals = {
            'total_sales': ZERO,
            'total_commission': ZERO,
            'total_fees': ZERO,
            'total_bonus': ZERO,
            'net_earnings': ZERO,
            'pending_earnings': ZERO,
            'paid_earnings': ZERO,
        }
        for record in records:
            earnings = Decimal(record.commission_amount)
            totals['total_sales'] += Decimal(record.sale_amount)
            totals['total_commission'] += Decimal(record.base_commission)
            totals['total_fees'] += Decimal(record.transaction_fee)
            totals['total_bonus'] += Decimal(record.performance_bonus)
            totals['net_earnings'] += earnings
            if record.status == CommissionRecord.STATUS_PAID:
                totals['paid_earnings'] += earnings
            else:
                totals['pending_earnings'] += earnings

            key = record.created_at.date().isoformat()
            bucket = buckets[key]
            bucket.sales += Decimal(record.sale_amount)
            bucket.commission += earnings
            orders_per_day[key].add(record.order_id)

        for key, bucket in buckets.items():
            bucket.orders = len(orders_per_day[key])

        display_currency = resolve_display_currency(currency)
        rate_table = get_rate_table(current_app.config.get('BASE_CURRENCY', 'USD'))

        total_keys = list(totals)
        flat = [totals[key] for key in total_keys]
        for bucket in buckets.values():
            flat.extend([bucket.sales, bucket.commission])
        converted = convert_many(flat, display_currency, rate_table)

        for index, key in enumerate(total_keys):
            totals[key] = converted[index]
        position = len(total_keys)
        for bucket in buckets.values():
            bucket.sales, bucket.commission = converted[position], converted[position + 1]
            position += 2

        return VendorAnalytics(
            vendor_id=vendor_id,
            currency=display_currency,
            window_days=window_days,
            period_start=period_start,
            period_end=period_end,
            commission_count=len(records),
            trend=list(buckets.values()),
            **totals,
        )

    def get_dashboard(self, vendor_id: int, currency: str = 'USD') -> Dict[str, Any]:
        """Plan, performance, recommendation and analytics in the display currency."""
        vendor = self.get_vendor_or_fail(vendor_id)
        plan = get_plan(vendor.plan_type)
        metrics = self.get_vendor_performance_metrics(vendor_id)
        score = calculate_performance_score(metrics) if metrics.completed_orders else None
        recommendation = recommend_plan(plan.id, metrics)
        analytics = self.get_analytics(vendor_id, window_days=PERFORMANCE_LOOKBACK_DAYS, currency=currency)

        rate_table = get_rate_table(current_app.config.get('BASE_CURRENCY', 'USD'))
        monthly_fee, total_sales, savings = convert_many(
            [plan.monthly_fee, metrics.total_sales, recommendation.potential_savings],
            analytics.currency,
            rate_table,
        )

        plan_data = plan.to_dict()
        plan_data['monthly_fee'] = monthly_fee
        metrics_data = asdict(metrics)
        metrics_data['total_sales'] = total_sales

        return {
            'vendor_id': vendor.id,
            'currency': analytics.currency,
            'plan': plan_data,
            'metrics': metrics_data,
            'performance_score': score,
            'recommendation': {
                'current_plan': recommendation.current_plan,
                'recommended': recommendation.recommended_plan,
                'reasoning': recommendation.reasoning,
                'potential_savings': savings,
            } if recommendation.should_switch else None,
            'analytics': analytics.to_dict(),
        }
