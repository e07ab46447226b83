"""
Payout Service
==============
Agrupa las comisiones PENDING de un vendedor en un periodo [inicio, fin) en un
unico pago, respetando el minimo de pago configurado.

La generacion se serializa por vendedor: un lock del proceso mas un
``SELECT ... FOR UPDATE`` sobre la fila del vendedor (PostgreSQL). El marcado
de los registros filtra por ``status = PENDING AND payout_id IS NULL`` y
verifica la cantidad de filas afectadas; cualquier diferencia es una
violacion de consistencia y revierte toda la transaccion.
"""

import logging
import threading
import weakref
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from config.commission_config import get_plan
from extensions import db
from models import CommissionRecord, CommissionSettings, Payout, Vendor
from services.base import (
    BaseService,
    ConsistencyViolation,
    NotFoundException,
    ServiceException,
    ValidationException,
)
from services.commission_rates import quantize_money
from services.commission_service import CommissionService
from services.currency import convert_many, get_rate_table, resolve_display_currency

audit_logger = logging.getLogger('commissions')

_vendor_locks: 'weakref.WeakValueDictionary[int, threading.Lock]' = weakref.WeakValueDictionary()
_vendor_locks_guard = threading.Lock()


def _vendor_lock(vendor_id: int) -> threading.Lock:
    # the entry disappears once no caller holds the lock
    with _vendor_locks_guard:
        lock = _vendor_locks.get(vendor_id)
        if lock is None:
            lock = threading.Lock()
            _vendor_locks[vendor_id] = lock
        return lock


def previous_month_period(today: Optional[date] = None):
    """``[start, end)`` bounds of the calendar month before ``today``."""
    today = today or datetime.utcnow().date()
    end = datetime(today.year, today.month, 1)
    if today.month == 1:
        start = datetime(today.year - 1, 12, 1)
    else:
        start = datetime(today.year, today.month - 1, 1)
    return start, end


class PayoutService(BaseService[Payout]):
    """Generador de lotes de pago a vendedores."""

    model_class = Payout

    def __init__(self, commission_service: Optional[CommissionService] = None):
        super().__init__()
        self.commission_service = commission_service or CommissionService()

    def generate_payout(self, vendor_id: int, period_start: datetime, period_end: datetime) -> Optional[int]:
        """Create one payout from the vendor's PENDING records in ``[period_start, period_end)``.

        Returns the payout id, or ``None`` when there is nothing to pay or the
        total is below the vendor's minimum payout. Records below the minimum
        stay PENDING and roll into the next cycle.
        """
        if period_start >= period_end:
            raise ValidationException(
                'period_start must be before period_end',
                details={'period_start': period_start.isoformat(), 'period_end': period_end.isoformat()},
            )

        vendor = self.commission_service.get_vendor_or_fail(vendor_id)
        self.commission_service.get_or_create_settings(vendor)

        with _vendor_lock(vendor_id):
            try:
                return self._generate_locked(vendor_id, period_start, period_end)
            except ConsistencyViolation as e:
                db.session.rollback()
                self._log_critical(f"Payout aborted for vendor {vendor_id}: {e.message} {e.details}")
                audit_logger.critical("Payout aborted vendor=%s: %s %s", vendor_id, e.message, e.details)
                raise
            except (ValidationException, NotFoundException):
                db.session.rollback()
                raise
            except SQLAlchemyError as e:
                db.session.rollback()
                self._log_error(f"Error generating payout for vendor {vendor_id}: {e}")
                raise ServiceException(f"Error generating payout: {e}")

    def _generate_locked(self, vendor_id: int, period_start: datetime, period_end: datetime) -> Optional[int]:
        vendor = db.session.execute(
            select(Vendor).where(Vendor.id == vendor_id).with_for_update()
        ).scalar_one_or_none()
        if vendor is None:
            raise NotFoundException('Vendor', vendor_id)

        settings = CommissionSettings.query.filter_by(vendor_id=vendor_id).one()
        minimum_payout = Decimal(settings.minimum_payout)

        records = (
            CommissionRecord.query.filter(
                CommissionRecord.vendor_id == vendor_id,
                CommissionRecord.status == CommissionRecord.STATUS_PENDING,
                CommissionRecord.payout_id.is_(None),
                CommissionRecord.created_at >= period_start,
                CommissionRecord.created_at < period_end,
            )
            .order_by(CommissionRecord.id)
            .all()
        )
        if not records:
            db.session.rollback()
            return None

        total = sum((Decimal(record.commission_amount) for record in records), Decimal('0'))
        if total <= 0 or total < minimum_payout:
            db.session.rollback()
            self._log_info(
                f"Vendor {vendor_id}: {total} pending below minimum payout {minimum_payout}; rolling forward"
            )
            return None

        payout = Payout(
            vendor_id=vendor_id,
            total_amount=total,
            commission_count=len(records),
            period_start=period_start,
            period_end=period_end,
            status=Payout.STATUS_PENDING,
            payment_method=settings.payment_method,
        )
        db.session.add(payout)
        db.session.flush()

        record_ids = [record.id for record in records]
        updated = (
            CommissionRecord.query.filter(
                CommissionRecord.id.in_(record_ids),
                CommissionRecord.status == CommissionRecord.STATUS_PENDING,
                CommissionRecord.payout_id.is_(None),
            ).update(
                {
                    CommissionRecord.status: CommissionRecord.STATUS_PAID,
                    CommissionRecord.payout_id: payout.id,
                    CommissionRecord.processed_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )
        )
        if updated != len(record_ids):
            raise ConsistencyViolation(
                'Commission records changed while being paid out',
                details={'vendor_id': vendor_id, 'expected': len(record_ids), 'updated': updated},
            )

        db.session.commit()
        audit_logger.info(
            "Payout %s vendor=%s total=%s records=%s period=[%s, %s)",
            payout.id, vendor_id, total, len(record_ids), period_start.isoformat(), period_end.isoformat(),
        )
        return payout.id

    def generate_payouts_for_period(self, period_start: datetime, period_end: datetime) -> List[Dict[str, Any]]:
        """Run ``generate_payout`` for every vendor with active settings.

        Each vendor gets its own result entry; a failing vendor is reported
        with its error code and does not stop the batch. Consistency
        violations are never collected: they abort the batch.
        """
        results = []
        for vendor_id in self._active_vendor_ids():
            try:
                payout_id = self.generate_payout(vendor_id, period_start, period_end)
                results.append({'vendor_id': vendor_id, 'payout_id': payout_id, 'error': None})
            except ConsistencyViolation:
                raise
            except ServiceException as e:
                self._log_error(f"Payout failed for vendor {vendor_id}: {e.message}")
                results.append({'vendor_id': vendor_id, 'payout_id': None, 'error': e.code, 'message': e.message})
        created = sum(1 for result in results if result['payout_id'])
        self._log_info(f"Payout batch {period_start:%Y-%m-%d}..{period_end:%Y-%m-%d}: {created} payout(s) created")
        return results

    def _active_vendor_ids(self) -> List[int]:
        return [
            vendor_id
            for (vendor_id,) in db.session.query(CommissionSettings.vendor_id)
            .join(Vendor, Vendor.id == CommissionSettings.vendor_id)
            .filter(CommissionSettings.is_active.is_(True), Vendor.role == Vendor.ROLE_VENDOR)
            .order_by(CommissionSettings.vendor_id)
        ]

    # ===== Subscription fees =====

    def charge_subscription_fee(self, vendor_id: int, period_start: datetime, period_end: datetime) -> Optional[int]:
        """Cobra la cuota mensual del plan del vendedor para ``[period_start, period_end)``.

        La cuota se registra como un Payout PENDING con monto negativo y
        ``payment_method = SUBSCRIPTION_FEE``. Devuelve el id del cargo, o
        ``None`` si el plan no tiene cuota o el periodo ya fue cobrado.
        """
        if period_start >= period_end:
            raise ValidationException(
                'period_start must be before period_end',
                details={'period_start': period_start.isoformat(), 'period_end': period_end.isoformat()},
            )

        self.commission_service.get_vendor_or_fail(vendor_id)

        with _vendor_lock(vendor_id):
            try:
                return self._charge_fee_locked(vendor_id, period_start, period_end)
            except (ValidationException, NotFoundException):
                db.session.rollback()
                raise
            except SQLAlchemyError as e:
                db.session.rollback()
                self._log_error(f"Error charging subscription fee for vendor {vendor_id}: {e}")
                raise ServiceException(f"Error charging subscription fee: {e}")

    def _charge_fee_locked(self, vendor_id: int, period_start: datetime, period_end: datetime) -> Optional[int]:
        vendor = db.session.execute(
            select(Vendor).where(Vendor.id == vendor_id).with_for_update()
        ).scalar_one_or_none()
        if vendor is None:
            raise NotFoundException('Vendor', vendor_id)

        plan = get_plan(vendor.plan_type)
        fee = quantize_money(plan.monthly_fee)
        if fee <= 0:
            db.session.rollback()
            return None

        existing = Payout.query.filter_by(
            vendor_id=vendor_id,
            payment_method=Payout.METHOD_SUBSCRIPTION_FEE,
            period_start=period_start,
        ).first()
        if existing is not None:
            db.session.rollback()
            return None

        charge = Payout(
            vendor_id=vendor_id,
            total_amount=-fee,
            commission_count=0,
            period_start=period_start,
            period_end=period_end,
            status=Payout.STATUS_PENDING,
            payment_method=Payout.METHOD_SUBSCRIPTION_FEE,
        )
        db.session.add(charge)
        db.session.commit()
        audit_logger.info(
            "Subscription fee %s vendor=%s plan=%s amount=%s period=[%s, %s)",
            charge.id, vendor_id, plan.name, -fee, period_start.isoformat(), period_end.isoformat(),
        )
        return charge.id

    def charge_subscription_fees(self, period_start: datetime, period_end: datetime) -> List[Dict[str, Any]]:
        """Cobra la cuota mensual a cada vendedor activo; un error no corta el lote."""
        results = []
        for vendor_id in self._active_vendor_ids():
            try:
                fee_id = self.charge_subscription_fee(vendor_id, period_start, period_end)
                results.append({'vendor_id': vendor_id, 'payout_id': fee_id, 'error': None})
            except ServiceException as e:
                self._log_error(f"Subscription fee failed for vendor {vendor_id}: {e.message}")
                results.append({'vendor_id': vendor_id, 'payout_id': None, 'error': e.code, 'message': e.message})
        charged = sum(1 for result in results if result['payout_id'])
        self._log_info(f"Subscription fees {period_start:%Y-%m-%d}..{period_end:%Y-%m-%d}: {charged} charge(s)")
        return results

    def get_vendor_payouts(self, vendor_id: int, currency: str = 'USD') -> List[Dict[str, Any]]:
        self.commission_service.get_vendor_or_fail(vendor_id)
        payouts = Payout.query.filter_by(vendor_id=vendor_id).order_by(Payout.created_at.desc(), Payout.id.desc()).all()

        display_currency = resolve_display_currency(currency)
        rate_table = get_rate_table(current_app.config.get('BASE_CURRENCY', 'USD'))
        amounts = convert_many([payout.total_amount for payout in payouts], display_currency, rate_table)

        return [
            {
                'id': payout.id,
                'total_amount': amount,
                'currency': display_currency,
                'commission_count': payout.commission_count,
                'period_start': payout.period_start.isoformat(),
                'period_end': payout.period_end.isoformat(),
                'status': payout.status,
                'payment_method': payout.payment_method,
                'created_at': payout.created_at.isoformat(),
                'processed_at': payout.processed_at.isoformat() if payout.processed_at else None,
            }
            for payout, amount in zip(payouts, amounts)
        ]

    def complete_payout(self, payout_id: int) -> Payout:
        """Mark a payout as disbursed (PENDING -> COMPLETED)."""
        payout = self.get_by_id_or_fail(payout_id)
        if payout.status == Payout.STATUS_COMPLETED:
            return payout
        if payout.status != Payout.STATUS_PENDING:
            raise ValidationException(
                f"Payout {payout_id} is {payout.status} and cannot be completed",
                details={'payout_id': payout_id, 'status': payout.status},
            )
        payout.status = Payout.STATUS_COMPLETED
        payout.processed_at = datetime.utcnow()
        self.commit()
        audit_logger.info("Payout %s completed vendor=%s total=%s", payout.id, payout.vendor_id, payout.total_amount)
        return payout
