"""
Tareas programadas (Celery beat)
Cada tarea abre su propio app context; los reintentos los decide el scheduler.
"""
import logging

from celery_app import celery

logger = logging.getLogger(__name__)

_flask_app = None


def _get_app():
    global _flask_app
    if _flask_app is None:
        from app import create_app

        _flask_app = create_app()
    return _flask_app


@celery.task(name='dropshipping.check_order_updates')
def check_order_updates():
    """Poll supplier APIs for SENT/SHIPPED/FAILED orders."""
    app = _get_app()
    with app.app_context():
        from services.dropshipping.sync import get_supplier_sync

        result = get_supplier_sync(app).poll()
        logger.info(
            "check_order_updates: checked=%s updated=%s deferred=%s errors=%s",
            result.checked, len(result.updates), len(result.deferred), len(result.errors),
        )
        return result.to_dict()


def _billing_period(start, end):
    """``[start, end)`` from ISO dates; both or neither, else the previous month."""
    from datetime import datetime

    from services.base import ValidationException
    from services.payout_service import previous_month_period

    if (start is None) != (end is None):
        raise ValidationException(
            'start and end must be given together', details={'start': start, 'end': end}
        )
    if start is None:
        return previous_month_period()
    try:
        return datetime.fromisoformat(start), datetime.fromisoformat(end)
    except (TypeError, ValueError):
        raise ValidationException('Invalid period dates', details={'start': start, 'end': end})


@celery.task(name='commissions.generate_monthly_payouts')
def generate_monthly_payouts(start=None, end=None):
    """Generate payouts for the previous calendar month, or for ``[start, end)`` (ISO dates)."""
    app = _get_app()
    with app.app_context():
        from services.payout_service import PayoutService

        period_start, period_end = _billing_period(start, end)
        results = PayoutService().generate_payouts_for_period(period_start, period_end)
        return {
            'period_start': period_start.isoformat(),
            'period_end': period_end.isoformat(),
            'results': results,
        }


@celery.task(name='commissions.charge_subscription_fees')
def charge_subscription_fees(start=None, end=None):
    """Charge each active vendor's plan fee once per billing period."""
    app = _get_app()
    with app.app_context():
        from services.payout_service import PayoutService

        period_start, period_end = _billing_period(start, end)
        results = PayoutService().charge_subscription_fees(period_start, period_end)
        logger.info(
            "charge_subscription_fees: period=%s charged=%s",
            period_start.date().isoformat(), sum(1 for result in results if result['payout_id']),
        )
        return {
            'period_start': period_start.isoformat(),
            'period_end': period_end.isoformat(),
            'results': results,
        }
