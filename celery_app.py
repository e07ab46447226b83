"""
Celery Application Configuration
Broker Redis; beat dispara el polling de proveedores, los pagos mensuales y
el cobro de las cuotas de plan.
"""
import os

from celery import Celery
from celery.schedules import crontab


def make_celery(app_name=__name__):
    """Create and configure Celery app"""

    broker_url = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/1')
    result_backend = os.getenv('CELERY_RESULT_BACKEND', 'redis://localhost:6379/2')

    celery_app = Celery(
        app_name,
        broker=broker_url,
        backend=result_backend,
        include=['tasks'],
    )

    celery_app.conf.update(
        task_serializer='json',
        accept_content=['json'],
        result_serializer='json',
        timezone='UTC',
        enable_utc=True,
        task_track_started=True,
        task_time_limit=30 * 60,  # 30 minutes
        worker_prefetch_multiplier=4,
        worker_max_tasks_per_child=1000,
    )

    poll_hours = int(os.getenv('DROPSHIPPING_POLL_HOURS', '12'))
    celery_app.conf.beat_schedule = {
        'dropshipping-check-order-updates': {
            'task': 'dropshipping.check_order_updates',
            'schedule': crontab(minute=0, hour=f'*/{poll_hours}'),
        },
        'commissions-generate-monthly-payouts': {
            'task': 'commissions.generate_monthly_payouts',
            # first day of the month, for the month that just closed
            'schedule': crontab(minute=30, hour=2, day_of_month=1),
        },
        'commissions-charge-subscription-fees': {
            'task': 'commissions.charge_subscription_fees',
            'schedule': crontab(minute=0, hour=3, day_of_month=1),
        },
    }

    return celery_app


celery = make_celery('uniqverse')


if __name__ == '__main__':
    celery.start()
