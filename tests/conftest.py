"""
Pytest configuration and fixtures for the commission and dropshipping tests.
"""
import os
import tempfile
from datetime import datetime
from decimal import Decimal

import pytest

# Set test environment variables before importing app
os.environ['FLASK_ENV'] = 'testing'
os.environ['SECRET_KEY'] = 'test-secret-key-for-testing-only'
os.environ['TESTING'] = '1'
os.environ.pop('REDIS_URL', None)

# File-backed SQLite so worker threads see the same database
test_db_fd, test_db_path = tempfile.mkstemp(suffix='.db')
os.environ['DATABASE_URL'] = f'sqlite:///{test_db_path}'
test_log_dir = tempfile.mkdtemp(prefix='uniqverse-logs-')
os.environ['LOG_DIR'] = test_log_dir

from app import create_app
from extensions import db
from models import (
    CommissionSettings,
    DropshippingSettings,
    Order,
    OrderItem,
    Product,
    Supplier,
    Vendor,
)


@pytest.fixture(scope='session')
def app():
    """Create and configure a Flask app instance for testing."""
    flask_app = create_app()
    flask_app.config.update({
        'TESTING': True,
        'BASE_CURRENCY': 'USD',
        'DEFAULT_MINIMUM_PAYOUT': Decimal('25.00'),
    })

    with flask_app.app_context():
        db.create_all()

        yield flask_app

        db.session.remove()
        db.drop_all()

    os.close(test_db_fd)
    os.unlink(test_db_path)


@pytest.fixture(autouse=True)
def clean_tables(app):
    """Empty every table after each test."""
    yield
    db.session.rollback()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    db.session.expunge_all()


@pytest.fixture(scope='function')
def runner(app):
    """Create a CLI runner for testing CLI commands."""
    return app.test_cli_runner()


@pytest.fixture
def make_vendor(app):
    counter = {'n': 0}

    def _make_vendor(plan_type='STARTER', role=Vendor.ROLE_VENDOR, average_rating=None, settings=None):
        counter['n'] += 1
        vendor = Vendor(
            name=f'Vendor {counter["n"]}',
            email=f'vendor{counter["n"]}@example.com',
            role=role,
            plan_type=plan_type,
            average_rating=average_rating,
        )
        db.session.add(vendor)
        db.session.flush()
        if settings is not None:
            values = {
                'default_commission_rate': Decimal('0.90'),
                'minimum_payout': Decimal('25.00'),
            }
            values.update(settings)
            db.session.add(CommissionSettings(vendor_id=vendor.id, **values))
        db.session.commit()
        return vendor

    return _make_vendor


@pytest.fixture
def make_product(app):
    counter = {'n': 0}

    def _make_product(vendor=None, supplier=None, price='10.00', cost_price=None, supplier_product_id=None):
        counter['n'] += 1
        product = Product(
            name=f'Product {counter["n"]}',
            sku=f'SKU-{counter["n"]}',
            price=Decimal(price),
            cost_price=Decimal(cost_price) if cost_price is not None else None,
            vendor_id=vendor.id if vendor else None,
            supplier_id=supplier.id if supplier else None,
            supplier_product_id=supplier_product_id,
        )
        db.session.add(product)
        db.session.commit()
        return product

    return _make_product


@pytest.fixture
def make_order(app):
    counter = {'n': 0}

    def _make_order(lines, status=Order.STATUS_PROCESSING, created_at=None, customer_email='buyer@example.com'):
        """``lines`` is a list of ``(product, quantity)`` or ``(product, quantity, unit_price)``."""
        counter['n'] += 1
        order = Order(
            order_number=f'ORD-{counter["n"]:05d}',
            status=status,
            customer_name='Jane Buyer',
            customer_email=customer_email,
            shipping_address={
                'address1': '1 Main St',
                'city': 'Springfield',
                'state': 'IL',
                'postal_code': '62701',
                'country': 'US',
                'phone': '+1 555 0100',
            },
            created_at=created_at or datetime.utcnow(),
        )
        total = Decimal('0')
        for line in lines:
            product, quantity = line[0], line[1]
            unit_price = Decimal(line[2]) if len(line) > 2 else Decimal(product.price)
            line_total = unit_price * quantity
            total += line_total
            order.items.append(
                OrderItem(product_id=product.id, quantity=quantity, price=unit_price, total=line_total)
            )
        order.total = total
        db.session.add(order)
        db.session.commit()
        return order

    return _make_order


@pytest.fixture
def make_supplier(app):
    counter = {'n': 0}

    def _make_supplier(api_endpoint='https://api.supplier.test/v1', api_key='secret-key', api_email=None,
                       status=Supplier.STATUS_ACTIVE, average_shipping='5.00'):
        counter['n'] += 1
        supplier = Supplier(
            name=f'Supplier {counter["n"]}',
            status=status,
            api_endpoint=api_endpoint,
            api_key=api_key,
            api_email=api_email,
            average_shipping=Decimal(average_shipping),
        )
        db.session.add(supplier)
        db.session.commit()
        return supplier

    return _make_supplier


@pytest.fixture
def dropshipping_settings(app):
    settings = DropshippingSettings.get_or_create()
    return settings


# Markers for categorizing tests
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (fast)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (slower)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )
