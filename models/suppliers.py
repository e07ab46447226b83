"""
Modelos de Proveedores dropshipping y sus ordenes
"""

from datetime import datetime
from decimal import Decimal

from extensions import db


class Supplier(db.Model):
    """Proveedor dropshipping con integracion por API"""
    __tablename__ = 'suppliers'

    STATUS_ACTIVE = 'ACTIVE'
    STATUS_INACTIVE = 'INACTIVE'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=STATUS_ACTIVE)
    contact_email = db.Column(db.String(120))
    api_endpoint = db.Column(db.String(500))
    api_key = db.Column(db.String(500))
    api_email = db.Column(db.String(120))  # login de la API (CJ Dropshipping)
    average_shipping = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0'))
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    # Relaciones
    products = db.relationship('Product', back_populates='supplier')
    orders = db.relationship('SupplierOrder', back_populates='supplier', lazy='dynamic')

    def __repr__(self):
        return f'<Supplier {self.name}>'

    @property
    def is_active(self):
        return self.status == self.STATUS_ACTIVE

    @property
    def has_credentials(self):
        return bool(self.api_endpoint and self.api_key)


class SupplierOrder(db.Model):
    """Orden enviada a un proveedor a partir de items de una orden de la tienda"""
    __tablename__ = 'supplier_orders'

    PENDING = 'PENDING'
    SENT = 'SENT'
    SHIPPED = 'SHIPPED'
    FAILED = 'FAILED'
    DELIVERED = 'DELIVERED'
    CANCELLED = 'CANCELLED'

    STATUSES = (PENDING, SENT, SHIPPED, FAILED, DELIVERED, CANCELLED)

    id = db.Column(db.Integer, primary_key=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey('suppliers.id'), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=PENDING, index=True)
    external_order_id = db.Column(db.String(100))  # solo tras un envio exitoso
    total_cost = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0'))
    shipping_cost = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0'))
    currency = db.Column(db.String(3), nullable=False, default='USD')
    tracking_number = db.Column(db.String(100))
    tracking_url = db.Column(db.String(500))
    carrier = db.Column(db.String(100))
    estimated_delivery = db.Column(db.DateTime)
    error_message = db.Column(db.Text)
    notes = db.Column(db.Text)
    last_checked_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    supplier = db.relationship('Supplier', back_populates='orders')
    order = db.relationship('Order', back_populates='supplier_orders')
    items = db.relationship('OrderItem', back_populates='supplier_order')

    def __repr__(self):
        return f'<SupplierOrder {self.id} supplier={self.supplier_id} {self.status}>'


class DropshippingSettings(db.Model):
    """Configuracion global de dropshipping (fila unica)"""
    __tablename__ = 'dropshipping_settings'

    id = db.Column(db.Integer, primary_key=True)
    auto_send_orders = db.Column(db.Boolean, nullable=False, default=False)
    notify_customer_on_shipment = db.Column(db.Boolean, nullable=False, default=True)
    status_check_interval = db.Column(db.Integer, nullable=False, default=12)  # horas
    default_cost_ratio = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal('0.70'))
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f'<DropshippingSettings auto_send={self.auto_send_orders}>'

    @classmethod
    def get_or_create(cls):
        settings = cls.query.order_by(cls.id).first()
        if settings is None:
            settings = cls(
                auto_send_orders=False,
                notify_customer_on_shipment=True,
                status_check_interval=12,
                default_cost_ratio=Decimal('0.70'),
            )
            db.session.add(settings)
            db.session.commit()
        return settings
