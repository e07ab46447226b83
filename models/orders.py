"""
Modelos de Productos y Ordenes de la tienda
"""

from datetime import datetime
from decimal import Decimal

from extensions import db


class Product(db.Model):
    """Producto de la tienda; puede pertenecer a un vendedor o a un proveedor dropshipping"""
    __tablename__ = 'products'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    sku = db.Column(db.String(100), unique=True)
    price = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0'))
    cost_price = db.Column(db.Numeric(12, 2))
    vendor_id = db.Column(db.Integer, db.ForeignKey('vendors.id'), index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey('suppliers.id'), index=True)
    supplier_product_id = db.Column(db.String(100))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    # Relaciones
    vendor = db.relationship('Vendor', back_populates='products')
    supplier = db.relationship('Supplier', back_populates='products')

    def __repr__(self):
        return f'<Product {self.sku or self.id}>'


class Order(db.Model):
    """Orden de compra de un cliente"""
    __tablename__ = 'orders'

    STATUS_PENDING = 'PENDING'
    STATUS_PROCESSING = 'PROCESSING'
    STATUS_SHIPPED = 'SHIPPED'
    STATUS_DELIVERED = 'DELIVERED'
    STATUS_CANCELLED = 'CANCELLED'
    STATUS_REFUNDED = 'REFUNDED'

    FULFILLMENT_PENDING = 'PENDING'
    FULFILLMENT_PARTIAL = 'PARTIALLY_FULFILLED'
    FULFILLMENT_FULFILLED = 'FULFILLED'

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(50), unique=True, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING)
    fulfillment_status = db.Column(db.String(30), nullable=False, default=FULFILLMENT_PENDING)
    customer_name = db.Column(db.String(200))
    customer_email = db.Column(db.String(120))
    shipping_address = db.Column(db.JSON)
    total = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0'))
    currency = db.Column(db.String(3), nullable=False, default='USD')
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = db.relationship('OrderItem', back_populates='order', cascade='all, delete-orphan')
    supplier_orders = db.relationship('SupplierOrder', back_populates='order')

    def __repr__(self):
        return f'<Order {self.order_number} {self.status}>'


class OrderItem(db.Model):
    """Linea de una orden"""
    __tablename__ = 'order_items'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey('products.id'), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    total = db.Column(db.Numeric(12, 2), nullable=False)
    supplier_order_id = db.Column(db.Integer, db.ForeignKey('supplier_orders.id'), index=True)
    supplier_order_status = db.Column(db.String(20))
    supplier_tracking_number = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    order = db.relationship('Order', back_populates='items')
    product = db.relationship('Product')
    supplier_order = db.relationship('SupplierOrder', back_populates='items')

    def __repr__(self):
        return f'<OrderItem {self.id} order={self.order_id} x{self.quantity}>'
