"""
Modelos del libro de comisiones y pagos a vendedores
"""

from datetime import datetime

from extensions import db


class CommissionRecord(db.Model):
    """Comision de un item de orden atribuido a un vendedor.

    Inmutable salvo por las transiciones de estado; nunca se borra.
    """
    __tablename__ = 'commission_records'

    STATUS_PENDING = 'PENDING'
    STATUS_PAID = 'PAID'
    STATUS_CANCELLED = 'CANCELLED'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey('order_items.id'), nullable=False)
    vendor_id = db.Column(db.Integer, db.ForeignKey('vendors.id'), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('products.id'))
    sale_amount = db.Column(db.Numeric(12, 2), nullable=False)
    commission_rate = db.Column(db.Numeric(6, 4), nullable=False)
    base_commission = db.Column(db.Numeric(12, 2), nullable=False)
    commission_amount = db.Column(db.Numeric(12, 2), nullable=False)  # ganancia del vendedor
    platform_earnings = db.Column(db.Numeric(12, 2), nullable=False)
    transaction_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    performance_bonus = db.Column(db.Numeric(12, 2), nullable=False, default=0)  # negativo = penalidad
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING)
    payout_id = db.Column(db.Integer, db.ForeignKey('payouts.id'), index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    processed_at = db.Column(db.DateTime)

    __table_args__ = (
        db.UniqueConstraint('order_item_id', 'vendor_id', name='uq_commission_records_item_vendor'),
        db.Index('ix_commission_records_vendor_status_created', 'vendor_id', 'status', 'created_at'),
    )

    vendor = db.relationship('Vendor', back_populates='commission_records')
    payout = db.relationship('Payout', back_populates='records')
    order_item = db.relationship('OrderItem')

    def __repr__(self):
        return f'<CommissionRecord item={self.order_item_id} vendor={self.vendor_id} {self.status}>'


class Payout(db.Model):
    """Pago agrupado de comisiones de un vendedor sobre [period_start, period_end)"""
    __tablename__ = 'payouts'

    STATUS_PENDING = 'PENDING'
    STATUS_COMPLETED = 'COMPLETED'
    STATUS_FAILED = 'FAILED'

    # cuota mensual del plan: total_amount negativo, sin comisiones asociadas
    METHOD_SUBSCRIPTION_FEE = 'SUBSCRIPTION_FEE'

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey('vendors.id'), nullable=False, index=True)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    commission_count = db.Column(db.Integer, nullable=False, default=0)
    period_start = db.Column(db.DateTime, nullable=False)
    period_end = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING)
    payment_method = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    processed_at = db.Column(db.DateTime)

    vendor = db.relationship('Vendor', back_populates='payouts')
    records = db.relationship('CommissionRecord', back_populates='payout', lazy='dynamic')

    def __repr__(self):
        return f'<Payout {self.id} vendor={self.vendor_id} {self.total_amount} {self.status}>'
