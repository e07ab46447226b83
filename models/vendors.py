"""
Modelos de Vendedores y su configuracion de comisiones
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import validates

from extensions import db


class Vendor(db.Model):
    """Cuenta de vendedor del marketplace (o staff de la plataforma)"""
    __tablename__ = 'vendors'

    ROLE_VENDOR = 'VENDOR'
    ROLE_ADMIN = 'ADMIN'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    role = db.Column(db.String(20), nullable=False, default=ROLE_VENDOR)
    plan_type = db.Column(db.String(20), nullable=False, default='STARTER')
    average_rating = db.Column(db.Numeric(3, 2))  # 1 a 5, calculado fuera de este modulo
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    # Relaciones
    products = db.relationship('Product', back_populates='vendor')
    commission_settings = db.relationship(
        'CommissionSettings', back_populates='vendor', uselist=False, cascade='all, delete-orphan'
    )
    commission_records = db.relationship('CommissionRecord', back_populates='vendor', lazy='dynamic')
    payouts = db.relationship('Payout', back_populates='vendor', lazy='dynamic')

    def __repr__(self):
        return f'<Vendor {self.email} ({self.plan_type})>'

    @property
    def is_vendor(self):
        return self.role == self.ROLE_VENDOR


class CommissionSettings(db.Model):
    """Configuracion de comisiones de un vendedor (una por vendedor)"""
    __tablename__ = 'commission_settings'

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey('vendors.id'), nullable=False, unique=True)
    default_commission_rate = db.Column(db.Numeric(6, 4), nullable=False)
    # Lista ordenada de {"threshold": "1000.00", "rate": "0.0800"}; None = tasa plana
    tiered_rates = db.Column(db.JSON)
    minimum_payout = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('25.00'))
    payment_method = db.Column(db.String(50), nullable=False, default='bank_transfer')
    payment_details = db.Column(db.JSON)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    vendor = db.relationship('Vendor', back_populates='commission_settings')

    def __repr__(self):
        return f'<CommissionSettings vendor={self.vendor_id} rate={self.default_commission_rate}>'

    @validates('default_commission_rate')
    def _validate_default_rate(self, key, value):
        from services.commission_rates import normalize_rate

        return normalize_rate(value, field=key)

    @validates('tiered_rates')
    def _validate_tiered_rates(self, key, value):
        from services.commission_rates import normalize_tier_table

        if not value:
            return None
        return [
            {'threshold': str(tier.threshold), 'rate': str(tier.rate)}
            for tier in normalize_tier_table(value)
        ]

    @validates('minimum_payout')
    def _validate_minimum_payout(self, key, value):
        from services.commission_rates import to_decimal

        amount = to_decimal(value, field=key)
        if amount < 0:
            from services.base import ValidationException

            raise ValidationException('minimum_payout must not be negative', details={'minimum_payout': str(amount)})
        return amount
