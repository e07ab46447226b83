"""
Models Package
==============
Este paquete contiene todos los modelos del sistema organizados por funcionalidad.

Estructura:
- vendors: Vendor, CommissionSettings
- commissions: CommissionRecord, Payout
- orders: Product, Order, OrderItem
- suppliers: Supplier, SupplierOrder, DropshippingSettings
- exchange: ExchangeRate
"""

from extensions import db

# Vendors and commission configuration
from models.vendors import (
    Vendor,
    CommissionSettings,
)

# Commission ledger and payouts
from models.commissions import (
    CommissionRecord,
    Payout,
)

# Storefront orders
from models.orders import (
    Product,
    Order,
    OrderItem,
)

# Dropshipping
from models.suppliers import (
    Supplier,
    SupplierOrder,
    DropshippingSettings,
)

# Currency
from models.exchange import ExchangeRate


__all__ = [
    'db',
    # Vendors
    'Vendor',
    'CommissionSettings',
    # Commissions
    'CommissionRecord',
    'Payout',
    # Orders
    'Product',
    'Order',
    'OrderItem',
    # Suppliers
    'Supplier',
    'SupplierOrder',
    'DropshippingSettings',
    # Currency
    'ExchangeRate',
]
