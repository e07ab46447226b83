"""
Dropshipping
============
Integracion con proveedores: rate limiting por proveedor, cache de tokens,
clientes HTTP y sincronizacion de ordenes.
"""

from services.dropshipping.clients import (
    AliExpressClient,
    CJDropshippingClient,
    GenericSupplierApiClient,
    SupplierApiClient,
    create_supplier_client,
)
from services.dropshipping.rate_limit import AUTH, DATA, SupplierRateLimiter
from services.dropshipping.sync import (
    SupplierOrderSync,
    check_order_updates,
    get_supplier_sync,
    plan_transition,
)
from services.dropshipping.token_cache import InMemoryTokenCache, RedisTokenCache, TokenCache, build_token_cache

__all__ = [
    'AUTH',
    'DATA',
    'AliExpressClient',
    'CJDropshippingClient',
    'GenericSupplierApiClient',
    'InMemoryTokenCache',
    'RedisTokenCache',
    'SupplierApiClient',
    'SupplierOrderSync',
    'SupplierRateLimiter',
    'TokenCache',
    'build_token_cache',
    'check_order_updates',
    'create_supplier_client',
    'get_supplier_sync',
    'plan_transition',
]
