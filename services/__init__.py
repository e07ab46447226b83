"""
Services Package
================
Capa de servicios para la logica de negocio del marketplace.

Estructura:
-----------
- base: Clase base y excepciones
- currency: Conversion de moneda para dashboards y pagos
- commission_rates: Resolucion pura de tasas, fees y bonos
- commission_service: Calculo de comisiones, settings y analytics
- payout_service: Generacion de pagos a vendedores
- dropshipping: Sincronizacion de ordenes con proveedores
- notifications: Avisos de despacho al cliente

Uso:
----
    from services import CommissionService, PayoutService

    commissions = CommissionService()
    breakdowns = commissions.create_commissions_for_order(order_id=1)

    payouts = PayoutService(commissions)
    payout_id = payouts.generate_payout(vendor_id=3, period_start=start, period_end=end)
"""

# Base service and exceptions
from services.base import (
    BaseService,
    ConsistencyViolation,
    ExternalServiceException,
    InvalidInput,
    NotFoundException,
    RateLimitedException,
    ServiceException,
    ValidationException,
)

# Domain services
from services.commission_service import CommissionService
from services.payout_service import PayoutService
from services.notifications import ShipmentNotifier


__all__ = [
    # Base classes
    'BaseService',
    'ServiceException',
    'ValidationException',
    'InvalidInput',
    'NotFoundException',
    'RateLimitedException',
    'ExternalServiceException',
    'ConsistencyViolation',

    # Domain services
    'CommissionService',
    'PayoutService',
    'ShipmentNotifier',
]
