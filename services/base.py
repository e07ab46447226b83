"""
Base Service Class
==================
Clase base para todos los servicios del sistema.
Proporciona la jerarquia de excepciones y patrones reutilizables.
"""

from typing import TypeVar, Generic, Type, Optional, Any
from flask import current_app, has_app_context
from extensions import db
from sqlalchemy.exc import SQLAlchemyError


T = TypeVar('T')


class ServiceException(Exception):
    """Excepción base para errores de servicios"""
    def __init__(self, message: str, code: str = 'SERVICE_ERROR', details: Optional[dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {'error': self.code, 'message': self.message, 'details': self.details}


class ValidationException(ServiceException):
    """Excepción para errores de validación (monto no positivo, tabla de tiers mal formada)"""
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, code='VALIDATION_ERROR', details=details)


InvalidInput = ValidationException


class NotFoundException(ServiceException):
    """Excepción cuando no se encuentra un recurso"""
    def __init__(self, resource: str, identifier: Any):
        message = f"{resource} with id {identifier} not found"
        super().__init__(message, code='NOT_FOUND', details={'resource': resource, 'id': identifier})


class RateLimitedException(ServiceException):
    """La llamada al proveedor se difiere: la ventana de rate limit no vencio"""
    def __init__(self, supplier_id: Any, kind: str, retry_after: float):
        self.supplier_id = supplier_id
        self.kind = kind
        self.retry_after = max(0.0, float(retry_after))
        message = f"Supplier {supplier_id} {kind} calls are rate limited; retry in {self.retry_after:.1f}s"
        super().__init__(
            message,
            code='RATE_LIMITED',
            details={'supplier_id': supplier_id, 'kind': kind, 'retry_after': self.retry_after},
        )


class ExternalServiceException(ServiceException):
    """Error de una API externa (respuesta no 2xx, timeout, error de red)"""
    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        self.service = service
        self.status_code = status_code
        super().__init__(
            f"{service}: {message}",
            code='EXTERNAL_SERVICE_ERROR',
            details={'service': service, 'status_code': status_code},
        )


class ConsistencyViolation(ServiceException):
    """Error de integridad financiera. Nunca debe silenciarse."""
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, code='CONSISTENCY_VIOLATION', details=details)


class BaseService(Generic[T]):
    """
    Servicio base con operaciones comunes.

    Los servicios específicos deben heredar de esta clase y definir:
    - model_class: La clase del modelo SQLAlchemy
    """

    model_class: Type[T] = None

    def __init__(self):
        if self.model_class is None:
            raise NotImplementedError("model_class debe estar definido en la subclase")

    # ===== Lookups =====

    def get_by_id(self, id: int) -> Optional[T]:
        """Obtiene un registro por ID"""
        return db.session.get(self.model_class, id)

    def get_by_id_or_fail(self, id: int) -> T:
        """Obtiene un registro por ID o lanza excepción"""
        instance = self.get_by_id(id)
        if not instance:
            raise NotFoundException(self.model_class.__name__, id)
        return instance

    # ===== Transaction Management =====

    def commit(self):
        """Commit explícito de la sesión"""
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise ServiceException(f"Error saving changes: {str(e)}")

    # ===== Logging Helpers =====

    def _log_info(self, message: str):
        """Log de información"""
        if has_app_context():
            current_app.logger.info(f"[{self.__class__.__name__}] {message}")

    def _log_error(self, message: str):
        """Log de error"""
        if has_app_context():
            current_app.logger.error(f"[{self.__class__.__name__}] {message}")

    def _log_critical(self, message: str):
        """Log critico: integridad de datos comprometida"""
        if has_app_context():
            current_app.logger.critical(f"[{self.__class__.__name__}] {message}")
