"""
Redis Configuration for Uniqverse
=================================
Proporciona el cliente Redis compartido (cache de tokens de proveedores) y
utilidades para invalidar claves por patron.

Uso:
    from config.cache_config import get_cache

    client = get_cache().get_client()
"""

import logging
import os
from typing import Optional

import redis

logger = logging.getLogger(__name__)

KEY_NAMESPACE = 'uniqverse'


class CacheConfig:
    """Configuracion centralizada del cliente Redis"""

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or os.getenv('REDIS_URL')
        self.enabled = self.redis_url is not None
        self.redis_client: Optional[redis.Redis] = None

        if self.enabled:
            try:
                self.redis_client = redis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_connect_timeout=2,
                    socket_timeout=2
                )
                # Test connection
                self.redis_client.ping()
                logger.info("Redis configurado: %s", self.redis_url)
            except redis.RedisError as e:
                logger.warning("Redis no disponible (%s): %s", self.redis_url, e)
                self.enabled = False
                self.redis_client = None

    def get_client(self) -> Optional[redis.Redis]:
        """Retorna el cliente Redis si esta disponible"""
        return self.redis_client if self.enabled else None

    def is_enabled(self) -> bool:
        """Verifica si Redis esta habilitado y funcionando"""
        return self.enabled and self.redis_client is not None


_cache_config: Optional[CacheConfig] = None


def get_cache(redis_url: Optional[str] = None) -> CacheConfig:
    """Retorna la configuracion de Redis del proceso, creandola en el primer uso"""
    global _cache_config
    if _cache_config is None or (redis_url and redis_url != _cache_config.redis_url):
        _cache_config = CacheConfig(redis_url)
    return _cache_config


def build_key(*parts) -> str:
    """Construye una clave con el namespace del proyecto: ``uniqverse:a:b``"""
    return ':'.join([KEY_NAMESPACE, *(str(part) for part in parts)])


def invalidate_pattern(pattern: str, client: Optional[redis.Redis] = None) -> int:
    """
    Invalida multiples claves que coincidan con un patron.

    Args:
        pattern: Patron de busqueda (ej: 'uniqverse:supplier_tokens:*')
        client: Cliente Redis a usar; por defecto el del proceso

    Returns:
        Numero de claves eliminadas
    """
    if client is None:
        cache = get_cache()
        if not cache.is_enabled():
            return 0
        client = cache.get_client()

    keys = list(client.scan_iter(match=pattern, count=100))
    if keys:
        return client.delete(*keys)
    return 0
