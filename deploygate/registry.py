"""
Adapter registry.

Holds the configured adapters by name together with their metadata: the
default flag, enablement and the result of the most recent health check.
Health is checked once at registration and again whenever
``check_health`` is called; there is no background loop.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from .adapters.base import DMSAdapter
from .errors import NotFoundError, ValidationError
from .models import AdapterInfo, Capability
from .telemetry import record_health, traced

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Named adapters with default selection and capability lookup."""

    def __init__(self, health_timeout: float = 10.0):
        self.health_timeout = health_timeout
        self._adapters: dict[str, DMSAdapter] = {}
        self._meta: dict[str, AdapterInfo] = {}
        self._default: Optional[str] = None
        self._lock = asyncio.Lock()

    async def _check_adapter(self, adapter: DMSAdapter) -> Optional[str]:
        """Run one health check and return the error message, if any."""
        try:
            await asyncio.wait_for(adapter.health(), timeout=self.health_timeout)
        except asyncio.TimeoutError:
            return f"health check timed out after {self.health_timeout}s"
        except Exception as e:  # noqa: BLE001
            return str(e) or type(e).__name__
        return None

    async def register(
        self,
        adapter: DMSAdapter,
        default: bool = False,
        config: Optional[dict[str, Any]] = None,
    ) -> AdapterInfo:
        """Register an adapter under its name.

        An initial health check runs before the adapter is added; a failure
        is recorded in the metadata rather than raised.

        Raises:
            ValidationError: an adapter with the same name is already registered.
        """
        async with self._lock:
            if adapter.name in self._adapters:
                raise ValidationError(f"adapter {adapter.name} already registered")

            error = await self._check_adapter(adapter)
            if error:
                logger.warning("Adapter %s failed initial health check: %s", adapter.name, error)

            now = datetime.now(timezone.utc)
            info = AdapterInfo(
                name=adapter.name,
                version=adapter.version,
                capabilities=adapter.capabilities(),
                default=default,
                healthy=error is None,
                health_error=error,
                registered_at=now,
                last_health_check=now,
                config=dict(config or {}),
            )
            self._adapters[adapter.name] = adapter
            self._meta[adapter.name] = info
            record_health(adapter.name, info.healthy)

            if default:
                self._set_default(adapter.name)

        logger.info(
            "Registered adapter %s (version=%s, default=%s, healthy=%s)",
            adapter.name, adapter.version, default, info.healthy,
        )
        return info

    async def unregister(self, name: str) -> None:
        """Close and remove an adapter."""
        async with self._lock:
            adapter = self._adapters.pop(name, None)
            if adapter is None:
                raise NotFoundError(f"adapter {name} not found")
            self._meta.pop(name, None)
            if self._default == name:
                self._default = None
        try:
            await adapter.close()
        except Exception as e:  # noqa: BLE001
            logger.warning("Error closing adapter %s: %s", name, e)
        logger.info("Unregistered adapter %s", name)

    def get(self, name: str) -> Optional[DMSAdapter]:
        return self._adapters.get(name)

    def get_default(self) -> Optional[DMSAdapter]:
        if self._default is None:
            return None
        return self._adapters.get(self._default)

    @property
    def default_name(self) -> Optional[str]:
        return self._default

    def metadata(self, name: str) -> Optional[AdapterInfo]:
        info = self._meta.get(name)
        return info.model_copy(deep=True) if info else None

    def list_metadata(self) -> list[AdapterInfo]:
        """Snapshots of every adapter's metadata, sorted by name."""
        return [self._meta[name].model_copy(deep=True) for name in sorted(self._meta)]

    def find_by_capability(self, capability: Capability) -> list[DMSAdapter]:
        """Enabled, healthy adapters declaring ``capability``."""
        return [
            self._adapters[name]
            for name in sorted(self._meta)
            if self._meta[name].enabled
            and self._meta[name].healthy
            and capability in self._meta[name].capabilities
        ]

    def _info(self, name: str) -> AdapterInfo:
        info = self._meta.get(name)
        if info is None:
            raise NotFoundError(f"adapter {name} not found")
        return info

    def _set_default(self, name: str) -> None:
        if self._default and self._default in self._meta:
            self._meta[self._default].default = False
        self._default = name
        self._meta[name].default = True

    def set_default(self, name: str) -> None:
        self._info(name)
        self._set_default(name)
        logger.info("Default adapter set to %s", name)

    def enable(self, name: str) -> None:
        self._info(name).enabled = True
        logger.info("Adapter %s enabled", name)

    def disable(self, name: str) -> None:
        self._info(name).enabled = False
        logger.info("Adapter %s disabled", name)

    @traced("registry.check_health")
    async def check_health(self) -> dict[str, bool]:
        """Run one health check per adapter and update the metadata."""
        adapters = dict(self._adapters)
        errors = await asyncio.gather(*(self._check_adapter(a) for a in adapters.values()))

        results = {}
        now = datetime.now(timezone.utc)
        for name, error in zip(adapters, errors):
            info = self._meta.get(name)
            if info is None:
                continue
            healthy = error is None
            if info.healthy != healthy:
                if healthy:
                    logger.info("Adapter %s recovered", name)
                else:
                    logger.warning("Adapter %s unhealthy: %s", name, error)
            info.healthy = healthy
            info.health_error = error
            info.last_health_check = now
            record_health(name, healthy)
            results[name] = healthy
        return results

    async def close(self) -> None:
        """Close every adapter and empty the registry."""
        for name in list(self._adapters):
            await self.unregister(name)
