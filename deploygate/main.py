"""
Deployment gateway bootstrap.

Builds the adapter registry from settings. Running the module performs a
single health pass over the configured adapters and prints their metadata.
"""

import asyncio
import json
import logging
from typing import Callable, Optional

from .adapters import (
    ArgoCDAdapter,
    ArgoCDRestAdapter,
    CrossplaneAdapter,
    DMSAdapter,
    FluxAdapter,
    HelmAdapter,
)
from .config import Settings, get_settings
from .errors import ValidationError
from .registry import AdapterRegistry
from .telemetry import setup_telemetry

logger = logging.getLogger(__name__)

ADAPTER_FACTORIES: dict[str, Callable[[Settings], DMSAdapter]] = {
    "argocd": lambda s: ArgoCDAdapter(s.argocd, s.kubernetes),
    "argocd-rest": lambda s: ArgoCDRestAdapter(s.argocd),
    "flux": lambda s: FluxAdapter(s.flux, s.kubernetes),
    "crossplane": lambda s: CrossplaneAdapter(s.crossplane, s.kubernetes),
    "helm": lambda s: HelmAdapter(s.helm, s.kubernetes),
}


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_adapter(name: str, settings: Settings) -> DMSAdapter:
    factory = ADAPTER_FACTORIES.get(name)
    if factory is None:
        raise ValidationError(
            f"unknown adapter {name!r}, expected one of {', '.join(sorted(ADAPTER_FACTORIES))}"
        )
    return factory(settings)


async def create_registry(settings: Optional[Settings] = None) -> AdapterRegistry:
    """Build and register the adapters named in ``settings.adapters``."""
    settings = settings or get_settings()
    registry = AdapterRegistry()
    for name in dict.fromkeys(settings.adapters):
        adapter = build_adapter(name, settings)
        await registry.register(adapter, default=name == settings.default_adapter)

    if registry.default_name is None and settings.adapters:
        logger.warning(
            "Default adapter %s is not enabled; using %s",
            settings.default_adapter, settings.adapters[0],
        )
        registry.set_default(settings.adapters[0])
    return registry


async def _run(settings: Settings) -> None:
    registry = await create_registry(settings)
    try:
        await registry.check_health()
        print(json.dumps([info.model_dump(mode="json") for info in registry.list_metadata()], indent=2))
    finally:
        await registry.close()


def run() -> None:
    settings = get_settings()
    configure_logging(settings)
    provider = setup_telemetry(settings)
    logger.info("Starting deploygate with adapters: %s", ", ".join(settings.adapters))
    try:
        asyncio.run(_run(settings))
    finally:
        if provider is not None:
            provider.shutdown()


if __name__ == "__main__":
    run()
