"""
Response provider factory.

Usage:
    from chatrelay.providers import make_provider
    provider = make_provider("backend", backend_url="http://localhost:3000", api_key="...")

Adding a new provider:
    1. Create chatrelay/providers/<name>.py implementing ResponseProvider.
    2. Add an entry to _REGISTRY below.
    3. Set  providers.primary: <name>  in config.yaml.
"""

from .base import ErrorInfo, ResponseProvider
from .heuristic import LocalHeuristicProvider
from .polling import PollingBackendProvider

_REGISTRY: dict[str, type[ResponseProvider]] = {
    "backend": PollingBackendProvider,
    "heuristic": LocalHeuristicProvider,
}


def make_provider(provider_type: str, **kwargs) -> ResponseProvider:
    """
    Instantiate a provider by name.

    Args:
        provider_type: Registry key ("backend" or "heuristic").
        **kwargs:      Provider config, passed to the constructor as a dict.

    Raises:
        ValueError: If the provider type is not registered.
    """
    cls = _REGISTRY.get(provider_type)
    if cls is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(
            f"Unknown response provider: '{provider_type}'. "
            f"Available: {available}"
        )
    return cls(kwargs)


def build_providers(cfg: dict) -> tuple[ResponseProvider, LocalHeuristicProvider]:
    """
    Build (primary, fallback) from the full config dict.
    The backend section supplies the polling provider's settings.
    """
    prov_cfg = cfg.get("providers", {}) or {}
    primary_type = prov_cfg.get("primary", "backend")
    settings = dict(cfg.get("backend", {}) or {}) if primary_type == "backend" else {}
    primary = make_provider(primary_type, **settings)
    fallback = LocalHeuristicProvider()
    return primary, fallback


__all__ = [
    "ErrorInfo",
    "ResponseProvider",
    "LocalHeuristicProvider",
    "PollingBackendProvider",
    "make_provider",
    "build_providers",
]
