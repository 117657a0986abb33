"""
Provider adapters for the verification gateway.

One adapter per external provider family, all exposing the same
invoke(operation_tag, credential, payload) signature.
"""

from typing import Dict, Optional, Type

from .base import NormalizedResult, ProviderAdapter
from .deepvue import DeepvueAdapter
from .planapi import PlanApiAdapter
from .signzy import SignzyAdapter

ADAPTER_CLASSES: Dict[str, Type[ProviderAdapter]] = {
    adapter.provider_tag: adapter
    for adapter in (SignzyAdapter, PlanApiAdapter, DeepvueAdapter)
}


def build_adapter(
    provider_tag: str, base_url: Optional[str] = None, timeout: float = 30.0
) -> ProviderAdapter:
    """Instantiate the adapter registered for a provider tag.

    Raises:
        KeyError: If no adapter exists for the tag
    """
    try:
        adapter_class = ADAPTER_CLASSES[provider_tag]
    except KeyError:
        raise KeyError(f"No adapter for provider '{provider_tag}'")
    return adapter_class(base_url=base_url, timeout=timeout)


__all__ = [
    "ADAPTER_CLASSES",
    "DeepvueAdapter",
    "NormalizedResult",
    "PlanApiAdapter",
    "ProviderAdapter",
    "SignzyAdapter",
    "build_adapter",
]
