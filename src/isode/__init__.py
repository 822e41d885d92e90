"""isode — on-demand code-execution sandboxes keyed by isolate key."""

from __future__ import annotations

from typing import TYPE_CHECKING

__version__ = "0.1.0"

if TYPE_CHECKING:
    from isode.models import SandboxConfig as SandboxConfig
    from isode.pool import SandboxPool as SandboxPool
    from isode.pool import create_pool as create_pool
    from isode.pool import get_default_pool as get_default_pool

_EXPORTS = {
    "SandboxPool": "isode.pool",
    "create_pool": "isode.pool",
    "get_default_pool": "isode.pool",
    "SandboxConfig": "isode.models",
}


def __getattr__(name: str) -> object:
    module_path = _EXPORTS.get(name)
    if module_path is not None:
        import importlib

        mod = importlib.import_module(module_path)
        return getattr(mod, name)
    raise AttributeError(f"module 'isode' has no attribute {name!r}")
