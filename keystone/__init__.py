"""
Keystone - Dependency-graph-driven infrastructure reconciliation.

Declare resources and the references between them in HCL or JSON documents.
Keystone builds the dependency graph, diffs it against the last-applied
state, and applies the minimal set of create, update, replace and destroy
operations in dependency order, running independent operations concurrently.
"""

from .core import KeystoneCore
from .settings import KeystoneSettings, get_settings, reload_settings

__version__ = "0.1.0"
__all__ = [
    "KeystoneCore",
    "KeystoneSettings",
    "get_settings",
    "reload_settings",
]
