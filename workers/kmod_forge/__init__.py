"""
kmod_forge — build orchestrator for kernel modules with an embedded
freestanding Rust component.

Pipeline: cargo (no_std static archive) → whole-archive merge with a native
shim → symbol check against exported-symbol tables → section GC with pinned
lifecycle roots → loadable kernel object.
"""

__version__ = "0.1.0"
BUILDER_VERSION = "v0"
PACKAGE_NAME = "kmod_forge"
SCHEMA_VERSION = "0.1"
