__version__ = '0.1.0'

from .bundle import (
    Builder,
    BuilderConsumed,
    Bundle,
    BundleConfig,
    BundleError,
    DecodeError,
    NotFound,
    Registry,
    build_bundle,
    use_registry,
)

__all__ = (
    'Builder',
    'BuilderConsumed',
    'Bundle',
    'BundleConfig',
    'BundleError',
    'DecodeError',
    'NotFound',
    'Registry',
    'build_bundle',
    'use_registry',
)
