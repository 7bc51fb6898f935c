"""
Stagewise - Dependency Injection

Shared-instance container backing the service graph:
- Existing instances, lazily built classes and factories
- Constructor injection from type hints
- Disposal of container-built instances

Usage:
    from di import Container

    container = Container()
    container.register_singleton(StatusService)
    status = container.resolve(StatusService)
"""
from di.container import Container, Registration

__all__ = [
    "Container",
    "Registration",
]
