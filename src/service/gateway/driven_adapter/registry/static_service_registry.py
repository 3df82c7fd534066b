from typing import Dict, Iterable, List, Mapping

from src.service.gateway.app.interface.i_service_registry import IServiceRegistry


class StaticServiceRegistry(IServiceRegistry):
    """Registrations from configuration; register/deregister simulate instances coming and going."""

    def __init__(self, *, routes: Mapping[str, Iterable[str]]) -> None:
        self._routes: Dict[str, List[str]] = {prefix: list(urls) for prefix, urls in routes.items()}

    async def fetch_registrations(self) -> Dict[str, List[str]]:
        return {prefix: list(urls) for prefix, urls in self._routes.items()}

    def register(self, *, prefix: str, instance: str) -> None:
        instances = self._routes.setdefault(prefix, [])
        if instance not in instances:
            instances.append(instance)

    def deregister(self, *, prefix: str, instance: str) -> None:
        instances = self._routes.get(prefix, [])
        if instance in instances:
            instances.remove(instance)
