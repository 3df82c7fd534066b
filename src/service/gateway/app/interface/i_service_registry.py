from abc import ABC, abstractmethod
from typing import Dict, List


class IServiceRegistry(ABC):
    @abstractmethod
    async def fetch_registrations(self) -> Dict[str, List[str]]:
        """Current registrations: route prefix -> instance base URLs."""
        pass
