from abc import ABC, abstractmethod
from typing import Optional

from src.service.gateway.domain.value_object.client_identity import ClientIdentity


class ICredentialVerifier(ABC):
    @abstractmethod
    def verify(self, authorization: Optional[str]) -> ClientIdentity:
        """Resolve an Authorization header to a client, or raise AuthenticationError."""
        pass
