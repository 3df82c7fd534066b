"""
JWT Credential Verifier

Tokens are issued elsewhere; the gateway only checks signature, expiry and the
subject claim. No database lookup per request.
"""

from typing import Optional

import jwt

from src.platform.exception.exceptions import AuthenticationError
from src.service.gateway.app.interface.i_credential_verifier import ICredentialVerifier
from src.service.gateway.domain.value_object.client_identity import ClientIdentity


class JwtCredentialVerifier(ICredentialVerifier):
    def __init__(self, *, secret: str, algorithm: str) -> None:
        self.secret = secret
        self.algorithm = algorithm

    def verify(self, authorization: Optional[str]) -> ClientIdentity:
        if not authorization:
            raise AuthenticationError('Not authenticated')

        scheme, _, token = authorization.partition(' ')
        if scheme.lower() != 'bearer' or not token:
            raise AuthenticationError('Expected a Bearer token')

        try:
            payload = jwt.decode(
                token.strip(),
                self.secret,
                algorithms=[self.algorithm],
                options={'require': ['sub', 'exp']},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError('Token expired')
        except jwt.PyJWTError:
            raise AuthenticationError('Invalid token')

        scopes = payload.get('scope', '')
        return ClientIdentity(
            subject=str(payload['sub']),
            scopes=frozenset(scopes.split()) if isinstance(scopes, str) else frozenset(),
        )
