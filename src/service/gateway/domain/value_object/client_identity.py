from typing import FrozenSet

import attrs


@attrs.frozen
class ClientIdentity:
    subject: str
    scopes: FrozenSet[str] = frozenset()
