from __future__ import annotations

# Operator authorization.
#
# The queue only needs a yes/no answer to "is this caller an operator?".
# Operators present a shared token with each staff request. Customers never
# need one: their capability is the customer id they got when joining.

import hmac
from typing import Iterable, Protocol


class OperatorAuthorizer(Protocol):
    def is_authorized_operator(self, token: str | None) -> bool: ...


class TokenAuthorizer:
    """Accepts any of a fixed set of operator tokens."""

    def __init__(self, tokens: Iterable[str]) -> None:
        self._tokens = tuple(t for t in tokens if t)

    def is_authorized_operator(self, token: str | None) -> bool:
        if not token:
            return False
        # Check every token so timing does not reveal which one matched.
        matched = False
        for candidate in self._tokens:
            if hmac.compare_digest(candidate.encode("utf-8"), token.encode("utf-8")):
                matched = True
        return matched
