"""
Request classification for the payment surface.

Maps an HTTP method and path to one of the three payment operations. Pure:
no I/O, no business logic.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from paybridge.core.exceptions import MethodNotAllowedError, NotFoundError


class Operation(str, Enum):
    INITIATE = "initiate"
    STATUS_QUERY = "status_query"
    WEBHOOK = "webhook"


@dataclass(frozen=True)
class Route:
    operation: Operation
    transaction_id: Optional[str] = None
    provider: Optional[str] = None


PAY_PREFIX = "/pay"

_ROUTES = (
    (re.compile(r"^/pay/initiate/?$"), "POST", Operation.INITIATE),
    (re.compile(r"^/pay/status/(?P<transaction_id>[^/]+)/?$"), "GET", Operation.STATUS_QUERY),
    (re.compile(r"^/pay/webhook(?:/(?P<provider>[^/]+))?/?$"), "POST", Operation.WEBHOOK),
)


def classify(method: str, path: str) -> Route:
    """
    Classify a request.

    Args:
        method: HTTP method
        path: Request path

    Returns:
        Route: The operation plus any path parameters

    Raises:
        MethodNotAllowedError: Known path, wrong method
        NotFoundError: Unknown path
    """
    method = method.upper()
    for pattern, allowed_method, operation in _ROUTES:
        match = pattern.match(path)
        if match is None:
            continue
        if method != allowed_method:
            raise MethodNotAllowedError(
                f"{method} not allowed on {path}", allowed=allowed_method
            )
        params = match.groupdict()
        return Route(
            operation=operation,
            transaction_id=params.get("transaction_id"),
            provider=params.get("provider"),
        )
    raise NotFoundError(f"No payment operation at {path}")


def is_payment_path(path: str) -> bool:
    return path == PAY_PREFIX or path.startswith(PAY_PREFIX + "/")
