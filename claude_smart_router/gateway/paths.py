from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

OPENAI_MODELS_PATH = "/v1/models"
OPENAI_CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
CLAUDE_MESSAGES_PATH = "/v1/messages"


class Dialect(str, Enum):
    NATIVE = "native"
    COMPAT = "compat"


@dataclass(slots=True, frozen=True)
class RoutingHint:
    preferred_endpoint: int | None
    target_api_path: str
    dialect: Dialect = Dialect.NATIVE
    is_catalog_request: bool = False

    @property
    def is_compat(self) -> bool:
        return self.dialect is Dialect.COMPAT


def _matches_path(pathname: str, suffix: str) -> bool:
    return pathname == suffix or pathname.endswith(suffix)


def resolve_request_path(pathname: str, endpoint_prefixes: Sequence[str]) -> RoutingHint:
    """Derive the routing hint for an inbound path.

    Prefixes are checked in declaration order, so when two prefixes overlap the
    one listed first wins (``/claude/droid`` must be declared before ``/claude``).
    """
    if _matches_path(pathname, OPENAI_MODELS_PATH):
        return RoutingHint(
            preferred_endpoint=None,
            target_api_path=OPENAI_MODELS_PATH,
            dialect=Dialect.COMPAT,
            is_catalog_request=True,
        )

    if _matches_path(pathname, OPENAI_CHAT_COMPLETIONS_PATH):
        preferred: int | None = None
        for index, prefix in enumerate(endpoint_prefixes):
            if pathname.startswith(prefix + "/"):
                preferred = index
                break
        return RoutingHint(
            preferred_endpoint=preferred,
            target_api_path=CLAUDE_MESSAGES_PATH,
            dialect=Dialect.COMPAT,
        )

    for index, prefix in enumerate(endpoint_prefixes):
        if pathname.startswith(prefix + "/") or pathname == prefix:
            return RoutingHint(
                preferred_endpoint=index,
                target_api_path=pathname[len(prefix) :] or "/",
            )

    return RoutingHint(preferred_endpoint=None, target_api_path=pathname)
