"""Bearer token providers for the analysis API client."""

from __future__ import annotations

from typing import Optional


class StaticTokenProvider:
    """Returns a fixed token (or none, for deployments without auth)."""

    def __init__(self, token: Optional[str] = None) -> None:
        self._token = token

    async def get_token(self) -> Optional[str]:
        return self._token
