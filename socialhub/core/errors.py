"""Base exception shared by SocialHub domain errors."""

from __future__ import annotations


class SocialHubError(Exception):
    """Domain error carrying a stable machine-readable code."""

    code = "SocialHubError"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
