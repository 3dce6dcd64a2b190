"""Typed application errors with user-facing messages."""

from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    def __init__(self, message: str, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class InvalidLinkError(AppError):
    pass


class UnsupportedSchemeError(AppError):
    pass


class SubscriptionError(AppError):
    """A single subscription refresh failed; previously loaded nodes stay valid."""


class InvalidSubscriptionURLError(SubscriptionError):
    pass


class DownloadFailedError(SubscriptionError):
    pass


class SubscriptionParseError(SubscriptionError):
    pass


class ConfigBuildError(AppError):
    pass


class ConfigWriteError(AppError):
    pass


class BinaryNotFoundError(AppError):
    pass


class EngineStartError(AppError):
    pass


class ProxyApplyError(AppError):
    pass


class NetworkServiceNotFoundError(ProxyApplyError):
    pass


class ProxyWriteError(ProxyApplyError):
    pass
