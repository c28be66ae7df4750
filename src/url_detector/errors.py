from __future__ import annotations


class UrlDetectorError(Exception):
    pass


class ConfigError(UrlDetectorError, ValueError):
    """A setting write or configuration load was declined."""


class FetchError(UrlDetectorError):
    """An image could not be fetched or decoded; ends the current run."""


class EmptyTargetError(FetchError):
    pass


class NetworkError(FetchError):
    pass


class UnsupportedLayoutError(FetchError):
    pass


class UnsupportedDepthError(FetchError):
    pass


class DecodeFailedError(FetchError):
    pass


class ResourceError(UrlDetectorError, RuntimeError):
    pass


class PoolExhaustedError(ResourceError):
    pass
