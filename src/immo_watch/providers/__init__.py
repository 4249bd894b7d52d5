"""Listing providers."""

from immo_watch.providers.base import BaseProvider, FetchOptions, build_request_url
from immo_watch.providers.json_api import JsonApiProvider

__all__ = ["BaseProvider", "FetchOptions", "JsonApiProvider", "build_request_url"]
