"""Canonical endpoint URLs for the file routes."""

from __future__ import annotations

from urllib.parse import urlencode

DEFAULT_PATH_PREFIX = "/files"


def normalize_base_url(base_url: str) -> str:
    # Only one trailing slash is removed; "https://x.com//" keeps one.
    if base_url.endswith("/"):
        return base_url[:-1]
    return base_url


def normalize_path_prefix(path_prefix: str) -> str:
    trimmed = path_prefix.strip()
    with_leading = trimmed if trimmed.startswith("/") else f"/{trimmed}"
    if with_leading.endswith("/"):
        return with_leading[:-1]
    return with_leading


def build_endpoint_url(base_url: str, path_prefix: str, endpoint: str) -> str:
    base = normalize_base_url(base_url)
    prefix = normalize_path_prefix(path_prefix)
    clean_endpoint = endpoint[1:] if endpoint.startswith("/") else endpoint
    return f"{base}{prefix}/{clean_endpoint}"


def build_download_url(
    base_url: str,
    download_token: str,
    path_prefix: str = DEFAULT_PATH_PREFIX,
    access_key: str | None = None,
    filename: str | None = None,
) -> str:
    params = {"token": str(download_token)}
    if access_key:
        params["accessKey"] = access_key
    if filename:
        params["filename"] = filename
    url = build_endpoint_url(base_url, path_prefix, "download")
    return f"{url}?{urlencode(params)}"
