from urllib.parse import parse_qs, urlparse

from files_control.services.urls import (
    build_download_url,
    build_endpoint_url,
    normalize_base_url,
    normalize_path_prefix,
)


def test_build_endpoint_url_strips_slashes():
    assert build_endpoint_url("https://x.com/", "files", "/get") == "https://x.com/files/get"
    assert build_endpoint_url("https://x.com", "/files/", "get") == "https://x.com/files/get"


def test_normalize_base_url_removes_only_one_slash():
    assert normalize_base_url("https://x.com//") == "https://x.com/"
    assert normalize_base_url("https://x.com") == "https://x.com"


def test_normalize_path_prefix_trims_whitespace():
    assert normalize_path_prefix("  files/ ") == "/files"
    assert normalize_path_prefix("/a/b") == "/a/b"


def test_build_download_url_with_optional_params():
    url = build_download_url(
        "https://x.com/",
        "tok-1",
        path_prefix="/files",
        access_key="key 1",
        filename="report.pdf",
    )
    parsed = urlparse(url)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://x.com/files/download"
    assert parse_qs(parsed.query) == {
        "token": ["tok-1"],
        "accessKey": ["key 1"],
        "filename": ["report.pdf"],
    }


def test_build_download_url_omits_empty_params():
    assert (
        build_download_url("https://x.com", "abc")
        == "https://x.com/files/download?token=abc"
    )
