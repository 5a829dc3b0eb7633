import os
from typing import List, Optional

import pytest
import requests

from wuintegrate_models import Locations


class FakeResponse:

    def __init__(self, body: bytes = b"", status_code: int = 200, headers: Optional[dict] = None, fail_after: Optional[int] = None):
        self.body = body
        self.status_code = status_code
        self.headers = headers if headers is not None else {"content-length": str(len(body))}
        self.fail_after = fail_after

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def iter_content(self, chunk_size: int = 1):
        sent = 0
        for i in range(0, len(self.body), 4):
            if self.fail_after is not None and sent >= self.fail_after:
                raise requests.ConnectionError("connection reset")
            chunk = self.body[i:i + 4]
            sent += len(chunk)
            yield chunk

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Replays queued responses (or exceptions) and records every call."""

    def __init__(self, responses: Optional[List[object]] = None):
        self.responses = list(responses or [])
        self.calls: List[tuple] = []

    def _next(self, method: str, url: str, kwargs: dict):
        self.calls.append((method, url, kwargs))
        if not self.responses:
            raise AssertionError(f"Unexpected {method} {url}")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)


@pytest.fixture
def locations(tmp_path) -> Locations:
    loc = Locations.under(str(tmp_path / "WUIntegrate"))
    loc.create()
    return loc


def write(path: str, text: str) -> str:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(text)
    return path


NS = "http://schemas.microsoft.com/msus/2004/02/OfflineSync"


def manifest_xml(updates: str) -> str:
    return (
        f'<?xml version="1.0" encoding="utf-8"?>\n'
        f'<OfflineSyncPackage xmlns="{NS}" MinimumClientVersion="5.8.0.2678" ProtocolVersion="1.0">\n'
        f"  <Updates>\n{updates}\n  </Updates>\n"
        f"</OfflineSyncPackage>\n"
    )


def localization_xml(title: Optional[str], description: bool = True) -> str:
    parts = ["<LocalizedProperties>", "<Language>en</Language>"]
    if title is not None:
        parts.append(f"<Title>{title}</Title>")
    if description:
        parts.append("<Description>Install this update to resolve issues in Windows.</Description>")
    parts.append("</LocalizedProperties>")
    return "".join(parts)
