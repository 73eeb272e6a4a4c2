from __future__ import annotations

import json
from typing import Any

import httpx


class ProbeError(Exception):
    pass


class ProbeConnectionError(ProbeError):
    pass


class ProbeParseError(ProbeError):
    pass


async def fetch_health(client: httpx.AsyncClient, url: str) -> Any:
    """
    GET a health endpoint and decode its JSON body.

    The status code is not checked: health endpoints often answer 503 together
    with a document describing which checks fail.
    """
    try:
        resp = await client.get(url, follow_redirects=True)
    except httpx.RequestError as e:
        raise ProbeConnectionError(f"{type(e).__name__}: {e}") from e

    try:
        return json.loads(resp.content)
    except (ValueError, RecursionError) as e:
        raise ProbeParseError("Invalid JSON response") from e
