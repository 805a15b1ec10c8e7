from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import requests

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 10
PROBE_TIMEOUT_S = 30
CHUNK_SIZE = 1 << 20


class FetchError(RuntimeError):
    pass


def probe_url(url: str) -> bool:
    """Return True when a HEAD request for url succeeds.

    Anything that is not a well-formed http(s) URL simply fails the probe.
    """

    try:
        r = requests.head(url, timeout=(CONNECT_TIMEOUT_S, PROBE_TIMEOUT_S), allow_redirects=True)
    except (requests.RequestException, ValueError) as e:
        logger.debug("Probe of %s failed: %s", url, e)
        return False
    if r.status_code >= 400:
        logger.info("URL %s returned HTTP status %s", url, r.status_code)
        return False
    return True


def download(url: str, dest: Path) -> None:
    logger.info("Downloading %s", url)
    try:
        with requests.get(url, stream=True, timeout=(CONNECT_TIMEOUT_S, None)) as r:
            r.raise_for_status()
            with open(dest, "wb") as fh:
                for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
                    fh.write(chunk)
    except (requests.RequestException, OSError) as e:
        raise FetchError(f"Download of {url} failed: {e}") from e


def fetch_text(url: str) -> str:
    try:
        r = requests.get(url, timeout=(CONNECT_TIMEOUT_S, PROBE_TIMEOUT_S))
        r.raise_for_status()
    except requests.RequestException as e:
        raise FetchError(f"Fetching {url} failed: {e}") from e
    return r.text


def fetch_json(url: str) -> Any:
    try:
        r = requests.get(url, timeout=(CONNECT_TIMEOUT_S, PROBE_TIMEOUT_S))
        r.raise_for_status()
        return r.json()
    except (requests.RequestException, ValueError) as e:
        raise FetchError(f"Fetching {url} failed: {e}") from e
